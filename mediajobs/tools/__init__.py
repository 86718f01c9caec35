from .ffmpeg import MediaTools, thumbnail_offset

__all__ = ["MediaTools", "thumbnail_offset"]
