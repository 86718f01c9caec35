"""Wrappers around the external media utilities (ffprobe, ffmpeg, whisper.cpp).

Every utility runs as a subprocess bounded by a timeout; a process that
exceeds it is killed and reported as MediaToolTimeoutError.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Optional, Sequence

import structlog

from mediajobs.errors import MediaToolError, MediaToolTimeoutError
from mediajobs.logging_utils import strip_query

logger = structlog.get_logger()

# Thumbnail frame selection bounds (seconds)
THUMBNAIL_MAX_OFFSET = 3.0
THUMBNAIL_MIN_OFFSET = 0.5
THUMBNAIL_DURATION_RATIO = 0.1
THUMBNAIL_SCALE = "scale=1280:720:force_original_aspect_ratio=decrease"

_STDERR_TAIL = 2000


def thumbnail_offset(duration: float) -> float:
    """Pick the frame offset for a thumbnail.

    Uses min(3s, 10% of duration, duration - 0.5s) to skip black frames and
    intro cards, with 0.5s as the floor. Media of 0.5s or less uses its
    midpoint so the offset never lands past the end.
    """
    if duration <= 0:
        raise ValueError(f"Duration must be positive, got {duration}")
    if duration <= THUMBNAIL_MIN_OFFSET:
        return round(duration / 2, 3)

    offset = min(
        THUMBNAIL_MAX_OFFSET,
        duration * THUMBNAIL_DURATION_RATIO,
        duration - THUMBNAIL_MIN_OFFSET,
    )
    return round(max(THUMBNAIL_MIN_OFFSET, offset), 3)


def parse_duration(output: str) -> float:
    """Parse ffprobe's 'format=duration' csv output into seconds."""
    text = output.strip().splitlines()[0].strip() if output.strip() else ""
    try:
        duration = float(text)
    except ValueError:
        raise MediaToolError(f"Invalid duration extracted: {text!r}") from None
    if duration != duration or duration <= 0:
        raise MediaToolError(f"Invalid duration extracted: {text!r}")
    return duration


def parse_whisper_json(raw: str) -> str:
    """Extract plain transcript text from whisper.cpp '-oj' output."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MediaToolError(f"Invalid whisper output: {e}") from e

    segments = data.get("transcription")
    if isinstance(segments, list):
        text = " ".join(
            str(segment.get("text", "")).strip()
            for segment in segments
            if isinstance(segment, dict)
        )
    else:
        text = str(data.get("text", ""))

    return " ".join(text.split())


def _redacted_command(args: Sequence[str]) -> list[str]:
    return [strip_query(arg) if "://" in arg else arg for arg in args]


async def run_tool(args: Sequence[str], timeout: float) -> tuple[str, str]:
    """Run a media utility and collect its output.

    Args:
        args: Executable followed by its arguments
        timeout: Seconds before the process is killed

    Returns:
        Tuple of (stdout, stderr) decoded as UTF-8

    Raises:
        MediaToolError: If the tool cannot start or exits non-zero
        MediaToolTimeoutError: If the tool exceeds ``timeout``
    """
    tool = os.path.basename(args[0])
    logger.info(
        "media_tool_started",
        tool=tool,
        command=_redacted_command(args),
        timeout=timeout,
        source="media_tool",
    )

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise MediaToolError(f"{tool} spawn error: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        await _kill(process)
        logger.error("media_tool_timeout", tool=tool, timeout=timeout, source="media_tool")
        raise MediaToolTimeoutError(
            f"{tool} exceeded {timeout:.0f}s and was killed"
        ) from None
    except asyncio.CancelledError:
        await _kill(process)
        raise

    out = stdout.decode("utf-8", errors="replace")
    err = stderr.decode("utf-8", errors="replace")

    if process.returncode != 0:
        raise MediaToolError(
            f"{tool} failed with code {process.returncode}: {err[-_STDERR_TAIL:].strip()}"
        )

    logger.info("media_tool_finished", tool=tool, source="media_tool")
    return out, err


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        process.kill()
        await process.wait()


class MediaTools:
    """The media utilities a worker invokes, bound to configured paths."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        whisper_cpp_path: Optional[str] = None,
        whisper_model_path: Optional[str] = None,
        timeout: float = 600.0,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.whisper_cpp_path = whisper_cpp_path
        self.whisper_model_path = whisper_model_path
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "MediaTools":
        return cls(
            ffmpeg_path=settings.ffmpeg_path,
            ffprobe_path=settings.ffprobe_path,
            whisper_cpp_path=settings.whisper_cpp_path,
            whisper_model_path=settings.whisper_model_path,
            timeout=settings.media_tool_timeout,
        )

    async def probe_duration(self, source_url: str) -> float:
        """Read the container duration in seconds."""
        stdout, _ = await run_tool(
            [
                self.ffprobe_path,
                "-v", "quiet",
                "-show_entries", "format=duration",
                "-of", "csv=p=0",
                source_url,
            ],
            self.timeout,
        )
        return parse_duration(stdout)

    async def extract_frame(
        self, source_url: str, offset: float, output_path: Path
    ) -> Path:
        """Write a single JPEG frame taken at ``offset`` seconds."""
        await run_tool(
            [
                self.ffmpeg_path,
                "-y",
                "-ss", f"{offset:g}",
                "-i", source_url,
                "-vframes", "1",
                "-vf", THUMBNAIL_SCALE,
                "-q:v", "2",
                str(output_path),
            ],
            self.timeout,
        )
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise MediaToolError("ffmpeg did not create a thumbnail file")
        return output_path

    async def extract_audio(self, source_url: str, output_path: Path) -> Path:
        """Write 16 kHz mono PCM audio suitable for whisper.cpp."""
        await run_tool(
            [
                self.ffmpeg_path,
                "-y",
                "-i", source_url,
                "-ar", "16000",
                "-ac", "1",
                "-c:a", "pcm_s16le",
                str(output_path),
            ],
            self.timeout,
        )
        if not output_path.exists():
            raise MediaToolError("ffmpeg did not create an audio file")
        return output_path

    async def transcribe(self, audio_path: Path) -> str:
        """Run whisper.cpp over ``audio_path`` and return the transcript text."""
        if not self.whisper_cpp_path or not self.whisper_model_path:
            raise MediaToolError("whisper.cpp is not configured")

        output_base = audio_path.with_suffix("")
        await run_tool(
            [
                self.whisper_cpp_path,
                "-m", self.whisper_model_path,
                "-f", str(audio_path),
                "-oj",
                "-of", str(output_base),
            ],
            self.timeout,
        )

        json_path = output_base.with_suffix(".json")
        if not json_path.exists():
            raise MediaToolError("whisper.cpp did not create a transcript file")

        text = parse_whisper_json(json_path.read_text(encoding="utf-8"))
        if not text:
            raise MediaToolError("whisper.cpp produced an empty transcript")
        return text
