from .content import ContentStore, StoredObject
from .media import MediaRecord, MediaStore

__all__ = ["ContentStore", "StoredObject", "MediaRecord", "MediaStore"]
