from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from mediajobs.errors import UnknownJobTypeError


class JobType(str, Enum):
    """Closed set of job types; each one has its own worker pool."""
    DURATION = "duration"
    THUMBNAIL = "thumbnail"
    TRANSCRIPTION = "transcription"

    @classmethod
    def parse(cls, value: "str | JobType") -> "JobType":
        """Return the JobType for ``value``.

        Raises:
            UnknownJobTypeError: If value is not a supported job type
        """
        try:
            return cls(value)
        except ValueError:
            raise UnknownJobTypeError(f"Unknown job type: {value}") from None

    @property
    def event_type(self) -> str:
        """Event name broadcast when a job of this type finishes."""
        return f"{self.value}-updated"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """Represents one unit of media processing work."""
    id: str
    job_type: JobType
    media_id: str
    owner_id: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    claimed_by: Optional[str] = None
    error: Optional[str] = None
    result: Optional[dict] = None
    lease_expires_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase wire format."""
        return {
            "id": self.id,
            "jobType": self.job_type.value,
            "mediaId": self.media_id,
            "ownerId": self.owner_id,
            "status": self.status.value,
            "progress": self.progress,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "claimedBy": self.claimed_by,
            "error": self.error,
            "result": self.result,
            "leaseExpiresAt": (
                self.lease_expires_at.isoformat()
                if self.lease_expires_at
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """Build a Job from the wire format returned by the broker."""
        lease = data.get("leaseExpiresAt")
        return cls(
            id=data["id"],
            job_type=JobType.parse(data["jobType"]),
            media_id=data["mediaId"],
            owner_id=data["ownerId"],
            status=JobStatus(data.get("status", JobStatus.QUEUED.value)),
            progress=int(data.get("progress", 0)),
            created_at=datetime.fromisoformat(data["createdAt"]),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
            claimed_by=data.get("claimedBy"),
            error=data.get("error"),
            result=data.get("result"),
            lease_expires_at=datetime.fromisoformat(lease) if lease else None,
        )
