"""Job broker, worker loop and per-type processors."""

from .models import Job, JobStatus, JobType
from .queue import JobBroker
from .worker import MediaWorker
from .processors import process_job

__all__ = ["Job", "JobStatus", "JobType", "JobBroker", "MediaWorker", "process_job"]
