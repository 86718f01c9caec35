import asyncio
import uuid
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Protocol

import structlog

from mediajobs.errors import InvalidJobTransitionError, JobNotFoundError
from mediajobs.jobs.models import Job, JobStatus, JobType, utcnow

logger = structlog.get_logger()

PROGRESS_EVENT = "job-progress"
CANCELLED_ERROR = "cancelled"


class EventPublisher(Protocol):
    """Anything that can route an event to a user (see NotificationBridge)."""

    def publish(
        self, user_id: str, event_type: str, payload: Optional[dict] = None
    ) -> Awaitable[int]: ...


class JobBroker:
    """In-memory job broker with one FIFO queue per job type.

    Claims are atomic per job type: a single asyncio.Lock per queue guards
    the dequeue-and-mark-processing step, and queues of different types
    never share a lock.

    Jobs live only in process memory. Queued and in-flight jobs are lost
    when the broker restarts.
    """

    def __init__(
        self,
        publisher: Optional[EventPublisher] = None,
        lease_seconds: float = 0.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the broker.

        Args:
            publisher: Receives terminal and progress events, keyed by owner
            lease_seconds: Claim lease length; 0 disables lease expiry
            clock: Source of timezone-aware timestamps
        """
        self.publisher = publisher
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._queues: dict[JobType, deque[str]] = {t: deque() for t in JobType}
        self._locks: dict[JobType, asyncio.Lock] = {
            t: asyncio.Lock() for t in JobType
        }

        logger.info(
            "job_broker_initialized",
            job_types=[t.value for t in JobType],
            lease_seconds=lease_seconds,
            source="broker",
        )

    async def create_job(
        self, job_type: "JobType | str", media_id: str, owner_id: str
    ) -> str:
        """Add a new job to the queue for its type.

        Args:
            job_type: Type of job (e.g., 'thumbnail')
            media_id: Media asset the job processes; not validated here
            owner_id: User notified when the job finishes

        Returns:
            Job ID

        Raises:
            UnknownJobTypeError: If job_type is not supported
        """
        job_type = JobType.parse(job_type)
        now = self._clock()
        job = Job(
            id=str(uuid.uuid4()),
            job_type=job_type,
            media_id=media_id,
            owner_id=owner_id,
            created_at=now,
            updated_at=now,
        )

        async with self._locks[job_type]:
            self._jobs[job.id] = job
            self._queues[job_type].append(job.id)

        logger.info(
            "job_enqueued",
            job_id=job.id,
            job_type=job_type.value,
            media_id=media_id,
            owner_id=owner_id,
            source="broker",
        )

        return job.id

    async def claim_next_job(
        self, job_type: "JobType | str", worker_id: str
    ) -> Optional[Job]:
        """Atomically take the oldest queued job of ``job_type``.

        Returns:
            Snapshot of the claimed job, or None if the queue is empty

        Raises:
            UnknownJobTypeError: If job_type is not supported
        """
        job_type = JobType.parse(job_type)

        async with self._locks[job_type]:
            queue = self._queues[job_type]
            if not queue:
                return None

            job = self._jobs[queue.popleft()]
            now = self._clock()
            job.status = JobStatus.PROCESSING
            job.claimed_by = worker_id
            job.progress = 0
            job.updated_at = now
            job.lease_expires_at = self._lease_deadline(now)
            snapshot = replace(job)

        logger.info(
            "job_claimed",
            job_id=job.id,
            job_type=job_type.value,
            worker_id=worker_id,
            source="broker",
        )

        return snapshot

    async def report_progress(
        self,
        job_id: str,
        progress: int,
        worker_id: str,
        status: "JobStatus | str" = JobStatus.PROCESSING,
    ) -> Job:
        """Record progress for a job held by ``worker_id``.

        Progress must stay within 0-100 and never decrease. Each accepted
        report refreshes the claim lease and is published to the owner.

        Raises:
            JobNotFoundError: If the job is unknown
            InvalidJobTransitionError: If the job is not processing, is held
                by another worker, or progress is out of range or decreasing
        """
        if JobStatus(status) is not JobStatus.PROCESSING:
            raise InvalidJobTransitionError(
                f"reportProgress only accepts 'processing', got {status!r}"
            )
        if not 0 <= progress <= 100:
            raise InvalidJobTransitionError(
                f"Progress must be between 0 and 100, got {progress}"
            )

        job = self._get(job_id)
        async with self._locks[job.job_type]:
            self._check_holder(job, worker_id)
            if progress < job.progress:
                raise InvalidJobTransitionError(
                    f"Progress for job {job_id} cannot decrease "
                    f"({job.progress} -> {progress})"
                )
            now = self._clock()
            job.progress = progress
            job.updated_at = now
            job.lease_expires_at = self._lease_deadline(now)
            snapshot = replace(job)

        logger.debug(
            "job_progress",
            job_id=job_id,
            progress=progress,
            source="broker",
        )

        await self._publish(
            snapshot,
            PROGRESS_EVENT,
            {"progress": snapshot.progress},
        )
        return snapshot

    async def complete_job(
        self, job_id: str, result: dict, worker_id: str
    ) -> Job:
        """Mark a job as successfully completed and notify its owner.

        Args:
            job_id: ID of the completed job
            result: Typed result (e.g., {'durationSeconds': 120})
            worker_id: Reporting worker; must be the claimant
        """
        job = self._get(job_id)
        async with self._locks[job.job_type]:
            self._check_holder(job, worker_id)
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.result = dict(result)
            job.error = None
            job.updated_at = self._clock()
            job.lease_expires_at = None
            snapshot = replace(job)

        logger.info(
            "job_completed",
            job_id=job_id,
            job_type=job.job_type.value,
            source="broker",
        )

        await self._publish_terminal(snapshot)
        return snapshot

    async def fail_job(
        self, job_id: str, error: str, worker_id: str
    ) -> Job:
        """Mark a job as failed and notify its owner.

        The broker never retries; retry is the worker's decision.

        Args:
            job_id: ID of the failed job
            error: Error message describing the failure
            worker_id: Reporting worker; must be the claimant
        """
        job = self._get(job_id)
        async with self._locks[job.job_type]:
            self._check_holder(job, worker_id)
            snapshot = self._mark_failed(job, error)

        logger.error(
            "job_failed",
            job_id=job_id,
            job_type=job.job_type.value,
            error=error,
            source="broker",
        )

        await self._publish_terminal(snapshot)
        return snapshot

    async def cancel_job(self, job_id: str, owner_id: str) -> Job:
        """Cancel a job that has not been claimed yet.

        The job becomes failed with error 'cancelled'. Claimed jobs run to
        completion or failure.

        Raises:
            JobNotFoundError: If the job is unknown or owned by someone else
            InvalidJobTransitionError: If the job is no longer queued
        """
        job = self._get(job_id)
        if job.owner_id != owner_id:
            raise JobNotFoundError(f"Job not found: {job_id}")

        async with self._locks[job.job_type]:
            if job.status is not JobStatus.QUEUED:
                raise InvalidJobTransitionError(
                    f"Job {job_id} is {job.status.value} and cannot be cancelled"
                )
            self._queues[job.job_type].remove(job_id)
            snapshot = self._mark_failed(job, CANCELLED_ERROR)

        logger.info("job_cancelled", job_id=job_id, owner_id=owner_id, source="broker")

        await self._publish_terminal(snapshot)
        return snapshot

    async def reap_expired_leases(
        self, now: Optional[datetime] = None
    ) -> list[Job]:
        """Return processing jobs whose lease expired to the head of their queue.

        Does nothing when leases are disabled.

        Returns:
            Snapshots of the requeued jobs
        """
        if self.lease_seconds <= 0:
            return []

        now = now or self._clock()
        requeued: list[Job] = []

        for job_type in JobType:
            async with self._locks[job_type]:
                expired = sorted(
                    (
                        job
                        for job in self._jobs.values()
                        if job.job_type is job_type
                        and job.status is JobStatus.PROCESSING
                        and job.lease_expires_at is not None
                        and job.lease_expires_at <= now
                    ),
                    key=lambda job: job.created_at,
                    reverse=True,
                )
                for job in expired:
                    job.status = JobStatus.QUEUED
                    job.progress = 0
                    job.lease_expires_at = None
                    job.updated_at = now
                    self._queues[job_type].appendleft(job.id)
                    requeued.append(replace(job))

        for job in requeued:
            logger.warning(
                "job_lease_expired",
                job_id=job.id,
                job_type=job.job_type.value,
                previous_worker=job.claimed_by,
                source="broker",
            )

        return requeued

    def get_job(self, job_id: str) -> Job:
        """Return a snapshot of a job.

        Raises:
            JobNotFoundError: If the job is unknown
        """
        return replace(self._get(job_id))

    def stats(self) -> dict[str, dict[str, int]]:
        """Count jobs per type and status."""
        counts = {
            t.value: {s.value: 0 for s in JobStatus} for t in JobType
        }
        for job in self._jobs.values():
            counts[job.job_type.value][job.status.value] += 1
        return counts

    def _get(self, job_id: str) -> Job:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(f"Job not found: {job_id}") from None

    def _lease_deadline(self, now: datetime) -> Optional[datetime]:
        if self.lease_seconds <= 0:
            return None
        return now + timedelta(seconds=self.lease_seconds)

    @staticmethod
    def _check_holder(job: Job, worker_id: str) -> None:
        if job.status is not JobStatus.PROCESSING:
            raise InvalidJobTransitionError(
                f"Job {job.id} is {job.status.value}, not processing"
            )
        if not worker_id or job.claimed_by != worker_id:
            raise InvalidJobTransitionError(
                f"Job {job.id} is held by {job.claimed_by}, not {worker_id}"
            )

    def _mark_failed(self, job: Job, error: str) -> Job:
        job.status = JobStatus.FAILED
        job.error = error or "unknown error"
        job.result = None
        job.updated_at = self._clock()
        job.lease_expires_at = None
        return replace(job)

    async def _publish_terminal(self, job: Job) -> None:
        await self._publish(
            job,
            job.job_type.event_type,
            {"result": job.result, "error": job.error},
        )

    async def _publish(self, job: Job, event_type: str, extra: dict) -> None:
        if self.publisher is None:
            return

        payload = {
            "jobId": job.id,
            "jobType": job.job_type.value,
            "ownerId": job.owner_id,
            "mediaId": job.media_id,
            "status": job.status.value,
            **extra,
        }
        try:
            await self.publisher.publish(job.owner_id, event_type, payload)
        except Exception as e:
            # Delivery is best-effort; the job transition already happened
            logger.error(
                "event_publish_failed",
                job_id=job.id,
                event_type=event_type,
                error=str(e),
                error_type=type(e).__name__,
                source="broker",
                exc_info=True,
            )
