import asyncio
import os
import tempfile
from pathlib import Path
from typing import Optional

import structlog

from mediajobs.config import Settings
from mediajobs.errors import BrokerUnavailableError, JobRejectedError
from mediajobs.jobs.client import BrokerClient
from mediajobs.jobs.models import Job, JobType
from mediajobs.jobs.processors import JobContext, process_job
from mediajobs.storage.content import ContentStore
from mediajobs.storage.media import MediaStore
from mediajobs.tools.ffmpeg import MediaTools

logger = structlog.get_logger()

SHUTDOWN_ERROR = "worker shutting down"
SHUTDOWN_REPORT_ATTEMPTS = 3
REPORT_BACKOFF_SECONDS = 1.0
REPORT_MAX_BACKOFF_SECONDS = 30.0
LOOP_ERROR_BACKOFF_SECONDS = 5.0


class MediaWorker:
    """A worker bound to one job type that polls the broker for jobs.

    One job is in flight at a time. Every claimed job ends with either a
    completion or a failure report, whatever happens inside the pipeline.
    """

    def __init__(
        self,
        job_type: JobType,
        broker: BrokerClient,
        media_store: MediaStore,
        tools: MediaTools,
        settings: Settings,
        content_store: Optional[ContentStore] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        """Initialize worker.

        Args:
            job_type: The only job type this worker claims
            broker: Client for the broker HTTP API
            media_store: Persistent media records
            tools: External media utilities
            settings: Process settings (poll interval, timeouts, CDN signing)
            content_store: Artifact uploads; required for thumbnail and
                transcription workers
            worker_id: Identifier reported to the broker
        """
        self.job_type = job_type
        self.broker = broker
        self.media_store = media_store
        self.tools = tools
        self.settings = settings
        self.content_store = content_store
        self.worker_id = (
            worker_id or settings.worker_id or f"{job_type.value}-{os.getpid()}"
        )
        self.current_job: Optional[Job] = None

        logger.info(
            "worker_initialized",
            worker_id=self.worker_id,
            job_type=job_type.value,
            broker_url=broker.base_url,
            source="worker",
        )

    async def start(self) -> asyncio.Task:
        """Start the polling loop as a background task.

        Returns:
            asyncio.Task that can be cancelled during shutdown
        """
        task = asyncio.create_task(self.run())
        logger.info("worker_started", worker_id=self.worker_id, source="worker")
        return task

    async def run(self) -> None:
        """Poll the broker for jobs until cancelled."""
        logger.info(
            "worker_loop_started",
            worker_id=self.worker_id,
            poll_interval=self.settings.job_poll_interval,
            job_timeout=self.settings.job_timeout,
            source="worker",
        )

        while True:
            try:
                job = await self.run_once()

                if job is None:
                    # No jobs in queue, wait before polling again
                    await asyncio.sleep(self.settings.job_poll_interval)

            except asyncio.CancelledError:
                logger.info("worker_shutting_down", worker_id=self.worker_id, source="worker")
                raise

            except BrokerUnavailableError as e:
                logger.warning(
                    "broker_unavailable",
                    worker_id=self.worker_id,
                    error=str(e),
                    source="worker",
                )
                await asyncio.sleep(self.settings.job_poll_interval)

            except Exception as loop_error:
                # Unexpected error in worker loop itself
                # Log but don't crash the worker
                logger.error(
                    "worker_loop_error",
                    error=str(loop_error),
                    error_type=type(loop_error).__name__,
                    source="worker",
                    exc_info=True,
                )
                await asyncio.sleep(LOOP_ERROR_BACKOFF_SECONDS)

    async def run_once(self) -> Optional[Job]:
        """Claim and process at most one job.

        Returns:
            The job that was processed, or None if the queue was empty
        """
        job = await self.broker.claim_next_job(self.job_type, self.worker_id)
        if job is None:
            return None

        await self.process(job)
        return job

    async def process(self, job: Job) -> None:
        """Run the pipeline for a claimed job and report the outcome."""
        self.current_job = job
        logger.info(
            "worker_processing_job",
            job_id=job.id,
            job_type=job.job_type.value,
            media_id=job.media_id,
            worker_id=self.worker_id,
            source="worker",
        )

        try:
            error: Optional[str] = None
            try:
                result = await self._execute(job)
            except asyncio.CancelledError:
                await self._report_failure(
                    job, SHUTDOWN_ERROR, max_attempts=SHUTDOWN_REPORT_ATTEMPTS
                )
                raise
            except asyncio.TimeoutError:
                error = f"Job exceeded {self.settings.job_timeout:g}s timeout"
            except Exception as job_error:
                error = f"{type(job_error).__name__}: {job_error}"
                logger.error(
                    "worker_job_failed",
                    job_id=job.id,
                    job_type=job.job_type.value,
                    error=error,
                    source="worker",
                    exc_info=True,
                )

            if error is None:
                if await self._report(self.broker.complete_job, job, result):
                    logger.info(
                        "worker_job_completed",
                        job_id=job.id,
                        job_type=job.job_type.value,
                        source="worker",
                    )
            else:
                await self._report_failure(job, error)
        finally:
            self.current_job = None

    async def _execute(self, job: Job) -> dict:
        Path(self.settings.temp_dir).mkdir(parents=True, exist_ok=True)

        # Removed on every exit path, including timeouts and cancellation
        with tempfile.TemporaryDirectory(
            prefix=f"{job.job_type.value}_{job.id}_", dir=self.settings.temp_dir
        ) as work_dir:
            ctx = JobContext(
                job=job,
                media_store=self.media_store,
                tools=self.tools,
                content_store=self.content_store,
                cdn_base_url=self.settings.cdn_base_url,
                signing_secret=(
                    self.settings.cdn_auth_secret.get_secret_value()
                    if self.settings.cdn_auth_secret
                    else ""
                ),
                token_ttl=self.settings.cdn_token_ttl,
                work_dir=Path(work_dir),
                report_progress=lambda progress: self._report_progress(job, progress),
            )
            return await asyncio.wait_for(
                process_job(ctx), timeout=self.settings.job_timeout
            )

    async def _report_progress(self, job: Job, progress: int) -> None:
        try:
            await self.broker.report_progress(job.id, self.worker_id, progress)
        except (BrokerUnavailableError, JobRejectedError) as e:
            # Progress is advisory; the terminal report is what matters
            logger.warning(
                "progress_report_failed",
                job_id=job.id,
                progress=progress,
                error=str(e),
                source="worker",
            )

    async def _report_failure(
        self, job: Job, error: str, max_attempts: Optional[int] = None
    ) -> None:
        if await self._report(self.broker.fail_job, job, error, max_attempts):
            logger.warning(
                "worker_job_reported_failed",
                job_id=job.id,
                job_type=job.job_type.value,
                error=error,
                source="worker",
            )

    async def _report(
        self, call, job: Job, value, max_attempts: Optional[int] = None
    ) -> bool:
        """Deliver a terminal report, retrying while the broker is unreachable.

        Without ``max_attempts`` this only returns once the broker has
        answered, so the worker never claims another job while this one is
        still processing on the broker.

        Returns:
            True if the broker accepted the report
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                await call(job.id, self.worker_id, value)
                return True
            except JobRejectedError as e:
                # The job is no longer ours (reaped, cancelled or unknown)
                logger.warning(
                    "terminal_report_rejected",
                    job_id=job.id,
                    error=str(e),
                    source="worker",
                )
                return False
            except BrokerUnavailableError as e:
                logger.error(
                    "terminal_report_failed",
                    job_id=job.id,
                    attempt=attempt,
                    error=str(e),
                    source="worker",
                )
                if max_attempts is not None and attempt >= max_attempts:
                    return False
                await asyncio.sleep(
                    min(REPORT_BACKOFF_SECONDS * attempt, REPORT_MAX_BACKOFF_SECONDS)
                )
