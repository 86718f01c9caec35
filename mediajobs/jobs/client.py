import httpx
import structlog
from typing import Optional

from mediajobs.errors import BrokerUnavailableError, JobRejectedError
from mediajobs.jobs.models import Job, JobStatus, JobType

logger = structlog.get_logger()


class BrokerClient:
    """HTTP client a worker process uses to talk to the broker."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize broker client.

        Args:
            base_url: Broker root URL (e.g., 'http://localhost:8080')
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

        logger.info("broker_client_initialized", broker_url=self.base_url, source="worker")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BrokerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def claim_next_job(
        self, job_type: JobType, worker_id: str
    ) -> Optional[Job]:
        """Ask the broker for the next job of ``job_type``.

        Returns:
            The claimed Job, or None when the queue is empty
        """
        data = await self._post(
            "/jobs/claim",
            {"workerId": worker_id, "jobType": job_type.value},
        )
        if not data:
            return None
        return Job.from_dict(data)

    async def report_progress(
        self, job_id: str, worker_id: str, progress: int
    ) -> None:
        await self._post(
            "/jobs/update",
            {
                "jobId": job_id,
                "workerId": worker_id,
                "progress": int(round(progress)),
                "status": JobStatus.PROCESSING.value,
            },
        )

    async def complete_job(
        self, job_id: str, worker_id: str, result: dict
    ) -> None:
        await self._post(
            "/jobs/update",
            {
                "jobId": job_id,
                "workerId": worker_id,
                "progress": 100,
                "status": JobStatus.COMPLETED.value,
                "result": result,
            },
        )

    async def fail_job(self, job_id: str, worker_id: str, error: str) -> None:
        await self._post(
            "/jobs/update",
            {
                "jobId": job_id,
                "workerId": worker_id,
                "progress": 0,
                "status": JobStatus.FAILED.value,
                "error": error,
            },
        )

    async def _post(self, path: str, payload: dict):
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.error(
                "broker_request_rejected",
                path=path,
                status_code=status_code,
                detail=e.response.text[:500],
                source="worker",
            )
            message = f"Broker rejected {path}: {status_code} {e.response.text[:200]}"
            if 400 <= status_code < 500:
                raise JobRejectedError(message) from e
            raise BrokerUnavailableError(message) from e
        except httpx.HTTPError as e:
            raise BrokerUnavailableError(
                f"Broker request {path} failed: {type(e).__name__}: {e}"
            ) from e

        return response.json()
