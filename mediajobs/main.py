"""Main entry point for the media job broker - FastAPI server."""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Literal, Optional

import structlog
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from mediajobs import __version__
from mediajobs.config import Settings, settings as default_settings
from mediajobs.errors import (
    InvalidJobTransitionError,
    JobNotFoundError,
    UnknownJobTypeError,
)
from mediajobs.jobs.models import JobStatus, JobType
from mediajobs.jobs.queue import JobBroker
from mediajobs.logging_utils import configure_logging
from mediajobs.reporter.bridge import NotificationBridge

logger = structlog.get_logger()

JOB_STATUS_EVENT = "job-status"


class WireModel(BaseModel):
    """Request bodies use the camelCase names of the wire protocol."""
    model_config = ConfigDict(populate_by_name=True)


class CreateJobRequest(WireModel):
    action: Literal["create-job"] = "create-job"
    job_type: JobType = Field(alias="jobType")
    media_id: str = Field(alias="mediaId", min_length=1)
    owner_id: str = Field(alias="ownerId", min_length=1)


class CreateJobsRequest(WireModel):
    jobs: list[CreateJobRequest] = Field(min_length=1)


class ClaimRequest(WireModel):
    worker_id: str = Field(alias="workerId", min_length=1)
    job_type: JobType = Field(alias="jobType")


class JobUpdateRequest(WireModel):
    job_id: str = Field(alias="jobId")
    worker_id: str = Field(alias="workerId", min_length=1)
    progress: int = Field(default=0, ge=0, le=100)
    status: Literal["processing", "completed", "failed"]
    error: Optional[str] = None
    result: Optional[dict[str, Any]] = None


class CancelRequest(WireModel):
    owner_id: str = Field(alias="ownerId", min_length=1)


async def _lease_reaper(broker: JobBroker, interval: float) -> None:
    """Requeue jobs whose workers stopped reporting."""
    while True:
        await asyncio.sleep(interval)
        try:
            await broker.reap_expired_leases()
        except Exception as e:
            logger.error(
                "lease_reaper_error",
                error=str(e),
                error_type=type(e).__name__,
                source="broker",
                exc_info=True,
            )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the broker application.

    Args:
        settings: Settings to use; defaults to the global settings
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        logger.info(
            "media_broker_starting",
            version=__version__,
            lease_seconds=settings.job_lease_seconds,
            source="broker",
        )

        reaper: Optional[asyncio.Task] = None
        if settings.lease_enabled:
            reaper = asyncio.create_task(
                _lease_reaper(app.state.broker, settings.lease_check_interval)
            )

        yield

        if reaper is not None:
            reaper.cancel()
            try:
                await reaper
            except asyncio.CancelledError:
                pass

        logger.info("media_broker_shutdown", source="broker")

    app = FastAPI(
        title="Media Jobs Broker",
        description="Job broker and notification bridge for media processing workers",
        version=__version__,
        lifespan=lifespan,
    )

    bridge = NotificationBridge()
    app.state.settings = settings
    app.state.bridge = bridge
    app.state.broker = JobBroker(
        publisher=bridge, lease_seconds=settings.job_lease_seconds
    )

    @app.exception_handler(JobNotFoundError)
    async def job_not_found(request: Request, exc: JobNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidJobTransitionError)
    async def invalid_transition(request: Request, exc: InvalidJobTransitionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(UnknownJobTypeError)
    async def unknown_job_type(request: Request, exc: UnknownJobTypeError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "connections": bridge.connection_count(),
            "jobs": app.state.broker.stats(),
        }

    @app.post("/jobs", status_code=status.HTTP_202_ACCEPTED)
    async def create_job(body: CreateJobRequest):
        """Queue one job."""
        job_id = await app.state.broker.create_job(
            body.job_type, body.media_id, body.owner_id
        )
        return {"jobId": job_id}

    @app.post("/jobs/batch", status_code=status.HTTP_202_ACCEPTED)
    async def create_jobs(body: CreateJobsRequest):
        """Queue several independent jobs, e.g. duration and thumbnail for one upload."""
        job_ids = [
            await app.state.broker.create_job(
                job.job_type, job.media_id, job.owner_id
            )
            for job in body.jobs
        ]
        return {"jobIds": job_ids}

    @app.post("/jobs/claim")
    async def claim_job(body: ClaimRequest):
        """Hand the next queued job of a type to a worker, or null."""
        job = await app.state.broker.claim_next_job(body.job_type, body.worker_id)
        return job.to_dict() if job else None

    @app.post("/jobs/update")
    async def update_job(body: JobUpdateRequest):
        """Worker callback for progress and terminal status."""
        broker: JobBroker = app.state.broker

        if body.status == JobStatus.COMPLETED.value:
            job = await broker.complete_job(
                body.job_id, body.result or {}, worker_id=body.worker_id
            )
        elif body.status == JobStatus.FAILED.value:
            job = await broker.fail_job(
                body.job_id, body.error or "unknown error", worker_id=body.worker_id
            )
        else:
            job = await broker.report_progress(
                body.job_id, body.progress, worker_id=body.worker_id
            )
        return job.to_dict()

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str):
        """Job status lookup."""
        return app.state.broker.get_job(job_id).to_dict()

    @app.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str, body: CancelRequest):
        """Cancel a job that no worker has claimed yet."""
        job = await app.state.broker.cancel_job(job_id, body.owner_id)
        return job.to_dict()

    @app.websocket("/ws")
    async def events(
        websocket: WebSocket,
        user_id: Optional[str] = Query(default=None, alias="userId"),
    ):
        """Push job events for ``userId`` to the client."""
        if not user_id:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        bridge.register(user_id, websocket)
        try:
            while True:
                message = await websocket.receive_text()
                await _handle_client_message(app, websocket, user_id, message)
        except WebSocketDisconnect:
            pass
        finally:
            bridge.unregister(websocket)

    return app


async def _handle_client_message(
    app: FastAPI, websocket: WebSocket, user_id: str, message: str
) -> None:
    """Answer status requests sent by a connected client.

    Only the owner of a job may see its status; other jobs look missing.
    """
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        logger.warning("invalid_client_message", user_id=user_id, source="bridge")
        return

    if not isinstance(data, dict) or data.get("type") != "JOB_STATUS_REQUEST":
        logger.debug(
            "unhandled_client_message",
            user_id=user_id,
            message_type=data.get("type") if isinstance(data, dict) else None,
            source="bridge",
        )
        return

    job_id = str(data.get("jobId", ""))
    try:
        job = app.state.broker.get_job(job_id)
    except JobNotFoundError:
        job = None

    if job is None or job.owner_id != user_id:
        reply = {"jobId": job_id, "error": "Job not found"}
    else:
        reply = {
            "jobId": job.id,
            "jobType": job.job_type.value,
            "mediaId": job.media_id,
            "status": job.status.value,
            "progress": job.progress,
            "error": job.error,
        }
    await app.state.bridge.reply(websocket, JOB_STATUS_EVENT, reply)


configure_logging(default_settings.log_level)

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mediajobs.main:app",
        host=default_settings.broker_host,
        port=default_settings.broker_port,
        log_level=default_settings.log_level.lower(),
    )
