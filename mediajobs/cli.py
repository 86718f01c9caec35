"""Command line entry points for the broker and worker processes."""

import asyncio
import signal
from typing import Optional

import structlog
import typer
import uvicorn

from mediajobs.config import Settings, settings as default_settings
from mediajobs.errors import ConfigurationError
from mediajobs.jobs.client import BrokerClient
from mediajobs.jobs.models import JobType
from mediajobs.jobs.worker import MediaWorker
from mediajobs.logging_utils import configure_logging
from mediajobs.storage.content import ContentStore
from mediajobs.storage.media import MediaStore
from mediajobs.tools.ffmpeg import MediaTools

logger = structlog.get_logger()

cli = typer.Typer(add_completion=False, help="Media job broker and workers")


@cli.command()
def broker(
    host: Optional[str] = typer.Option(None, help="Interface to bind"),
    port: Optional[int] = typer.Option(None, help="Port to listen on"),
) -> None:
    """Run the job broker and notification bridge."""
    configure_logging(default_settings.log_level)
    uvicorn.run(
        "mediajobs.main:app",
        host=host or default_settings.broker_host,
        port=port or default_settings.broker_port,
        log_level=default_settings.log_level.lower(),
    )


@cli.command()
def worker(
    job_type: JobType = typer.Option(..., "--type", "-t", help="Job type to process"),
    worker_id: Optional[str] = typer.Option(
        None, "--worker-id", help="Identifier reported to the broker"
    ),
) -> None:
    """Run one worker process bound to a single job type."""
    configure_logging(default_settings.log_level)

    try:
        default_settings.require_worker_settings(job_type.value)
    except ConfigurationError as e:
        logger.error("worker_startup_aborted", job_type=job_type.value, error=str(e))
        raise typer.Exit(code=2)

    asyncio.run(run_worker(default_settings, job_type, worker_id))


async def run_worker(
    settings: Settings, job_type: JobType, worker_id: Optional[str] = None
) -> None:
    """Build a worker from settings and poll until SIGINT or SIGTERM."""
    media_store = MediaStore(settings.sqlite_path)
    await media_store.initialize()

    content_store = None
    if job_type in (JobType.THUMBNAIL, JobType.TRANSCRIPTION):
        content_store = ContentStore.from_settings(settings)

    async with BrokerClient(settings.broker_url) as broker_client:
        media_worker = MediaWorker(
            job_type=job_type,
            broker=broker_client,
            media_store=media_store,
            tools=MediaTools.from_settings(settings),
            settings=settings,
            content_store=content_store,
            worker_id=worker_id,
        )
        task = await media_worker.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, task.cancel)

        try:
            await task
        except asyncio.CancelledError:
            logger.info("worker_stopped", worker_id=media_worker.worker_id)
        finally:
            if content_store is not None:
                await content_store.aclose()


if __name__ == "__main__":
    cli()
