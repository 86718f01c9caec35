import math
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

import structlog

from mediajobs.errors import MediaNotFoundError, StorageError
from mediajobs.jobs.models import Job, JobType
from mediajobs.logging_utils import strip_query
from mediajobs.security.signing import (
    build_signed_url,
    encode_asset_path,
    is_private_reference,
    parse_private_reference,
)
from mediajobs.storage.content import ContentStore
from mediajobs.storage.media import MediaRecord, MediaStore
from mediajobs.tools.ffmpeg import MediaTools, thumbnail_offset

logger = structlog.get_logger()


@dataclass
class JobContext:
    """Everything a processor needs to run one claimed job."""
    job: Job
    media_store: MediaStore
    tools: MediaTools
    content_store: Optional[ContentStore]
    cdn_base_url: str
    signing_secret: str
    token_ttl: int
    work_dir: Path
    report_progress: Callable[[int], Awaitable[None]]


async def process_job(ctx: JobContext) -> dict:
    """Process a job based on its type.

    This is the main dispatcher that routes jobs to their specific
    processors. Temporary files must be written under ``ctx.work_dir``,
    which the worker removes on every exit path.

    Args:
        ctx: JobContext for the claimed job

    Returns:
        Typed result for the broker (e.g., {'durationSeconds': 120})

    Raises:
        Exception: Any exception from the specific processor
    """
    logger.info(
        "processing_job",
        job_id=ctx.job.id,
        job_type=ctx.job.job_type.value,
        media_id=ctx.job.media_id,
        source="processor",
    )

    return await PROCESSORS[ctx.job.job_type](ctx)


async def load_media(ctx: JobContext) -> MediaRecord:
    """Fetch the media record for the job or fail the job."""
    record = await ctx.media_store.get_media(ctx.job.media_id)
    if record is None:
        raise MediaNotFoundError(f"Media file not found: {ctx.job.media_id}")
    return record


def resolve_source_url(ctx: JobContext, record: MediaRecord) -> str:
    """Return a URL the media utilities can stream the source asset from.

    Private assets get a freshly signed CDN URL; the signature covers the
    percent-encoded path the CDN will receive.
    """
    if not record.storage_url:
        raise MediaNotFoundError(f"No storage URL available for media {record.id}")

    if not is_private_reference(record.storage_url):
        logger.info("using_public_url", media_id=record.id, source="processor")
        return record.storage_url

    encoded_path = encode_asset_path(parse_private_reference(record.storage_url))
    url = build_signed_url(
        ctx.cdn_base_url, encoded_path, ctx.signing_secret, ctx.token_ttl
    )

    logger.info(
        "signed_cdn_url_generated",
        media_id=record.id,
        url=strip_query(url),
        source="processor",
    )
    return url


def _require_content_store(ctx: JobContext) -> ContentStore:
    if ctx.content_store is None:
        raise StorageError("Content store is not configured for this worker")
    return ctx.content_store


async def process_duration(ctx: JobContext) -> dict:
    """Probe the container metadata and store the duration in whole seconds."""
    record = await load_media(ctx)
    source_url = resolve_source_url(ctx, record)
    await ctx.report_progress(25)

    duration = await ctx.tools.probe_duration(source_url)
    # Halves round up; sub-second media still gets a positive duration
    seconds = max(1, int(math.floor(duration + 0.5)))
    await ctx.report_progress(75)

    await ctx.media_store.update_result(ctx.job.media_id, "duration_seconds", seconds)

    logger.info(
        "duration_extracted",
        job_id=ctx.job.id,
        media_id=ctx.job.media_id,
        duration=duration,
        stored_seconds=seconds,
        source="processor",
    )

    return {"durationSeconds": seconds}


async def process_thumbnail(ctx: JobContext) -> dict:
    """Grab one frame past any intro and store it as the media thumbnail."""
    content_store = _require_content_store(ctx)
    record = await load_media(ctx)
    source_url = resolve_source_url(ctx, record)

    if record.duration_seconds and record.duration_seconds > 0:
        duration = float(record.duration_seconds)
    else:
        logger.info(
            "duration_missing_probing",
            job_id=ctx.job.id,
            media_id=ctx.job.media_id,
            source="processor",
        )
        duration = await ctx.tools.probe_duration(source_url)
    await ctx.report_progress(25)

    offset = thumbnail_offset(duration)
    frame_path = await ctx.tools.extract_frame(
        source_url, offset, ctx.work_dir / "thumbnail.jpg"
    )
    await ctx.report_progress(50)

    stored = await content_store.upload(
        frame_path, f"{ctx.job.media_id}_thumbnail.jpg", "image/jpeg"
    )
    await ctx.report_progress(75)

    await ctx.media_store.update_result(
        ctx.job.media_id, "thumbnail_url", stored.reference
    )

    logger.info(
        "thumbnail_extracted",
        job_id=ctx.job.id,
        media_id=ctx.job.media_id,
        offset=offset,
        source="processor",
    )

    return {"thumbnailUrl": stored.reference}


async def process_transcription(ctx: JobContext) -> dict:
    """Extract speech audio, run whisper.cpp and store the plain transcript."""
    content_store = _require_content_store(ctx)
    record = await load_media(ctx)
    source_url = resolve_source_url(ctx, record)
    await ctx.report_progress(10)

    audio_path = await ctx.tools.extract_audio(source_url, ctx.work_dir / "audio.wav")
    await ctx.report_progress(40)

    text = await ctx.tools.transcribe(audio_path)
    await ctx.report_progress(70)

    file_name = f"{ctx.job.media_id}_transcript.txt"
    transcript_path = ctx.work_dir / file_name
    transcript_path.write_text(text + "\n", encoding="utf-8")

    stored = await content_store.upload(
        transcript_path, file_name, "text/plain; charset=utf-8"
    )
    await ctx.report_progress(90)

    await ctx.media_store.update_result(
        ctx.job.media_id, "transcript_url", stored.reference
    )

    logger.info(
        "transcript_generated",
        job_id=ctx.job.id,
        media_id=ctx.job.media_id,
        word_count=len(text.split()),
        source="processor",
    )

    return {"transcriptUrl": stored.reference}


PROCESSORS: dict[JobType, Callable[[JobContext], Awaitable[dict]]] = {
    JobType.DURATION: process_duration,
    JobType.THUMBNAIL: process_thumbnail,
    JobType.TRANSCRIPTION: process_transcription,
}

_missing = set(JobType) - set(PROCESSORS)
if _missing:
    raise RuntimeError(f"No processor for job types: {sorted(t.value for t in _missing)}")
