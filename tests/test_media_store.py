import pytest

from mediajobs.errors import MediaNotFoundError
from mediajobs.storage.media import MediaRecord


@pytest.mark.asyncio
async def test_upsert_and_get_media(media_store):
    await media_store.upsert_media("m1", "u1", "private:4_zabc:/lesson.mp4")

    record = await media_store.get_media("m1")

    assert record == MediaRecord(
        id="m1", owner_id="u1", storage_url="private:4_zabc:/lesson.mp4"
    )


@pytest.mark.asyncio
async def test_get_missing_media_returns_none(media_store):
    assert await media_store.get_media("missing") is None


@pytest.mark.asyncio
async def test_update_result_overwrites_previous_value(media_store):
    await media_store.upsert_media("m1", "u1", "https://public.test/a.mp4")

    await media_store.update_result("m1", "thumbnail_url", "private:/old.jpg")
    await media_store.update_result("m1", "thumbnail_url", "private:/m1_thumbnail.jpg")
    await media_store.update_result("m1", "duration_seconds", 120)

    record = await media_store.get_media("m1")
    assert record.thumbnail_url == "private:/m1_thumbnail.jpg"
    assert record.duration_seconds == 120
    assert record.transcript_url is None


@pytest.mark.asyncio
async def test_update_result_for_missing_media(media_store):
    with pytest.raises(MediaNotFoundError):
        await media_store.update_result("missing", "duration_seconds", 5)


@pytest.mark.asyncio
async def test_update_result_rejects_other_columns(media_store):
    await media_store.upsert_media("m1", "u1", None)

    with pytest.raises(ValueError):
        await media_store.update_result("m1", "owner_id", "u2")


@pytest.mark.asyncio
async def test_initialize_is_idempotent(media_store):
    await media_store.upsert_media("m1", "u1", None)
    await media_store.initialize()

    assert await media_store.get_media("m1") is not None
