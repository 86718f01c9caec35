import asyncio
import json
from pathlib import Path
from typing import Optional

import httpx
import pytest
import pytest_asyncio

from mediajobs.config import Settings
from mediajobs.errors import InvalidJobTransitionError, JobNotFoundError, JobRejectedError, MediaToolError
from mediajobs.jobs.queue import JobBroker
from mediajobs.reporter.bridge import NotificationBridge
from mediajobs.storage.content import StoredObject
from mediajobs.storage.media import MediaStore

SECRET = "test-signing-secret"
CDN_BASE = "https://cdn.test"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        cdn_base_url=CDN_BASE,
        cdn_auth_secret=SECRET,
        cdn_token_ttl=3600,
        b2_api_url="https://b2.test",
        b2_key_id="key-id",
        b2_application_key="app-key",
        b2_bucket_id="bucket-1",
        job_poll_interval=0.01,
        job_timeout=5.0,
        media_tool_timeout=5.0,
        temp_dir=str(tmp_path / "work"),
        data_dir=str(tmp_path / "data"),
    )


@pytest_asyncio.fixture()
async def media_store(settings: Settings) -> MediaStore:
    store = MediaStore(settings.sqlite_path)
    await store.initialize()
    return store


@pytest.fixture()
def bridge() -> NotificationBridge:
    return NotificationBridge()


@pytest.fixture()
def broker(bridge: NotificationBridge) -> JobBroker:
    return JobBroker(publisher=bridge)


class FakeConnection:
    """Collects frames pushed by the bridge."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.messages: list[dict] = []

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("connection closed")
        self.messages.append(json.loads(data))

    def events(self, event_type: str) -> list[dict]:
        return [m for m in self.messages if m["eventType"] == event_type]


class InProcessBrokerClient:
    """BrokerClient stand-in that calls a JobBroker directly."""

    base_url = "inprocess://broker"

    def __init__(self, broker: JobBroker) -> None:
        self.broker = broker

    async def claim_next_job(self, job_type, worker_id):
        return await self.broker.claim_next_job(job_type, worker_id)

    async def report_progress(self, job_id, worker_id, progress):
        await self._call(self.broker.report_progress, job_id, progress, worker_id=worker_id)

    async def complete_job(self, job_id, worker_id, result):
        await self._call(self.broker.complete_job, job_id, result, worker_id=worker_id)

    async def fail_job(self, job_id, worker_id, error):
        await self._call(self.broker.fail_job, job_id, error, worker_id=worker_id)

    @staticmethod
    async def _call(method, *args, **kwargs):
        try:
            await method(*args, **kwargs)
        except (InvalidJobTransitionError, JobNotFoundError) as e:
            raise JobRejectedError(str(e)) from e


class FakeMediaTools:
    """Media utilities that never spawn a process."""

    def __init__(
        self,
        duration: float = 120.0,
        error: Optional[Exception] = None,
        hang: bool = False,
        transcript: str = "hello from the lecture",
    ) -> None:
        self.duration = duration
        self.error = error
        self.hang = hang
        self.transcript = transcript
        self.calls: list[tuple] = []

    async def _maybe_fail(self) -> None:
        if self.hang:
            await asyncio.sleep(60)
        if self.error is not None:
            raise self.error

    async def probe_duration(self, source_url: str) -> float:
        self.calls.append(("probe_duration", source_url))
        await self._maybe_fail()
        return self.duration

    async def extract_frame(self, source_url: str, offset: float, output_path: Path) -> Path:
        self.calls.append(("extract_frame", source_url, offset))
        await self._maybe_fail()
        output_path.write_bytes(b"\xff\xd8jpeg")
        return output_path

    async def extract_audio(self, source_url: str, output_path: Path) -> Path:
        self.calls.append(("extract_audio", source_url))
        await self._maybe_fail()
        output_path.write_bytes(b"RIFF")
        return output_path

    async def transcribe(self, audio_path: Path) -> str:
        self.calls.append(("transcribe", str(audio_path)))
        return self.transcript

    def offsets(self) -> list[float]:
        return [call[2] for call in self.calls if call[0] == "extract_frame"]


class FakeContentStore:
    """Records uploads and returns deterministic objects."""

    def __init__(self) -> None:
        self.uploads: list[tuple[str, str, bytes]] = []

    async def upload(self, local_path: Path, file_name: str, content_type: str) -> StoredObject:
        self.uploads.append((file_name, content_type, local_path.read_bytes()))
        return StoredObject(file_id=f"file-{len(self.uploads)}", file_name=file_name)


def corrupt_source_error() -> MediaToolError:
    return MediaToolError("ffprobe failed with code 1: moov atom not found")


API_URL = "https://api.b2.test"
ACCOUNT_URL = "https://api001.b2.test"
UPLOAD_URL = "https://pod-000.b2.test/b2api/v2/b2_upload_file/bucket-1"


class FakeB2:
    """Minimal B2 native API served through httpx.MockTransport."""

    def __init__(self, upload_responses=None):
        # Each entry is a status code or an exception raised for that upload
        self.upload_responses = list(upload_responses or [])
        self.requests: list[httpx.Request] = []
        self.upload_url_requests = 0
        self.authorizations = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/b2_authorize_account"):
            self.authorizations += 1
            return httpx.Response(
                200,
                json={"authorizationToken": "account-token", "apiUrl": ACCOUNT_URL},
            )
        if path.endswith("/b2_get_upload_url"):
            self.upload_url_requests += 1
            assert request.headers["Authorization"] == "account-token"
            assert json.loads(request.content) == {"bucketId": "bucket-1"}
            return httpx.Response(
                200,
                json={
                    "uploadUrl": UPLOAD_URL,
                    "authorizationToken": f"upload-token-{self.upload_url_requests}",
                },
            )

        outcome = self.upload_responses.pop(0) if self.upload_responses else 200
        if isinstance(outcome, Exception):
            raise outcome
        if outcome != 200:
            return httpx.Response(outcome, text="service unavailable")
        return httpx.Response(
            200,
            json={"fileId": "4_zfile", "fileName": request.headers["X-Bz-File-Name"]},
        )

    def uploads(self) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == UPLOAD_URL]


