"""Artifact uploads to the content store (Backblaze B2 native API)."""

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import httpx
import structlog

from mediajobs.errors import StorageError, TransientStorageError
from mediajobs.security.signing import private_reference

logger = structlog.get_logger()

# Statuses worth a retry after refreshing the upload target. B2 answers 401
# when an upload URL's token has expired.
_TRANSIENT_STATUSES = {401, 408, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class StoredObject:
    """An artifact stored in the content store."""
    file_id: str
    file_name: str

    @property
    def reference(self) -> str:
        """Pointer written to the media record; stable across re-uploads."""
        return private_reference(self.file_name)


class ContentStore:
    """Upload derived artifacts to a B2 bucket."""

    def __init__(
        self,
        api_url: str,
        key_id: str,
        application_key: str,
        bucket_id: str,
        max_retries: int = 1,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize content store.

        Args:
            api_url: B2 API root (e.g., 'https://api.backblazeb2.com')
            key_id: Application key ID
            application_key: Application key
            bucket_id: Target bucket ID
            max_retries: Retries after a transient upload failure
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport, used by tests
        """
        self.api_url = api_url.rstrip("/")
        self.bucket_id = bucket_id
        self.max_retries = max_retries
        self._key_id = key_id
        self._application_key = application_key
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

        self._auth_token: Optional[str] = None
        self._account_api_url: Optional[str] = None
        self._upload_url: Optional[str] = None
        self._upload_token: Optional[str] = None

        logger.info(
            "content_store_initialized",
            api_url=self.api_url,
            bucket_id=bucket_id,
            max_retries=max_retries,
            source="content_store",
        )

    @classmethod
    def from_settings(cls, settings) -> "ContentStore":
        return cls(
            api_url=settings.b2_api_url,
            key_id=settings.b2_key_id or "",
            application_key=(
                settings.b2_application_key.get_secret_value()
                if settings.b2_application_key
                else ""
            ),
            bucket_id=settings.b2_bucket_id or "",
            max_retries=settings.upload_max_retries,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def upload(
        self, local_path: Path, file_name: str, content_type: str
    ) -> StoredObject:
        """Upload a file, overwriting any earlier version under the same name.

        A transient failure refreshes the upload URL and retries up to
        ``max_retries`` times before giving up.

        Args:
            local_path: File to upload
            file_name: Name in the bucket (deterministic per media and job type)
            content_type: MIME type of the file

        Returns:
            StoredObject describing the uploaded file

        Raises:
            TransientStorageError: If every attempt failed transiently
            StorageError: If the store rejected the upload
        """
        content = local_path.read_bytes()
        attempts = self.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                if attempt > 1 or not self._upload_url:
                    await self._refresh_upload_url()
                return await self._upload_once(content, file_name, content_type)
            except TransientStorageError as e:
                if attempt >= attempts:
                    logger.error(
                        "content_upload_failed",
                        file_name=file_name,
                        attempts=attempt,
                        error=str(e),
                        source="content_store",
                    )
                    raise
                logger.warning(
                    "content_upload_retrying",
                    file_name=file_name,
                    attempt=attempt,
                    error=str(e),
                    source="content_store",
                )
                self._upload_url = None

        # Unreachable: the loop either returns or raises
        raise StorageError(f"Upload of {file_name} did not run")

    async def _authorize(self) -> None:
        """Step 1: exchange the application key for an account token."""
        response = await self._request(
            "GET",
            f"{self.api_url}/b2api/v2/b2_authorize_account",
            auth=(self._key_id, self._application_key),
        )
        data = response.json()
        self._auth_token = data["authorizationToken"]
        self._account_api_url = data["apiUrl"].rstrip("/")

        logger.info("content_store_authorized", source="content_store")

    async def _refresh_upload_url(self) -> None:
        """Step 2: obtain a fresh upload URL for the bucket."""
        if not self._auth_token:
            await self._authorize()

        response = await self._request(
            "POST",
            f"{self._account_api_url}/b2api/v2/b2_get_upload_url",
            headers={"Authorization": self._auth_token},
            json={"bucketId": self.bucket_id},
        )
        if response.status_code == 401:
            # Account token expired; authorize again once
            await self._authorize()
            response = await self._request(
                "POST",
                f"{self._account_api_url}/b2api/v2/b2_get_upload_url",
                headers={"Authorization": self._auth_token},
                json={"bucketId": self.bucket_id},
            )
        _raise_for_status(response, "get upload URL")

        data = response.json()
        self._upload_url = data["uploadUrl"]
        self._upload_token = data["authorizationToken"]

    async def _upload_once(
        self, content: bytes, file_name: str, content_type: str
    ) -> StoredObject:
        """Step 3: send the bytes to the upload URL."""
        response = await self._request(
            "POST",
            self._upload_url,
            headers={
                "Authorization": self._upload_token,
                "X-Bz-File-Name": quote(file_name, safe="/"),
                "Content-Type": content_type,
                "X-Bz-Content-Sha1": hashlib.sha1(content).hexdigest(),
            },
            content=content,
        )
        _raise_for_status(response, "upload")

        data = response.json()
        stored = StoredObject(file_id=data["fileId"], file_name=file_name)

        logger.info(
            "content_uploaded",
            file_name=file_name,
            size=len(content),
            source="content_store",
        )
        return stored

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransientStorageError(
                f"Content store unreachable: {type(e).__name__}: {e}"
            ) from e

        if method == "GET":
            _raise_for_status(response, "authorize")
        return response


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.is_success:
        return

    message = f"Content store {action} failed: {response.status_code} - {response.text[:200]}"
    if response.status_code in _TRANSIENT_STATUSES:
        raise TransientStorageError(message)
    raise StorageError(message)
