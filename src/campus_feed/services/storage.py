"""Object storage for post images."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

import httpx

from campus_feed.core.errors import UploadFailedError
from campus_feed.core.settings import settings
from campus_feed.services.auth import SessionContext
from campus_feed.services.http import HTTP_BAD_REQUEST, HttpService, RequestParams

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadOptions:
    cache_control_seconds: int = 3600
    upsert: bool = False
    content_type: str | None = None


class ObjectStorage(Protocol):
    async def upload(self, path: str, data: bytes, options: UploadOptions | None = None) -> str: ...

    def get_public_url(self, path: str) -> str: ...


def guess_content_type(path: str) -> str:
    return mimetypes.guess_type(path)[0] or "application/octet-stream"


class RestStorage(HttpService):
    """Bucket client for the hosted storage service."""

    error_class = UploadFailedError

    def __init__(
        self,
        session: SessionContext,
        *,
        bucket: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url or settings.storage_url,
            api_key=api_key,
            session=session,
            transport=transport,
        )
        self.bucket = bucket or settings.storage_bucket

    async def upload(self, path: str, data: bytes, options: UploadOptions | None = None) -> str:
        """Upload ``data`` to ``path`` inside the bucket and return the object path."""
        options = options or UploadOptions()
        response = await self._request(
            RequestParams(
                method="POST",
                path=f"/object/{self.bucket}/{quote(path)}",
                content=data,
                headers={
                    "cache-control": f"max-age={options.cache_control_seconds}",
                    "x-upsert": "true" if options.upsert else "false",
                    "content-type": options.content_type or guess_content_type(path),
                },
            )
        )
        if response.status_code >= HTTP_BAD_REQUEST:
            raise self._error_from_response(response, f"Upload of {path}")
        logger.info("Uploaded %s (%d bytes) to %s", path, len(data), self.bucket)
        return path

    def get_public_url(self, path: str) -> str:
        return f"{self.base_url}/object/public/{self.bucket}/{quote(path)}"


class LocalStorage:
    """Filesystem bucket used with the local backend."""

    def __init__(self, root: str | Path | None = None, bucket: str | None = None) -> None:
        self.bucket = bucket or settings.storage_bucket
        self.root = Path(root or settings.local_storage_dir) / self.bucket

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise UploadFailedError(f"Invalid object path: {path}")
        return target

    async def upload(self, path: str, data: bytes, options: UploadOptions | None = None) -> str:
        options = options or UploadOptions()
        target = self._resolve(path)
        if target.exists() and not options.upsert:
            raise UploadFailedError(f"Object already exists: {path}")
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as exc:
            raise UploadFailedError(f"Upload of {path} failed: {exc}") from exc
        return path

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def get_public_url(self, path: str) -> str:
        return self._resolve(path).as_uri()
