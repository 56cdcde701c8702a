"""Shared httpx plumbing for the hosted project's HTTP services.

Each service (identity, tables, storage) keeps one lazily created
``httpx.AsyncClient`` and sends the project API key together with the
current session's bearer token.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from campus_feed.core.errors import CampusFeedError, GatewayError
from campus_feed.core.settings import settings

if TYPE_CHECKING:
    from campus_feed.services.auth import SessionContext

logger = logging.getLogger(__name__)

HTTP_BAD_REQUEST = 400
HTTP_NO_CONTENT = 204


@dataclass
class RequestParams:
    """Parameters for HTTP requests."""

    method: str
    path: str
    json_data: Any | None = None
    content: bytes | None = None
    params: Mapping[str, Any] | list[tuple[str, Any]] | None = None
    headers: dict[str, str] | None = None


class HttpService:
    """Base class for the hosted project's HTTP clients."""

    error_class: ClassVar[type[CampusFeedError]] = GatewayError

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        session: SessionContext | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key if api_key is not None else settings.supabase_anon_key
        self.session = session
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.http_timeout_seconds
        )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=httpx.Timeout(self.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    def _build_headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        token = self.api_key
        if self.session is not None and self.session.access_token:
            token = self.session.access_token

        headers = {"apikey": self.api_key}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(self, params: RequestParams) -> httpx.Response:
        client = await self._ensure_client()
        try:
            response = await client.request(
                params.method,
                params.path,
                json=params.json_data,
                content=params.content,
                params=params.params,
                headers=self._build_headers(params.headers),
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", params.method, params.path, exc)
            raise self.error_class(f"Request failed: {exc}") from exc

        logger.debug("%s %s -> %s", params.method, params.path, response.status_code)
        return response

    def _error_from_response(self, response: httpx.Response, action: str) -> CampusFeedError:
        """Build the service's error type from an error response body."""
        code: str | None = None
        message = response.text
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, Mapping):
            raw_code = body.get("code") or body.get("error_code") or body.get("error")
            code = str(raw_code) if raw_code is not None else None
            message = str(
                body.get("message")
                or body.get("msg")
                or body.get("error_description")
                or message
            )

        text = f"{action} failed ({response.status_code}): {message}"
        if issubclass(self.error_class, GatewayError):
            return self.error_class(text, code=code, status_code=response.status_code)
        return self.error_class(text)

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
