"""
httpx client for the remote document-library API.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.conflict_resolver import changes_digest
from core.errors import RemoteUnavailableError, SyncError
from schemas.sync import (
    RenderResponse,
    SyncChange,
    SyncManifest,
    SyncPushRequest,
    SyncPushResponse,
)

logger = logging.getLogger(__name__)


def retry_remote_read(func):
    """Retry idempotent reads with exponential backoff while the server is unreachable."""
    return retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(RemoteUnavailableError),
        reraise=True,
    )(func)


class SyncApiClient:
    """
    Implements adapters.base.RemoteSyncApi over HTTP.

    A fresh AsyncClient per call keeps the object safe to share between the
    scheduler task and request handlers. `transport` is injectable for tests.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or self.timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    def _plain_client(self) -> httpx.AsyncClient:
        # No API credentials; signed URLs carry their own authorization
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=True, transport=self._transport
        )

    async def _request(
        self, method: str, path: str, authenticated: bool = True, **kwargs: Any
    ) -> httpx.Response:
        try:
            async with (self._client() if authenticated else self._plain_client()) as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"Timeout calling {method} {path}")
            raise RemoteUnavailableError(f"Timeout calling {path}") from e
        except httpx.RequestError as e:
            logger.error(f"Error calling {method} {path}: {str(e)}")
            raise RemoteUnavailableError(f"Failed to reach server: {str(e)}") from e

        if response.status_code >= 400:
            logger.error(f"{method} {path} failed: HTTP {response.status_code}")
            raise SyncError(f"{method} {path} failed: HTTP {response.status_code}")
        return response

    async def is_online(self) -> bool:
        try:
            async with self._client(timeout=5.0) as client:
                response = await client.get("/api/health")
            return response.status_code < 500
        except httpx.RequestError:
            return False

    @retry_remote_read
    async def get_manifest(self, since: datetime | None) -> SyncManifest:
        params: Dict[str, str] = {}
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            params["since"] = since.isoformat()
        response = await self._request("GET", "/api/sync/manifest", params=params)
        payload = response.json()
        manifest = SyncManifest.model_validate(payload)
        manifest.received_digest = changes_digest(payload.get("changes") or [])
        logger.info(f"Fetched manifest with {len(manifest.changes)} changes")
        return manifest

    async def push_changes(self, changes: List[SyncChange]) -> SyncPushResponse:
        body = SyncPushRequest(changes=changes, client_timestamp=datetime.now(timezone.utc))
        response = await self._request(
            "POST", "/api/sync/push", json=body.model_dump(mode="json")
        )
        result = SyncPushResponse.model_validate(response.json())
        logger.info(
            f"Pushed {len(changes)} changes: {len(result.accepted_changes)} accepted, "
            f"{len(result.conflicts)} conflicts"
        )
        return result

    @retry_remote_read
    async def render_page(
        self, doc_id: str, page_number: int, dpi: int, fmt: str
    ) -> RenderResponse:
        response = await self._request(
            "GET",
            f"/api/documents/{doc_id}/render",
            params={"page": page_number, "dpi": dpi, "format": fmt},
        )
        return RenderResponse.model_validate(response.json())

    @retry_remote_read
    async def download(self, url: str) -> bytes:
        # Signed URLs are absolute and may point at third-party storage
        response = await self._request("GET", url, authenticated=False)
        return response.content
