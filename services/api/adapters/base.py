from __future__ import annotations

from datetime import datetime
from typing import List, Protocol

from schemas.sync import RenderResponse, SyncChange, SyncManifest, SyncPushResponse


class RemoteSyncApi(Protocol):
    """
    Abstract interface for the remote document-library API.

    The sync core only ever talks to the server through this protocol, so tests
    can plug in an in-memory fake and the app plugs in the httpx client
    (adapters.remote.SyncApiClient).
    """

    # ========== Connectivity ==========

    async def is_online(self) -> bool:
        """
        Cheap reachability probe.

        Returns:
            False when the server cannot be reached; must not raise for
            ordinary network failures.
        """
        ...

    # ========== Sync ==========

    async def get_manifest(self, since: datetime | None) -> SyncManifest:
        """
        Fetch every server-side change newer than `since`.

        Args:
            since: Checkpoint from the last successful sync, or None for a
                full pull.

        Raises:
            RemoteUnavailableError on transport failures.
        """
        ...

    async def push_changes(self, changes: List[SyncChange]) -> SyncPushResponse:
        """
        Push locally queued changes.

        Each change carries `change_id` (the queued job id). The response lists
        accepted change_ids and any conflicts the server detected.
        """
        ...

    # ========== Rendering fallback ==========

    async def render_page(
        self, doc_id: str, page_number: int, dpi: int, fmt: str
    ) -> RenderResponse:
        """Ask the server to render a page; returns a short-lived signed URL."""
        ...

    async def download(self, url: str) -> bytes:
        """Download a signed URL returned by render_page."""
        ...


class NativeRenderingWorker(Protocol):
    """
    Local rasterizer / text extractor (PDFium on desktop).

    Calls are synchronous and CPU bound; async callers run them in a thread.
    """

    def is_available(self) -> bool:
        ...

    def render_page(self, file_path: str, page_number: int, dpi: int) -> bytes:
        """
        Render a single page.

        Args:
            file_path: Local path of the document
            page_number: 1-based page number
            dpi: Target resolution

        Returns:
            Encoded image bytes in the worker's configured format.
        """
        ...

    def extract_text(self, file_path: str, page_number: int) -> str:
        """Plain text of a single page (1-based)."""
        ...

    def get_page_count(self, file_path: str) -> int:
        ...
