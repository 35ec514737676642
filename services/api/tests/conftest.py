"""
Shared fixtures: a throwaway SQLite store, a controllable clock and in-memory
stand-ins for the remote API and the native rendering worker.
"""
import os
import random
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from adapters.sqlite import SqliteAdapter
from core.clock import MonotonicClock, from_ms
from core.errors import RemoteUnavailableError
from core.job_queue import OfflineJobQueue
from core.mutations import LocalMutationService
from core.page_cache import PageCacheStore
from core.search_index import LocalSearchIndex
from schemas.sync import RenderResponse, SyncChange, SyncManifest, SyncPushResponse

BASE_MS = 1_700_000_000_000


class FakeClock(MonotonicClock):
    """Deterministic wall clock; still strictly increasing per now_ms() call."""

    def __init__(self, start_ms: int = BASE_MS):
        super().__init__()
        self.current = start_ms

    def wall_ms(self) -> int:
        return self.current

    def advance(self, ms: int) -> None:
        self.current += ms


class FakeApi:
    """In-memory RemoteSyncApi."""

    def __init__(self):
        self.online = True
        self.manifest = SyncManifest(timestamp=from_ms(BASE_MS))
        self.manifest_error: Optional[Exception] = None
        self.push_error: Optional[Exception] = None
        self.push_response: Optional[SyncPushResponse] = None
        self.pushed: List[List[SyncChange]] = []
        self.manifest_calls: List[Optional[datetime]] = []
        self.render_expires_at = datetime(2100, 1, 1, tzinfo=timezone.utc)
        self.downloads: Dict[str, bytes] = {}
        self.render_calls = 0

    async def is_online(self) -> bool:
        return self.online

    async def get_manifest(self, since):
        self.manifest_calls.append(since)
        if self.manifest_error is not None:
            raise self.manifest_error
        return self.manifest

    async def push_changes(self, changes):
        self.pushed.append(list(changes))
        if self.push_error is not None:
            raise self.push_error
        if self.push_response is not None:
            return self.push_response
        return SyncPushResponse(
            accepted_changes=[c.change_id for c in changes],
            server_timestamp=datetime.now(timezone.utc),
        )

    async def render_page(self, doc_id, page_number, dpi, fmt):
        self.render_calls += 1
        if not self.online:
            raise RemoteUnavailableError("offline")
        url = f"https://cdn.example/{doc_id}/{page_number}.{fmt}"
        self.downloads.setdefault(url, f"server:{doc_id}:{page_number}:{dpi}".encode())
        return RenderResponse(signed_url=url, expires_at=self.render_expires_at)

    async def download(self, url):
        return self.downloads[url]


class FakeWorker:
    """NativeRenderingWorker over an in-memory 'document' of page texts."""

    def __init__(self, pages: Optional[List[str]] = None, image_format: str = "webp"):
        self.pages = pages if pages is not None else ["first page", "second page"]
        self.image_format = image_format
        self.available = True
        self.render_calls = 0

    def is_available(self) -> bool:
        return self.available

    def render_page(self, file_path, page_number, dpi):
        self.render_calls += 1
        return f"native:{os.path.basename(file_path)}:{page_number}:{dpi}".encode()

    def extract_text(self, file_path, page_number):
        return self.pages[page_number - 1]

    def get_page_count(self, file_path):
        return len(self.pages)


def ts(offset_ms: int = 0) -> datetime:
    """Datetime `offset_ms` after the fixed test epoch."""
    return from_ms(BASE_MS) + timedelta(milliseconds=offset_ms)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    adapter = SqliteAdapter.from_url(f"sqlite:///{tmp_path / 'test.db'}")
    yield adapter
    adapter.dispose()


@pytest.fixture
def search_index(store):
    index = LocalSearchIndex(store)
    index.initialize()
    return index


@pytest.fixture
def job_queue(store, clock):
    return OfflineJobQueue(store, clock=clock, rng=random.Random(7))


@pytest.fixture
def mutations(store, job_queue, clock):
    return LocalMutationService(store, job_queue, clock=clock)


@pytest.fixture
def page_cache(store, clock, tmp_path):
    return PageCacheStore(store, str(tmp_path / "cache"), clock=clock)


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def fake_worker():
    return FakeWorker()
