"""
Content-addressed cache of rendered page images.

Layout:
    <cache_dir>/blobs/<sha[:2]>/<sha>.<format>   image bytes, shared by keys
    cache_metadata table                         one row per cache key
    cachetools.LRUCache                          hot bytes in memory

The byte budget is enforced on the logical size (sum of entry sizes), which
is never smaller than what is on disk because identical images share a blob.
"""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import threading
from typing import Any, Dict, Iterable, List, Optional

from cachetools import LRUCache
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from adapters.sqlite import SqliteAdapter, cache_metadata
from core.clock import MonotonicClock
from core.errors import CacheError
from models.cache_entry import CacheEntry, page_cache_key, thumbnail_cache_key

logger = logging.getLogger(__name__)

MB = 1024 * 1024
DAY_MS = 24 * 60 * 60 * 1000

MIN_CACHE_SIZE_MB = 50
MAX_CACHE_SIZE_MB = 2000
DEFAULT_CACHE_SIZE_MB = 500
DEFAULT_EXPIRY_DAYS = 30
NEAR_LIMIT_RATIO = 0.8


def clamp_cache_size_mb(size_mb: int) -> int:
    return max(MIN_CACHE_SIZE_MB, min(MAX_CACHE_SIZE_MB, int(size_mb)))


class PageCacheStore:
    def __init__(
        self,
        store: SqliteAdapter,
        cache_dir: str,
        max_size_mb: int = DEFAULT_CACHE_SIZE_MB,
        expiry_days: int = DEFAULT_EXPIRY_DAYS,
        memory_cache_bytes: int = 32 * MB,
        clock: Optional[MonotonicClock] = None,
    ):
        self.store = store
        self.cache_dir = cache_dir
        self.blob_dir = os.path.join(cache_dir, "blobs")
        self.max_size_bytes = clamp_cache_size_mb(max_size_mb) * MB
        self.expiry_ms = expiry_days * DAY_MS
        self.clock = clock or MonotonicClock()
        self._memory_limit = max(0, int(memory_cache_bytes))
        self._memory: LRUCache = LRUCache(maxsize=max(1, self._memory_limit), getsizeof=len)
        self._lock = threading.Lock()
        os.makedirs(self.blob_dir, exist_ok=True)

    # ---------- public API: pages & thumbnails ----------

    def put_page(self, doc_id: str, page_number: int, dpi: int, data: bytes, fmt: str) -> CacheEntry:
        key = page_cache_key(doc_id, page_number, dpi, fmt)
        return self._put(key, data, fmt, doc_id=doc_id, page_number=page_number, dpi=dpi, kind="page")

    def get_page(self, doc_id: str, page_number: int, dpi: int, fmt: str) -> Optional[bytes]:
        return self._get(page_cache_key(doc_id, page_number, dpi, fmt))

    def has_page(self, doc_id: str, page_number: int, dpi: int, fmt: str) -> bool:
        return self._entry(page_cache_key(doc_id, page_number, dpi, fmt)) is not None

    def put_thumbnail(self, doc_id: str, data: bytes, fmt: str) -> CacheEntry:
        return self._put(thumbnail_cache_key(doc_id, fmt), data, fmt, doc_id=doc_id, kind="thumbnail")

    def get_thumbnail(self, doc_id: str, fmt: str) -> Optional[bytes]:
        return self._get(thumbnail_cache_key(doc_id, fmt))

    # ---------- size accounting & eviction ----------

    def size_bytes(self) -> int:
        with self.store.begin() as c:
            return int(c.execute(select(func.coalesce(func.sum(cache_metadata.c.size_bytes), 0))).scalar())

    def entry_count(self) -> int:
        with self.store.begin() as c:
            return int(c.execute(select(func.count()).select_from(cache_metadata)).scalar())

    def lru_entries(self, limit: int = 100) -> List[CacheEntry]:
        """Least recently used first."""
        q = (
            select(cache_metadata)
            .order_by(cache_metadata.c.last_accessed.asc(), cache_metadata.c.key.asc())
            .limit(limit)
        )
        with self.store.begin() as c:
            return [CacheEntry.from_row(dict(r)) for r in c.execute(q).mappings().all()]

    def evict_lru(self, target_bytes: int) -> int:
        """Evict least recently used entries until the total is <= target_bytes."""
        target_bytes = max(0, int(target_bytes))
        removed: List[CacheEntry] = []
        with self.store.begin() as c:
            total = int(c.execute(select(func.coalesce(func.sum(cache_metadata.c.size_bytes), 0))).scalar())
            if total <= target_bytes:
                return 0
            rows = c.execute(
                select(cache_metadata).order_by(
                    cache_metadata.c.last_accessed.asc(), cache_metadata.c.key.asc()
                )
            ).mappings().all()
            for row in rows:
                if total <= target_bytes:
                    break
                entry = CacheEntry.from_row(dict(row))
                removed.append(entry)
                total -= entry.size_bytes
            c.execute(delete(cache_metadata).where(cache_metadata.c.key.in_([e.key for e in removed])))
        self._after_removal(removed)
        logger.info(f"Evicted {len(removed)} cache entries (target {target_bytes} bytes)")
        return len(removed)

    def enforce_limit(self) -> int:
        if self.size_bytes() <= self.max_size_bytes:
            return 0
        return self.evict_lru(self.max_size_bytes)

    # ---------- maintenance ----------

    def cleanup_expired(self) -> int:
        cutoff = self.clock.now_ms() - self.expiry_ms
        return self._remove_where(cache_metadata.c.created_at < cutoff)

    def optimize(self, target_mb: Optional[int] = None) -> int:
        """Evict down to `target_mb`, or to 80% of the ceiling by default."""
        if target_mb is None:
            target = int(self.max_size_bytes * NEAR_LIMIT_RATIO)
        else:
            target = int(target_mb) * MB
        return self.evict_lru(target)

    def validate_integrity(self) -> Dict[str, int]:
        """Drop entries whose blob vanished, and blobs nothing references."""
        with self.store.begin() as c:
            entries = [CacheEntry.from_row(dict(r)) for r in c.execute(select(cache_metadata)).mappings()]
        missing = {e.key for e in entries if not os.path.isfile(self._blob_path(e.sha256, e.format))}
        removed_entries = self._remove_where(cache_metadata.c.key.in_(list(missing))) if missing else 0

        referenced = {e.blob_name() for e in entries if e.key not in missing}
        removed_blobs = 0
        for root, _dirs, files in os.walk(self.blob_dir):
            for name in files:
                if name not in referenced:
                    os.remove(os.path.join(root, name))
                    removed_blobs += 1
        if removed_entries or removed_blobs:
            logger.warning(
                f"Cache integrity: removed {removed_entries} dangling entries, {removed_blobs} orphan blobs"
            )
        return {"removed_entries": removed_entries, "removed_blobs": removed_blobs}

    def perform_maintenance(self) -> Dict[str, Any]:
        report: Dict[str, Any] = {}
        for name, step in (
            ("expired", self.cleanup_expired),
            ("optimized", self.optimize),
            ("integrity", self.validate_integrity),
        ):
            try:
                report[name] = step()
            except Exception as e:
                logger.exception(f"Cache maintenance step '{name}' failed")
                report[name] = f"error: {e}"
        return report

    def clear(self) -> None:
        with self.store.begin() as c:
            c.execute(delete(cache_metadata))
        with self._lock:
            self._memory.clear()
        shutil.rmtree(self.blob_dir, ignore_errors=True)
        os.makedirs(self.blob_dir, exist_ok=True)
        logger.info("Page cache cleared")

    def clear_document(self, doc_id: str) -> int:
        return self._remove_where(cache_metadata.c.doc_id == doc_id)

    def configure(self, max_size_mb: Optional[int] = None, expiry_days: Optional[int] = None) -> None:
        if max_size_mb is not None:
            self.max_size_bytes = clamp_cache_size_mb(max_size_mb) * MB
        if expiry_days is not None:
            self.expiry_ms = int(expiry_days) * DAY_MS
        self.enforce_limit()

    def statistics(self) -> Dict[str, Any]:
        with self.store.begin() as c:
            row = c.execute(
                select(
                    func.count().label("entries"),
                    func.coalesce(func.sum(cache_metadata.c.size_bytes), 0).label("total"),
                    func.min(cache_metadata.c.last_accessed).label("oldest"),
                    func.max(cache_metadata.c.last_accessed).label("newest"),
                    func.count(func.distinct(cache_metadata.c.sha256)).label("blobs"),
                )
            ).first()
        entries, total = int(row.entries), int(row.total)
        usage = (total / self.max_size_bytes * 100) if self.max_size_bytes else 0.0
        return {
            "total_entries": entries,
            "total_size_bytes": total,
            "average_size_bytes": (total / entries) if entries else 0.0,
            "max_size_bytes": self.max_size_bytes,
            "usage_percentage": round(usage, 2),
            "is_near_limit": usage > NEAR_LIMIT_RATIO * 100,
            "blob_count": int(row.blobs),
            "oldest_access": row.oldest,
            "newest_access": row.newest,
        }

    # ---------- internals ----------

    def _blob_path(self, sha: str, fmt: str) -> str:
        return os.path.join(self.blob_dir, sha[:2], f"{sha}.{fmt}")

    def _entry(self, key: str) -> Optional[CacheEntry]:
        with self.store.begin() as c:
            row = c.execute(select(cache_metadata).where(cache_metadata.c.key == key)).mappings().first()
        return CacheEntry.from_row(dict(row)) if row else None

    def _put(self, key: str, data: bytes, fmt: str, **fields: Any) -> CacheEntry:
        if not data:
            raise CacheError(f"Refusing to cache empty image for {key}")
        sha = hashlib.sha256(data).hexdigest()
        path = self._blob_path(sha, fmt)
        try:
            if not os.path.isfile(path):
                os.makedirs(os.path.dirname(path), exist_ok=True)
                tmp = f"{path}.tmp-{os.getpid()}-{threading.get_ident()}"
                with open(tmp, "wb") as fh:
                    fh.write(data)
                os.replace(tmp, path)
        except OSError as e:
            raise CacheError(f"Failed to write cache blob for {key}: {e}") from e

        now = self.clock.now_ms()
        previous = self._entry(key)
        values = dict(
            key=key,
            format=fmt,
            sha256=sha,
            size_bytes=len(data),
            last_accessed=now,
            created_at=now,
            **fields,
        )
        stmt = sqlite_insert(cache_metadata).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[cache_metadata.c.key],
            set_={k: stmt.excluded[k] for k in values if k != "key"},
        )
        with self.store.begin() as c:
            c.execute(stmt)

        if previous is not None and previous.sha256 != sha:
            self._release_blobs([previous])
        self._remember(key, data)
        self.enforce_limit()
        return CacheEntry.from_row(values)

    def _get(self, key: str) -> Optional[bytes]:
        with self._lock:
            data = self._memory.get(key)
        if data is not None:
            if self._touch(key):
                return data
            # metadata evicted under us
            self._forget([key])
            return None

        entry = self._entry(key)
        if entry is None:
            return None
        try:
            with open(self._blob_path(entry.sha256, entry.format), "rb") as fh:
                data = fh.read()
        except OSError:
            logger.warning(f"Cache blob missing for {key}; dropping entry")
            self._remove_where(cache_metadata.c.key == key)
            return None
        if hashlib.sha256(data).hexdigest() != entry.sha256:
            logger.warning(f"Cache blob corrupted for {key}; dropping entry")
            self._remove_where(cache_metadata.c.key == key)
            return None
        self._touch(key)
        self._remember(key, data)
        return data

    def _touch(self, key: str) -> bool:
        with self.store.begin() as c:
            res = c.execute(
                update(cache_metadata)
                .where(cache_metadata.c.key == key)
                .values(last_accessed=self.clock.now_ms())
            )
            return bool(res.rowcount)

    def _remember(self, key: str, data: bytes) -> None:
        if len(data) > self._memory_limit:
            return
        with self._lock:
            self._memory[key] = data

    def _forget(self, keys: Iterable[str]) -> None:
        with self._lock:
            for key in keys:
                self._memory.pop(key, None)

    def _remove_where(self, condition) -> int:
        with self.store.begin() as c:
            removed = [
                CacheEntry.from_row(dict(r))
                for r in c.execute(select(cache_metadata).where(condition)).mappings()
            ]
            if removed:
                c.execute(delete(cache_metadata).where(cache_metadata.c.key.in_([e.key for e in removed])))
        self._after_removal(removed)
        return len(removed)

    def _after_removal(self, removed: List[CacheEntry]) -> None:
        if not removed:
            return
        self._forget(e.key for e in removed)
        self._release_blobs(removed)

    def _release_blobs(self, entries: Iterable[CacheEntry]) -> None:
        """Delete blobs no remaining key references."""
        candidates = {(e.sha256, e.format) for e in entries}
        with self.store.begin() as c:
            for sha, fmt in candidates:
                still_used = c.execute(
                    select(func.count())
                    .select_from(cache_metadata)
                    .where(and_(cache_metadata.c.sha256 == sha, cache_metadata.c.format == fmt))
                ).scalar()
                if still_used:
                    continue
                path = self._blob_path(sha, fmt)
                if os.path.isfile(path):
                    os.remove(path)
