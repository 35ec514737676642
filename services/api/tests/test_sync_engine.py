"""
Tests for the manifest sync engine: pull, apply, checkpoint and push.

Run with: pytest tests/test_sync_engine.py -v
"""
import asyncio
import random

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import BASE_MS, FakeApi, FakeClock, ts
from adapters.sqlite import SqliteAdapter
from core.errors import RemoteUnavailableError
from core.job_queue import OfflineJobQueue
from core.search_index import LocalSearchIndex
from core.sync_engine import ManifestSyncEngine, manifest_checksum
from models.job import JobStatus, JobType
from schemas.sync import (
    SyncChange,
    SyncConflict,
    SyncManifest,
    SyncOperation,
    SyncPushResponse,
    SyncStatus,
)


def change(entity_type, entity_id, op="update", offset=0, **data):
    return SyncChange(
        entity_type=entity_type,
        entity_id=entity_id,
        operation=SyncOperation(op),
        data=data or None,
        timestamp=ts(offset),
    )


def manifest(*changes, offset=60_000, checksum=""):
    return SyncManifest(timestamp=ts(offset), changes=list(changes), checksum=checksum)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def engine(store, fake_api, job_queue, search_index, page_cache, clock):
    return ManifestSyncEngine(
        store,
        fake_api,
        job_queue,
        search_index=search_index,
        clock=clock,
        page_cache=page_cache,
    )


class TestDeltaSync:
    """Tests for a full perform_delta_sync run."""

    def test_offline_skips_everything(self, engine, fake_api):
        fake_api.online = False
        progress = run(engine.perform_delta_sync())
        assert progress.status == SyncStatus.OFFLINE
        assert fake_api.manifest_calls == []

    def test_applies_manifest_and_saves_checkpoint(self, engine, fake_api, store, search_index):
        fake_api.manifest = manifest(
            change("document", "d1", "create", title="Linear Algebra", filename="la.pdf"),
            change("bookmark", "b1", "create", offset=5, doc_id="d1", page_number=3),
        )
        progress = run(engine.perform_delta_sync())

        assert progress.status == SyncStatus.COMPLETED
        assert progress.total_changes == 2
        assert progress.processed_changes == 2
        assert store.get_entity("document", "d1")["title"] == "Linear Algebra"
        bookmark = store.get_entity("bookmark", "b1")
        assert bookmark["synced"] == 1
        assert bookmark["updated_at"] == BASE_MS + 5
        assert engine.last_sync_timestamp() == fake_api.manifest.timestamp
        assert [h["doc_id"] for h in search_index.search("algebra")] == ["d1"]

    def test_next_run_uses_checkpoint(self, engine, fake_api):
        run(engine.perform_delta_sync())
        run(engine.perform_delta_sync())
        assert fake_api.manifest_calls == [None, fake_api.manifest.timestamp]

    def test_since_overrides_checkpoint(self, engine, fake_api):
        run(engine.perform_delta_sync(since=ts(-5)))
        assert fake_api.manifest_calls == [ts(-5)]

    def test_checksum_verified(self, engine, fake_api, store):
        changes = [change("document", "d1", "create", title="A")]
        fake_api.manifest = manifest(*changes, checksum=manifest_checksum(changes))
        assert run(engine.perform_delta_sync()).status == SyncStatus.COMPLETED

    def test_checksum_mismatch_applies_nothing(self, engine, fake_api, store):
        fake_api.manifest = manifest(change("document", "d1", "create", title="A"), checksum="0" * 64)
        progress = run(engine.perform_delta_sync())
        assert progress.status == SyncStatus.ERROR
        assert "checksum" in progress.error.lower()
        assert store.get_entity("document", "d1") is None
        assert engine.last_sync_timestamp() is None

    def test_failed_change_keeps_checkpoint(self, engine, fake_api, store):
        fake_api.manifest = manifest(
            change("document", "d1", "create", title="Fine"),
            # comments require doc_id and content
            change("comment", "c1", "create", offset=3, page_number=1),
        )
        progress = run(engine.perform_delta_sync())
        assert progress.status == SyncStatus.ERROR
        assert progress.failed_changes == 1
        assert store.get_entity("document", "d1") is not None
        assert engine.last_sync_timestamp() is None

    def test_manifest_transport_error_is_offline(self, engine, fake_api):
        fake_api.manifest_error = RemoteUnavailableError("connection reset")
        progress = run(engine.perform_delta_sync())
        assert progress.status == SyncStatus.OFFLINE
        assert progress.error == "connection reset"

    def test_single_flight(self, engine, fake_api):
        class SlowApi(FakeApi):
            async def get_manifest(self, since):
                await asyncio.sleep(0.05)
                return await super().get_manifest(since)

        slow = SlowApi()
        engine.api = slow

        async def both():
            return await asyncio.gather(engine.perform_delta_sync(), engine.perform_delta_sync())

        run(both())
        assert len(slow.manifest_calls) == 1

    def test_progress_listener(self, engine):
        seen = []
        engine.subscribe(lambda p: seen.append(p.status))
        run(engine.perform_delta_sync())
        assert seen[0] == SyncStatus.SYNCING
        assert seen[-1] == SyncStatus.COMPLETED


class TestApplyRules:
    """Tests for how individual server changes meet local state."""

    def test_stale_change_skipped(self, engine, store):
        engine.apply_manifest(manifest(change("document", "d1", "update", offset=10, title="New")))
        result = engine.apply_manifest(manifest(change("document", "d1", "update", offset=5, title="Old")))
        assert result.skipped == 1
        assert store.get_entity("document", "d1")["title"] == "New"

    def test_tombstone_blocks_older_create(self, engine, store):
        engine.apply_manifest(manifest(change("bookmark", "b1", "delete", offset=10)))
        engine.apply_manifest(manifest(change("bookmark", "b1", "create", offset=5, doc_id="d1", page_number=1)))
        assert store.get_entity("bookmark", "b1") is None

    def test_newer_local_edit_kept(self, engine, store, mutations, job_queue):
        bm = mutations.create_bookmark("d1", 4)
        result = engine.apply_manifest(
            manifest(change("bookmark", bm["id"], "update", offset=-10_000, doc_id="d1", page_number=9))
        )
        assert result.kept_local == 1
        assert store.get_entity("bookmark", bm["id"])["page_number"] == 4
        assert len(job_queue.get_jobs_for_entity("bookmark", bm["id"])) == 1

    def test_newer_server_change_drops_local_job(self, engine, store, mutations, job_queue):
        bm = mutations.create_bookmark("d1", 4)
        result = engine.apply_manifest(
            manifest(change("bookmark", bm["id"], "update", offset=10_000, doc_id="d1", page_number=9))
        )
        assert result.applied == 1
        row = store.get_entity("bookmark", bm["id"])
        assert row["page_number"] == 9
        assert row["synced"] == 1
        assert job_queue.get_jobs() == []

    def test_losing_comment_edit_reappended(self, engine, store, mutations, job_queue):
        store.upsert_entity(
            "comment", {"id": "c1", "doc_id": "d1", "content": "original", "created_at": BASE_MS, "synced": 1}
        )
        mutations.update_comment("c1", "my offline edit")
        engine.apply_manifest(
            manifest(change("comment", "c1", "update", offset=10_000, doc_id="d1", content="their edit"))
        )

        contents = sorted(c["content"] for c in mutations.list_comments("d1"))
        assert contents == ["my offline edit", "their edit"]
        (job,) = job_queue.get_jobs()
        assert job.type == JobType.CREATE_COMMENT
        assert job.entity_id != "c1"
        assert job.payload["content"] == "my offline edit"

    def test_natural_key_replaces_local_row(self, engine, store, mutations, job_queue):
        local = mutations.update_reading_progress("u1", "d1", 5)
        engine.apply_manifest(
            manifest(
                change("reading_progress", "srv-1", "update", offset=10_000, user_id="u1", doc_id="d1", last_page=12)
            )
        )
        assert store.get_entity("reading_progress", local["id"]) is None
        assert store.get_entity("reading_progress", "srv-1")["last_page"] == 12
        assert job_queue.get_jobs() == []

    def test_document_delete_cascades_and_clears_cache(self, engine, store, page_cache):
        engine.apply_manifest(
            manifest(
                change("document", "d1", "create", title="Doomed"),
                change("bookmark", "b1", "create", offset=1, doc_id="d1", page_number=1),
            )
        )
        page_cache.put_page("d1", 1, 150, b"img", "webp")
        engine.apply_manifest(manifest(change("document", "d1", "delete", offset=20)))

        assert store.get_entity("document", "d1") is None
        assert store.get_entity("bookmark", "b1") is None
        assert page_cache.get_page("d1", 1, 150, "webp") is None

    def test_child_older_than_parent_delete_skipped(self, engine, store):
        engine.apply_manifest(manifest(change("document", "d1", "delete", offset=20)))
        result = engine.apply_manifest(
            manifest(change("bookmark", "b1", "create", offset=5, doc_id="d1", page_number=1))
        )
        assert result.skipped == 1
        assert store.get_entity("bookmark", "b1") is None

    def test_child_newer_than_parent_delete_survives_cascade(self, engine, store):
        engine.apply_manifest(manifest(change("bookmark", "b1", "create", offset=5, doc_id="d1", page_number=1)))
        engine.apply_manifest(manifest(change("bookmark", "b2", "create", offset=6, doc_id="d1", page_number=2)))
        engine.apply_manifest(manifest(change("bookmark", "b1", "update", offset=25, doc_id="d1", page_number=9)))

        engine.apply_manifest(manifest(change("document", "d1", "delete", offset=20)))

        assert [b["id"] for b in store.list_entities("bookmark")] == ["b1"]
        assert store.get_entity("bookmark", "b1")["page_number"] == 9

    def test_tag_delete_keeps_newer_links(self, engine, store):
        engine.apply_manifest(manifest(change("tag", "t1", "create", offset=1, name="x")))
        engine.apply_manifest(manifest(change("document_tag", "dt1", "create", offset=2, doc_id="d1", tag_id="t1")))
        engine.apply_manifest(manifest(change("document_tag", "dt2", "create", offset=30, doc_id="d2", tag_id="t1")))

        engine.apply_manifest(manifest(change("tag", "t1", "delete", offset=20)))

        assert [r["id"] for r in store.list_entities("document_tag")] == ["dt2"]

    def test_local_delete_cascades_everything(self, engine, store):
        engine.apply_manifest(manifest(change("bookmark", "b1", "create", offset=25, doc_id="d1", page_number=1)))
        store.delete_entity("document", "d1")
        assert store.list_entities("bookmark") == []


def _order_scenario():
    """Full-record changes touching two documents, pages, tags and bookmarks."""
    return [
        change("document", "d1", "create", offset=0, title="Draft", author="Ada", filename="d1.pdf"),
        change("document", "d1", "update", offset=10, title="Final", author="Ada", filename="d1.pdf"),
        change("document", "d2", "create", offset=1, title="Scratch", filename="d2.pdf"),
        change("document", "d2", "delete", offset=20),
        change("bookmark", "b1", "create", offset=5, doc_id="d1", page_number=2),
        change("bookmark", "b1", "update", offset=12, doc_id="d1", page_number=7, note="later"),
        change("bookmark", "b2", "create", offset=8, doc_id="d2", page_number=1),
        change("bookmark", "b3", "create", offset=6, doc_id="d2", page_number=3),
        change("bookmark", "b3", "update", offset=25, doc_id="d2", page_number=4, note="kept"),
        change("page", "p-a", "create", offset=2, doc_id="d1", page_number=1, text_content="old text"),
        change("page", "p-a", "delete", offset=14),
        change("page", "p-b", "create", offset=15, doc_id="d1", page_number=1, text_content="new text"),
        change("tag", "t1", "create", offset=3, name="draft"),
        change("tag", "t1", "update", offset=16, name="final"),
        change("document_tag", "dt1", "create", offset=4, doc_id="d1", tag_id="t1"),
    ]


def _snapshot(store):
    state = {}
    for entity_type in ("document", "page", "tag", "document_tag", "bookmark"):
        state[entity_type] = sorted(
            (sorted(row.items()) for row in store.list_entities(entity_type)), key=repr
        )
    return state


class TestOrderIndependence:
    """The same set of server changes converges whatever order it arrives in."""

    def _apply_in_order(self, tmp_path, name, changes):
        store = SqliteAdapter.from_url(f"sqlite:///{tmp_path / name}")
        try:
            clock = FakeClock()
            index = LocalSearchIndex(store)
            index.initialize()
            engine = ManifestSyncEngine(store, FakeApi(), OfflineJobQueue(store, clock=clock), search_index=index)
            for c in changes:
                engine.apply_manifest(manifest(c))
            hits = sorted(h["doc_id"] for h in index.search("final"))
            return _snapshot(store), hits
        finally:
            store.dispose()

    def test_shuffled_arrival_converges(self, tmp_path):
        changes = _order_scenario()
        expected = self._apply_in_order(tmp_path, "ordered.db", changes)

        state, hits = expected
        assert [dict(r)["id"] for r in state["document"]] == ["d1"]
        assert [dict(r)["id"] for r in state["page"]] == ["p-b"]
        bookmarks = {dict(r)["id"]: dict(r) for r in state["bookmark"]}
        assert sorted(bookmarks) == ["b1", "b3"]
        assert bookmarks["b1"]["page_number"] == 7
        # edited after its document was deleted
        assert bookmarks["b3"]["note"] == "kept"
        assert hits == ["d1"]

        rng = random.Random(1234)
        orders = [list(reversed(changes))]
        for _ in range(20):
            shuffled = list(changes)
            rng.shuffle(shuffled)
            orders.append(shuffled)

        for i, order in enumerate(orders):
            assert self._apply_in_order(tmp_path, f"run{i}.db", order) == expected, f"order #{i} diverged"

    def test_single_manifest_any_order(self, engine, store):
        changes = _order_scenario()
        random.Random(99).shuffle(changes)
        engine.apply_manifest(manifest(*changes))
        assert [r["id"] for r in store.list_entities("document")] == ["d1"]
        assert store.get_entity("document", "d1")["title"] == "Final"


class TestPush:
    """Tests for pushing the offline queue."""

    def test_accepted_jobs_complete(self, engine, fake_api, mutations, job_queue, store):
        bm = mutations.create_bookmark("d1", 2)
        progress = run(engine.perform_delta_sync())

        assert progress.status == SyncStatus.COMPLETED
        (pushed,) = fake_api.pushed
        assert pushed[0].entity_type == "bookmark"
        assert pushed[0].operation == SyncOperation.CREATE
        assert pushed[0].data["page_number"] == 2
        assert job_queue.get_jobs() == []
        assert store.get_entity("bookmark", bm["id"])["synced"] == 1

    def test_unacknowledged_jobs_return_to_queue(self, engine, fake_api, mutations, job_queue):
        mutations.create_bookmark("d1", 2)
        fake_api.push_response = SyncPushResponse(server_timestamp=ts())
        result = run(engine.push_offline_actions())
        assert result.returned == 1
        assert job_queue.get_jobs()[0].status == JobStatus.PENDING

    def test_push_failure_counts_attempts(self, engine, fake_api, mutations, job_queue):
        mutations.create_bookmark("d1", 2)
        fake_api.push_error = RemoteUnavailableError("timeout")

        for attempt in range(1, engine.push_max_attempts + 1):
            progress = run(engine.perform_delta_sync())
            assert progress.status == SyncStatus.OFFLINE
            (job,) = job_queue.get_jobs()
            assert job.attempts == attempt

        assert job.status == JobStatus.FAILED
        assert job.last_error == "timeout"

    def test_push_failure_does_not_lose_checkpoint(self, engine, fake_api, mutations):
        mutations.create_bookmark("d1", 2)
        fake_api.push_error = RemoteUnavailableError("timeout")
        run(engine.perform_delta_sync())
        assert engine.last_sync_timestamp() == fake_api.manifest.timestamp

    def _conflict(self, fake_api, entity_type, entity_id, resolution, client=None, server=None):
        fake_api.push_response = SyncPushResponse(
            conflicts=[
                SyncConflict(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    client_version=client or {},
                    server_version=server or {},
                    resolution=resolution,
                )
            ],
            server_timestamp=ts(),
        )

    def test_server_wins(self, engine, fake_api, mutations, job_queue, store):
        bm = mutations.create_bookmark("d1", 2)
        self._conflict(fake_api, "bookmark", bm["id"], "server_wins", server={"doc_id": "d1", "page_number": 30})
        result = run(engine.push_offline_actions())
        assert result.conflicts == 1
        assert job_queue.get_jobs() == []
        row = store.get_entity("bookmark", bm["id"])
        assert row["page_number"] == 30
        assert row["synced"] == 1

    def test_client_wins(self, engine, fake_api, mutations, job_queue, store):
        bm = mutations.create_bookmark("d1", 2)
        self._conflict(fake_api, "bookmark", bm["id"], "client_wins")
        run(engine.push_offline_actions())
        assert job_queue.get_jobs() == []
        assert store.get_entity("bookmark", bm["id"])["page_number"] == 2
        assert store.get_entity("bookmark", bm["id"])["synced"] == 1

    def test_merge_required_comment(self, engine, fake_api, mutations, job_queue):
        c = mutations.add_comment("d1", "mine")
        self._conflict(
            fake_api,
            "comment",
            c["id"],
            "merge_required",
            client={"doc_id": "d1", "content": "mine"},
            server={"doc_id": "d1", "content": "theirs"},
        )
        run(engine.push_offline_actions())

        contents = sorted(x["content"] for x in mutations.list_comments("d1"))
        assert contents == ["mine", "theirs"]
        (job,) = job_queue.get_jobs()
        assert job.type == JobType.CREATE_COMMENT
        assert job.entity_id != c["id"]

    def test_unknown_resolution_parks_job(self, engine, fake_api, mutations, job_queue):
        bm = mutations.create_bookmark("d1", 2)
        self._conflict(fake_api, "bookmark", bm["id"], "ask_user")
        result = run(engine.push_offline_actions())
        assert result.parked == 1
        (job,) = job_queue.get_conflicted_jobs()
        assert job.entity_id == bm["id"]
        assert "ask_user" in job.last_error
        # parked jobs are not retried automatically
        assert job_queue.process_retryable_jobs() == 0

    def test_server_wins_with_empty_record_deletes(self, engine, fake_api, mutations, store):
        bm = mutations.create_bookmark("d1", 2)
        self._conflict(fake_api, "bookmark", bm["id"], "server_wins")
        run(engine.push_offline_actions())
        assert store.get_entity("bookmark", bm["id"]) is None
