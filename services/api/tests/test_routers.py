"""
HTTP tests for the FastAPI app, wired with in-memory remote API and worker.

Run with: pytest tests/test_routers.py -v
"""
import pytest
from fastapi.testclient import TestClient

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import FakeApi, FakeClock, FakeWorker, ts
from main import build_services, create_app
from schemas.sync import SyncChange, SyncManifest, SyncOperation
from settings import Settings


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def client(tmp_path, api):
    settings = Settings(
        db_url=f"sqlite:///{tmp_path / 'app.db'}",
        cache_dir=str(tmp_path / "page_cache"),
        scheduler_enabled=False,
    )
    services = build_services(settings, api=api, worker=FakeWorker(), clock=FakeClock())
    app = create_app(settings, services=services)
    with TestClient(app) as c:
        yield c


def _document_change(doc_id, title, full_path=None, offset=1):
    data = {"id": doc_id, "title": title, "filename": f"{doc_id}.pdf"}
    if full_path:
        data["full_path"] = full_path
    return SyncChange(
        entity_type="document",
        entity_id=doc_id,
        operation=SyncOperation.CREATE,
        data=data,
        timestamp=ts(offset),
    )


class TestHealth:
    def test_root_and_probes(self, client):
        assert client.get("/").json()["status"] == "running"
        assert client.get("/healthz").json()["status"] == "ok"

        ready = client.get("/readyz")
        assert ready.status_code == 200
        assert ready.json()["search_index"] is True

    def test_health_reports_sync_and_queue(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["sync"]["status"] == "idle"
        assert body["jobs"] == {"pending": 0, "failed": 0}

    def test_request_id_header(self, client):
        assert client.get("/healthz").headers["X-Request-ID"]

    def test_metrics(self, client):
        client.get("/healthz")
        body = client.get("/metrics").json()
        assert body["requests"]["total"] >= 1
        assert "cache" in body and "rendering" in body


class TestAnnotations:
    """Offline writes go straight to the local store and the job queue."""

    def test_bookmark_crud(self, client):
        created = client.post("/bookmarks", json={"doc_id": "d1", "page_number": 3, "note": "here"})
        assert created.status_code == 201
        bm_id = created.json()["id"]

        listed = client.get("/documents/d1/bookmarks").json()
        assert [b["id"] for b in listed] == [bm_id]

        patched = client.patch(f"/bookmarks/{bm_id}", json={"note": "there"})
        assert patched.json()["note"] == "there"

        assert client.delete(f"/bookmarks/{bm_id}").status_code == 204
        assert client.get("/documents/d1/bookmarks").json() == []
        assert client.delete(f"/bookmarks/{bm_id}").status_code == 404

        assert client.get("/jobs/status").json()["pending"] == 3

    def test_bookmark_validation(self, client):
        assert client.post("/bookmarks", json={"doc_id": "d1", "page_number": 0}).status_code == 422
        assert client.patch("/bookmarks/x", json={}).status_code == 422

    def test_comments(self, client):
        created = client.post("/comments", json={"doc_id": "d1", "content": "good", "anchor": {"start": 1}})
        assert created.status_code == 201
        c_id = created.json()["id"]
        client.patch(f"/comments/{c_id}", json={"content": "better"})
        assert client.get("/documents/d1/comments").json()[0]["content"] == "better"

    def test_tags(self, client):
        assert client.post("/tags", json={"name": "   "}).status_code == 400
        tag = client.post("/tags", json={"name": "physics"}).json()
        assert client.post("/documents/d1/tags", json={"tag_id": tag["id"]}).status_code == 201
        assert [t["name"] for t in client.get("/documents/d1/tags").json()] == ["physics"]
        assert client.post("/documents/d1/tags", json={"tag_id": "nope"}).status_code == 404
        assert client.delete(f"/documents/d1/tags/{tag['id']}").status_code == 204

    def test_shares(self, client):
        bad = client.post("/shares", json={"subject_id": "d1", "grantee_email": "a@b.c", "permission": "owner"})
        assert bad.status_code == 400
        share = client.post("/shares", json={"subject_id": "d1", "grantee_email": "a@b.c"}).json()
        updated = client.patch(f"/shares/{share['id']}", json={"permission": "comment"})
        assert updated.json()["permission"] == "comment"
        assert len(client.get("/shares", params={"subject_id": "d1"}).json()) == 1

    def test_reading_progress(self, client):
        assert client.get("/documents/d1/progress", params={"user_id": "u1"}).status_code == 404
        client.put("/documents/d1/progress", json={"user_id": "u1", "last_page": 12})
        assert client.get("/documents/d1/progress", params={"user_id": "u1"}).json()["last_page"] == 12
        assert client.delete("/documents/d1/progress", params={"user_id": "u1"}).status_code == 204


class TestSyncAndJobs:
    def test_sync_run_applies_manifest_and_pushes(self, client, api):
        client.post("/bookmarks", json={"doc_id": "d1", "page_number": 1})
        api.manifest = SyncManifest(timestamp=ts(10), changes=[_document_change("d1", "Orbital Mechanics")])

        progress = client.post("/sync/run").json()
        assert progress["status"] == "completed"
        assert progress["processed_changes"] == 1

        assert len(api.pushed) == 1
        assert client.get("/jobs/status").json()["pending"] == 0
        assert client.get("/sync/checkpoint").json()["last_sync_timestamp"] is not None

        hits = client.get("/search", params={"q": "orbital"}).json()
        assert [h["doc_id"] for h in hits["results"]] == ["d1"]

    def test_sync_offline(self, client, api):
        api.online = False
        assert client.post("/sync/run").json()["status"] == "offline"
        assert client.get("/sync/status").json()["progress"]["status"] == "offline"

    def test_reset_checkpoint(self, client, api):
        client.post("/sync/run")
        client.delete("/sync/checkpoint")
        assert client.get("/sync/checkpoint").json()["last_sync_timestamp"] is None

    def test_resolve_unknown_job(self, client):
        assert client.post("/jobs/missing/resolve", json={"resolution": "use_server"}).status_code == 404

    def test_list_jobs_by_status(self, client):
        client.post("/tags", json={"name": "math"})
        jobs = client.get("/jobs", params={"status": "pending"}).json()
        assert [j["type"] for j in jobs] == ["create_tag"]


class TestSearchAndCache:
    def test_search_pagination_and_limit(self, client, api):
        api.manifest = SyncManifest(
            timestamp=ts(10),
            changes=[_document_change(f"d{i}", f"Volume {i}", offset=i + 1) for i in range(3)],
        )
        client.post("/sync/run")

        body = client.get("/search", params={"q": "volume", "limit": 2, "page": 2}).json()
        assert body["total"] == 3
        assert body["total_pages"] == 2
        assert len(body["results"]) == 1
        assert body["has_previous"] and not body["has_next"]

        assert client.get("/search", params={"q": "volume", "limit": 500}).status_code == 400
        assert client.get("/search/suggestions", params={"q": "vol"}).json()[0].startswith("Volume")
        assert client.get("/search/stats").json()["indexed_documents"] == 3

    def test_render_page_then_cache_stats(self, client, api, tmp_path):
        pdf = tmp_path / "local.pdf"
        pdf.write_bytes(b"%PDF-1.4")
        api.manifest = SyncManifest(timestamp=ts(10), changes=[_document_change("d1", "Local", str(pdf))])
        client.post("/sync/run")

        page = client.get("/pages/d1/1")
        assert page.status_code == 200
        assert page.headers["content-type"] == "image/webp"
        assert page.content == b"native:local.pdf:1:150"

        stats = client.get("/cache/stats").json()
        assert stats["total_entries"] == 1
        assert client.delete("/cache/documents/d1").json()["removed"] == 1

    def test_render_rejects_bad_input(self, client):
        assert client.get("/pages/d1/0").status_code == 400
        assert client.get("/pages/d1/1", params={"dpi": 5}).status_code == 400

    def test_render_missing_document(self, client, api):
        api.online = False
        assert client.get("/pages/ghost/1").status_code == 502

    def test_cache_config_clamped(self, client):
        stats = client.put("/cache/config", json={"max_size_mb": 5}).json()
        assert stats["max_size_bytes"] == 50 * 1024 * 1024
