"""
Doclib Sync Service - local offline-first backend
FastAPI over a local SQLite store: manifest sync, offline job queue,
page cache, full-text search and page rendering.

Install dependencies:
pip install -e .

Run server:
uvicorn main:app --host 127.0.0.1 --port 8000
"""

import contextvars
import logging
import os
import time
import uuid
from collections import defaultdict
from typing import Any, Dict, Optional

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from adapters.native import PdfiumRenderingWorker
from adapters.remote import SyncApiClient
from adapters.sqlite import SqliteAdapter
from core.clock import MonotonicClock
from core.job_queue import OfflineJobQueue
from core.mutations import LocalMutationService
from core.page_cache import PageCacheStore
from core.rendering import PageRenderingService
from core.scheduler import BackgroundSyncScheduler
from core.search_index import LocalSearchIndex
from core.sync_engine import ManifestSyncEngine
from routers import annotations, cache, jobs, pages, search, sync
from settings import Settings, get_settings

VERSION = "1.0"

# ========== Request Context for Tracing ==========
request_id_var = contextvars.ContextVar("request_id", default=None)
request_start_time_var = contextvars.ContextVar("request_start_time", default=None)

# ========== Metrics Storage ==========
request_metrics = {
    "total_requests": defaultdict(int),  # by endpoint
    "total_latency": defaultdict(float),  # by endpoint
    "status_codes": defaultdict(int),  # by status code
}

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ============================================================================
# SERVICE WIRING
# ============================================================================

def build_services(
    settings: Settings,
    api=None,
    worker=None,
    clock: Optional[MonotonicClock] = None,
) -> Dict[str, Any]:
    """
    Build every service the routers need, keyed by its app.state name.

    `api` and `worker` default to the HTTP client and the pdfium worker;
    tests pass fakes.
    """
    clock = clock or MonotonicClock()
    store = SqliteAdapter.from_url(settings.db_url)

    search_index = LocalSearchIndex(store)
    search_index.initialize()

    job_queue = OfflineJobQueue(
        store,
        clock=clock,
        max_attempts=settings.job_max_attempts,
        backoff_base_seconds=settings.backoff_base_seconds,
        backoff_jitter_seconds=settings.backoff_jitter_seconds,
        retention_days=settings.completed_job_retention_days,
    )
    recovered = job_queue.recover_stale()
    if recovered:
        logger.info(f"Recovered {recovered} jobs left processing by the previous run")

    page_cache = PageCacheStore(
        store,
        settings.cache_dir,
        max_size_mb=settings.cache_max_size_mb,
        expiry_days=settings.cache_expiry_days,
        memory_cache_bytes=settings.memory_cache_bytes,
        clock=clock,
    )

    if api is None:
        api = SyncApiClient(
            settings.api_base_url,
            token=settings.api_token,
            timeout=settings.request_timeout_seconds,
        )
    if worker is None:
        worker = PdfiumRenderingWorker(image_format=settings.render_default_format)

    renderer = PageRenderingService(
        store,
        page_cache,
        worker=worker,
        api=api,
        clock=clock,
        default_dpi=settings.render_default_dpi,
        default_format=settings.render_default_format,
        prefer_native=settings.render_prefer_native,
    )
    sync_engine = ManifestSyncEngine(
        store,
        api,
        job_queue,
        search_index=search_index,
        clock=clock,
        page_cache=page_cache,
        verify_checksum=settings.verify_manifest_checksum,
        push_max_attempts=settings.push_max_attempts,
    )
    scheduler = BackgroundSyncScheduler(
        sync_engine,
        job_queue,
        page_cache=page_cache,
        sync_interval_seconds=settings.sync_interval_seconds,
        retry_interval_seconds=settings.job_retry_interval_seconds,
    )

    return {
        "settings": settings,
        "store": store,
        "search_index": search_index,
        "job_queue": job_queue,
        "mutations": LocalMutationService(store, job_queue, clock=clock),
        "page_cache": page_cache,
        "renderer": renderer,
        "sync_engine": sync_engine,
        "scheduler": scheduler,
    }


# ============================================================================
# FASTAPI APP
# ============================================================================

def create_app(settings: Optional[Settings] = None, services: Optional[Dict[str, Any]] = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Doclib Sync Service",
        description="Offline-first sync and local cache for the document library",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings
    app.state.started_at = time.time()
    if services is not None:
        for name, service in services.items():
            setattr(app.state, name, service)

    # ========== Request Tracing Middleware ==========
    @app.middleware("http")
    async def request_tracing_middleware(request, call_next):
        """Add request_id and timing to all requests."""
        request_id = str(uuid.uuid4())[:8]
        request_id_var.set(request_id)
        request_start_time_var.set(time.time())

        response = await call_next(request)

        latency = time.time() - request_start_time_var.get()
        logger.info(
            "Request completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency * 1000, 2),
            },
        )

        endpoint = f"{request.method} {request.url.path}"
        request_metrics["total_requests"][endpoint] += 1
        request_metrics["total_latency"][endpoint] += latency
        request_metrics["status_codes"][response.status_code] += 1

        response.headers["X-Request-ID"] = request_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    # ========================================================================
    # ENDPOINTS
    # ========================================================================

    @app.get("/")
    async def root():
        """API root endpoint"""
        return {
            "message": "Doclib Sync Service",
            "version": VERSION,
            "status": "running",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        """Health check: local store reachable, sync state and queue depth."""
        try:
            app.state.store.ping()
            engine = app.state.sync_engine
            queue = app.state.job_queue.status()
            return {
                "status": "healthy",
                "version": VERSION,
                "sync": {
                    "status": engine.current_progress.status.value,
                    "is_syncing": engine.is_syncing,
                    "last_sync_timestamp": engine.last_sync_timestamp(),
                },
                "jobs": {"pending": queue.pending, "failed": queue.failed},
            }
        except Exception as e:
            logger.error(f"Health check failed: {str(e)}")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "error": str(e)},
            )

    @app.get("/healthz")
    async def healthz():
        """
        Liveness probe.
        Returns 200 if the application is running.
        """
        return {"status": "ok", "timestamp": time.time(), "version": VERSION}

    @app.get("/readyz")
    async def readyz():
        """
        Readiness probe.
        Returns 200 once the local store answers and the search index exists, 503 otherwise.
        """
        try:
            app.state.store.ping()
            search_ready = app.state.search_index.is_initialized()
            if not search_ready:
                raise RuntimeError("search index not initialized")
            return {
                "status": "ready",
                "search_index": search_ready,
                "cache_entries": app.state.page_cache.entry_count(),
                "timestamp": time.time(),
            }
        except Exception as e:
            logger.error(f"Readiness check failed: {str(e)}")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "error": str(e), "timestamp": time.time()},
            )

    @app.get("/metrics")
    async def get_metrics():
        """
        Application metrics.
        Request counts and latencies, plus cache, queue and render stats.
        """
        avg_latencies = {}
        for endpoint, total_latency in request_metrics["total_latency"].items():
            count = request_metrics["total_requests"][endpoint]
            avg_latencies[endpoint] = round((total_latency / count) * 1000, 2) if count > 0 else 0

        total_requests = sum(request_metrics["total_requests"].values())
        queue = app.state.job_queue.status()
        return {
            "timestamp": time.time(),
            "uptime_seconds": round(time.time() - app.state.started_at, 2),
            "requests": {
                "by_endpoint": dict(request_metrics["total_requests"]),
                "by_status": dict(request_metrics["status_codes"]),
                "total": total_requests,
            },
            "latency": {
                "by_endpoint_ms": avg_latencies,
                "average_ms": round(
                    sum(request_metrics["total_latency"].values()) / total_requests * 1000, 2
                ) if total_requests > 0 else 0,
            },
            "cache": app.state.page_cache.statistics(),
            "rendering": app.state.renderer.statistics(),
            "jobs": {
                "pending": queue.pending,
                "processing": queue.processing,
                "failed": queue.failed,
            },
        }

    app.include_router(sync.router)
    app.include_router(jobs.router)
    app.include_router(annotations.router)
    app.include_router(cache.router)
    app.include_router(search.router)
    app.include_router(pages.router)

    @app.on_event("startup")
    async def startup_event():
        app.state.started_at = time.time()
        logger.info("Doclib Sync Service starting up...")
        if getattr(app.state, "store", None) is None:
            for name, service in build_services(settings).items():
                setattr(app.state, name, service)
        logger.info(f"Database: {settings.db_url.split('://')[0]}")
        logger.info(f"Remote API: {settings.api_base_url}")
        logger.info(f"Allowed origins: {settings.get_origins_list()}")
        if settings.scheduler_enabled:
            app.state.scheduler.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Doclib Sync Service shutting down...")
        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None and scheduler.is_running:
            await scheduler.stop()
        store = getattr(app.state, "store", None)
        if store is not None:
            store.dispose()

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="127.0.0.1", port=port, log_level="info")
