"""HTTP surface for the caching proxy."""

from __future__ import annotations

import hmac
import mimetypes
import os
import time
from ipaddress import ip_address
from typing import BinaryIO, Iterator, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from ..common.observability import configure_observability, instrument_fastapi_app
from ..common.settings import EdgeCacheSettings
from .backend import BucketRegionResolver, S3Downloader, build_client_factory
from .coordinator import RequestCoordinator
from .errors import EdgeCacheError
from .store import READ_CHUNK_BYTES, DiskLRUCache


SERVICE_NAME = "edgecache.cache_proxy"
RESERVED_PATHS = {"", "health", "stats", "metrics"}

BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("edgecache_bytes_served_total", "Bytes served to clients"))
ENTRIES_GAUGE = GLOBAL_REGISTRY.register(Gauge("edgecache_entries", "Number of cached objects"))
CACHE_BYTES_GAUGE = GLOBAL_REGISTRY.register(Gauge("edgecache_cache_bytes", "Bytes held in the disk cache"))
EVICTIONS_GAUGE = GLOBAL_REGISTRY.register(Gauge("edgecache_evictions", "Entries evicted since startup"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "edgecache_request_latency_seconds",
        buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0],
        description="Object request latency",
    )
)


class EdgeCacheState:
    def __init__(
        self,
        settings: EdgeCacheSettings,
        store: DiskLRUCache,
        resolver: BucketRegionResolver,
        coordinator: RequestCoordinator,
    ) -> None:
        self.settings = settings
        self.store = store
        self.resolver = resolver
        self.coordinator = coordinator
        self.logger = structlog.get_logger(SERVICE_NAME)

    def bind_gauges(self) -> None:
        ENTRIES_GAUGE.set_supplier(lambda: float(self.store.stats().entry_count))
        CACHE_BYTES_GAUGE.set_supplier(lambda: float(self.store.stats().total_bytes))
        EVICTIONS_GAUGE.set_supplier(lambda: float(self.store.stats().evictions))


def build_state(
    settings: EdgeCacheSettings,
    *,
    resolver: Optional[BucketRegionResolver] = None,
) -> EdgeCacheState:
    store = DiskLRUCache(settings.cache_dir, settings.max_size_bytes)
    if resolver is None:
        resolver = BucketRegionResolver(build_client_factory(settings), bootstrap_region=settings.aws_region)
    coordinator = RequestCoordinator(
        store,
        S3Downloader(resolver),
        fetch_timeout_seconds=settings.fetch_timeout_seconds,
        chunk_bytes=settings.download_chunk_bytes,
    )
    return EdgeCacheState(settings, store, resolver, coordinator)


def get_state(request: Request) -> EdgeCacheState:
    return request.app.state.cache_state  # type: ignore[attr-defined]


def require_metrics_access(request: Request, state: EdgeCacheState = Depends(get_state)) -> None:
    """Scrapes need the configured bearer token; without one only loopback callers get through."""
    token = state.settings.metrics_token
    if token is not None:
        expected = f"Bearer {token.get_secret_value()}".encode()
        presented = request.headers.get("authorization", "").encode()
        if not hmac.compare_digest(presented, expected):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    host = request.client.host if request.client else ""
    try:
        loopback = ip_address(host).is_loopback
    except ValueError:
        loopback = False
    if not loopback:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")


def _iter_file(handle: BinaryIO) -> Iterator[bytes]:
    with handle:
        while True:
            chunk = handle.read(READ_CHUNK_BYTES)
            if not chunk:
                return
            yield chunk


def create_app(
    settings: Optional[EdgeCacheSettings] = None,
    *,
    resolver: Optional[BucketRegionResolver] = None,
) -> FastAPI:
    settings = settings or EdgeCacheSettings()
    configure_observability(SERVICE_NAME, settings)
    state = build_state(settings, resolver=resolver)
    state.bind_gauges()
    stats = state.store.stats()
    state.logger.info(
        "edgecache_started",
        cache_dir=stats.cache_dir,
        entries=stats.entry_count,
        total_mb=round(stats.total_bytes / (1024 * 1024), 2),
        max_gb=settings.max_size_gb,
        region=state.resolver.bootstrap_region,
    )

    app = FastAPI(title="edgecache")
    instrument_fastapi_app(app)
    app.state.cache_state = state

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        state = request.app.state.cache_state  # type: ignore[attr-defined]
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            state.logger.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            state.logger.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            state.logger.warning("http_request", **log_kwargs)
        else:
            state.logger.info("http_request", **log_kwargs)

        return response

    @app.exception_handler(EdgeCacheError)
    async def handle_cache_error(request: Request, exc: EdgeCacheError) -> JSONResponse:
        log = request.app.state.cache_state.logger  # type: ignore[attr-defined]
        log_kwargs = {"key": exc.key, "error": str(exc), "error_type": type(exc).__name__}
        if exc.status_code >= 500:
            log.error("request_failed", **log_kwargs)
        else:
            log.info("request_failed", **log_kwargs)
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.get("/health")
    async def health_check() -> dict:
        return {"status": "ok"}

    @app.get("/stats")
    async def stats_endpoint(state: EdgeCacheState = Depends(get_state)) -> JSONResponse:
        payload = state.coordinator.stats().model_dump()
        payload["known_buckets"] = len(state.resolver.known_regions())
        payload["inflight_downloads"] = state.coordinator.inflight
        return JSONResponse(payload)

    @app.get("/metrics", response_class=PlainTextResponse, dependencies=[Depends(require_metrics_access)])
    async def metrics_endpoint() -> PlainTextResponse:
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/{object_key:path}")
    async def get_object(object_key: str, state: EdgeCacheState = Depends(get_state)) -> StreamingResponse:
        key = object_key.lstrip("/")
        if key in RESERVED_PATHS:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
        result = await state.coordinator.fetch(key)
        # An open handle keeps serving the same inode after eviction or overwrite.
        try:
            handle = result.path.open("rb")
        except FileNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Object no longer cached") from exc
        size = os.fstat(handle.fileno()).st_size
        BYTES_SERVED_COUNTER.inc(size)
        media_type, _ = mimetypes.guess_type(key)
        return StreamingResponse(
            _iter_file(handle),
            media_type=media_type or "application/octet-stream",
            headers={"X-Cache": "HIT" if result.hit else "MISS", "Content-Length": str(size)},
        )

    @app.api_route(
        "/{object_key:path}",
        methods=["HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        include_in_schema=False,
    )
    async def method_not_allowed(object_key: str) -> None:
        raise HTTPException(
            status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
            detail="Method not allowed",
            headers={"Allow": "GET"},
        )

    return app
