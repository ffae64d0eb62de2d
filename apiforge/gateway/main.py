from __future__ import annotations
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import redis.asyncio as aioredis
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from apiforge.analytics.hit_recorder import NullHitRecorder, RedisHitRecorder
from apiforge.connectors.blob_store import FileBlobStore, HttpBlobStore
from apiforge.connectors.http_provider import HttpProviderClient
from apiforge.definitions.registry import DefinitionRegistry
from apiforge.resolution.api_resolver import ApiResolver, is_error_payload
from apiforge.resolution.feed_resolver import FeedResolver

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------
RESOLUTION_COUNT = Counter(
    "apiforge_resolutions_total",
    "Total endpoint resolutions",
    ["kind", "status"],
)
RESOLUTION_LATENCY = Histogram(
    "apiforge_resolution_latency_seconds",
    "Endpoint resolution latency",
    ["kind"],
    buckets=[0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# ---------------------------------------------------------------------------
# Shared process-level resources (populated in lifespan)
# ---------------------------------------------------------------------------
_registry: Optional[DefinitionRegistry] = None
_provider_client: Optional[HttpProviderClient] = None
_api_resolver: Optional[ApiResolver] = None
_feed_resolver: Optional[FeedResolver] = None
_hit_recorder: Any = NullHitRecorder()
_blob_store: Any = None
_redis: Optional[aioredis.Redis] = None


def _init_tracing() -> None:
    """
    Initialize OpenTelemetry tracing.

    - OTEL_EXPORTER_OTLP_ENDPOINT set → OTLP HTTP exporter (Jaeger, Tempo, etc.)
    - Otherwise → ConsoleSpanExporter
    """
    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
            ConsoleSpanExporter,
            SimpleSpanProcessor,
        )

        resource = Resource.create({
            "service.name": "apiforge-gateway",
            "service.version": "1.0.0",
        })
        provider = TracerProvider(resource=resource)

        otlp_endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "")
        if otlp_endpoint:
            try:
                from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
                    OTLPSpanExporter,
                )
                provider.add_span_processor(
                    BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
                )
                logger.info("OpenTelemetry: OTLP exporter → %s", otlp_endpoint)
            except ImportError:
                logger.warning(
                    "opentelemetry-exporter-otlp-proto-http not installed; "
                    "falling back to console"
                )
                provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        else:
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
            logger.info("OpenTelemetry: ConsoleSpanExporter (set OTEL_EXPORTER_OTLP_ENDPOINT for production)")

        trace.set_tracer_provider(provider)
    except Exception as exc:
        logger.warning("OpenTelemetry init failed (non-fatal): %s", exc)


def _build_blob_store() -> Any:
    """BLOB_BASE_URL wins over BLOB_ROOT; neither → static blobs unavailable."""
    base_url = os.environ.get("BLOB_BASE_URL", "")
    if base_url:
        return HttpBlobStore(base_url)
    root = os.environ.get("BLOB_ROOT", "")
    if root:
        return FileBlobStore(root)
    logger.warning("No BLOB_BASE_URL / BLOB_ROOT set; blob-backed static APIs will fail")
    return None


# ---------------------------------------------------------------------------
# App lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    global _registry, _provider_client, _api_resolver, _feed_resolver
    global _hit_recorder, _blob_store, _redis

    _init_tracing()

    # 1. Definitions
    config_dir = os.environ.get("APIFORGE_DEFINITIONS_DIR", "configs/definitions")
    _registry = DefinitionRegistry(config_dir=config_dir)
    try:
        _registry.load_all()
    except FileNotFoundError:
        logger.warning("Definitions dir not found: %s; no endpoints loaded", config_dir)

    # 2. Redis for hit recording (graceful fallback for local dev)
    redis_url = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    try:
        _redis = aioredis.from_url(redis_url, decode_responses=False)
        await _redis.ping()
        _hit_recorder = RedisHitRecorder(_redis)
        logger.info("Redis connected: %s", redis_url)
    except Exception as exc:
        logger.warning("Redis unavailable (%s); hit recording disabled", exc)
        _redis = None
        _hit_recorder = NullHitRecorder()

    # 3. Collaborators + resolvers
    timeout_s = float(os.environ.get("RESOLUTION_TIMEOUT_S", "30"))
    _provider_client = HttpProviderClient(timeout_s=timeout_s)
    _blob_store = _build_blob_store()
    _api_resolver = ApiResolver(
        _registry,
        _provider_client,
        blob_store=_blob_store,
        static_bucket=os.environ.get("STATIC_BUCKET", "apiforge-static"),
        timeout_s=timeout_s,
    )
    _feed_resolver = FeedResolver(_registry, _provider_client)

    logger.info("apiforge gateway started. Definitions: %s", _registry.counts())

    yield

    await _provider_client.close()
    if isinstance(_blob_store, HttpBlobStore):
        await _blob_store.close()
    if _redis:
        await _redis.aclose()
    logger.info("apiforge gateway shut down.")


app = FastAPI(title="apiforge Gateway", version="1.0.0", lifespan=lifespan)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------

@app.api_route("/api/feed/{property}/{route}", methods=["GET"])
async def serve_feed(property: str, route: str, request: Request):
    """
    Resolve a feed. Pagination query parameter names come from the feed's
    pagination config (default skip / limit).

    Returns 404 for unknown or inactive feeds and 500 when resolution fails.
    """
    feed = _registry.find_feed(property, route) if _registry else None
    if feed is None:
        RESOLUTION_COUNT.labels(kind="feed", status="404").inc()
        return _error(404, "Feed not found")

    start_time = time.time()
    result = await _feed_resolver.resolve(feed, dict(request.query_params))
    RESOLUTION_LATENCY.labels(kind="feed").observe(time.time() - start_time)

    if is_error_payload(result):
        RESOLUTION_COUNT.labels(kind="feed", status="500").inc()
        return _error(500, result["error"])

    RESOLUTION_COUNT.labels(kind="feed", status="200").inc()
    return JSONResponse(content=jsonable_encoder(result))


@app.api_route("/api/{property}/{route}", methods=["GET", "POST"])
async def serve_api(
    property: str, route: str, request: Request, background_tasks: BackgroundTasks
):
    """
    Resolve an API endpoint.

    Resolver error payloads ({"error": ...}) are returned as the body with
    status 200. 404 for unknown endpoints, 500 for upstream failures.
    """
    endpoint = _registry.find_endpoint(property, route) if _registry else None
    if endpoint is None:
        RESOLUTION_COUNT.labels(kind="api", status="404").inc()
        return _error(404, "API not found")

    background_tasks.add_task(
        _hit_recorder.record_hit,
        endpoint,
        ip=request.headers.get("x-forwarded-for", "unknown"),
        user_agent=request.headers.get("user-agent", "unknown"),
    )

    start_time = time.time()
    try:
        payload = await _api_resolver.resolve(endpoint)
    except Exception as exc:
        logger.error("API resolution failed for %s/%s: %s", property, route, exc)
        RESOLUTION_COUNT.labels(kind="api", status="500").inc()
        return JSONResponse(
            status_code=500, content={"error": str(exc)}, background=background_tasks,
        )
    finally:
        RESOLUTION_LATENCY.labels(kind="api").observe(time.time() - start_time)

    status = "error" if is_error_payload(payload) else "200"
    RESOLUTION_COUNT.labels(kind="api", status=status).inc()
    return JSONResponse(content=jsonable_encoder(payload), background=background_tasks)


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------

@app.get("/v1/properties")
async def list_properties():
    return _registry.properties() if _registry else []


@app.post("/v1/providers/{provider_id}/test")
async def test_provider(provider_id: str):
    """Call a provider once and report status, timing and a body preview."""
    provider = _registry.get_provider(provider_id) if _registry else None
    if provider is None:
        return _error(404, "Provider not found")
    return await _provider_client.probe(provider)


@app.get("/v1/analytics/{property}/{route}")
async def endpoint_analytics(property: str, route: str):
    if _registry is None or _registry.find_endpoint(property, route) is None:
        return _error(404, "API not found")
    return await _hit_recorder.get_stats(property, route)


@app.post("/v1/admin/reload")
async def reload_definitions():
    try:
        _registry.reload()
    except Exception as exc:
        logger.error("Definition reload failed: %s", exc)
        return _error(500, f"Reload failed: {exc}")
    return {"status": "ok", "definitions": _registry.counts()}


@app.get("/health")
async def health():
    """Kubernetes liveness/readiness probe."""
    checks = {
        "redis": "disabled",
        "definitions": _registry.counts() if _registry else {},
    }
    if _redis:
        try:
            await _redis.ping()
            checks["redis"] = "ok"
        except Exception as exc:
            checks["redis"] = f"error: {exc}"

    all_ok = checks["redis"] in ("ok", "disabled") and _registry is not None
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"status": "ok" if all_ok else "degraded", "checks": checks},
    )


@app.get("/metrics")
async def metrics():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
