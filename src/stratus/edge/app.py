"""HTTP edge for the Stratus delivery server."""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry import trace
from structlog.contextvars import bound_contextvars

from ..cache.compression import CompressionVariantManager
from ..cache.invalidation import InvalidationCoordinator
from ..cache.singleflight import SingleFlight
from ..cache.tier import CacheTier, DiskTier, MemoryTier
from ..common.errors import InvalidRequest, StratusError
from ..common.metrics import GLOBAL_REGISTRY, REQUEST_LATENCY_HISTOGRAM
from ..common.observability import (
    REQUEST_ID_HEADER,
    configure_logging,
    configure_tracing,
    instrument_fastapi_app,
    request_id_from,
)
from ..common.security import JwtAuthorizer, authorize_metrics
from ..common.settings import CdnSettings
from ..delivery.context import RequestContext
from ..delivery.pipeline import ReadRequest, RequestPipeline
from ..origin.store import OriginStore, build_origin
from .stats import DeliveryStats

TRACER = trace.get_tracer("stratus.edge")

EXPOSED_HEADERS = [
    "ETag",
    "Content-Encoding",
    "Content-Length",
    "Content-Range",
    "Accept-Ranges",
    "Last-Modified",
    "X-Cache",
    REQUEST_ID_HEADER,
]
DOWNLOAD_FLAGS = ("download", "dl")
TRUTHY_FLAGS = {"", "y", "yes", "t", "true", "1"}


class EdgeState:
    def __init__(
        self,
        settings: CdnSettings,
        origin: OriginStore,
        cache: CacheTier,
        pipeline: RequestPipeline,
        stats: Optional[DeliveryStats],
    ):
        self.settings = settings
        self.origin = origin
        self.cache = cache
        self.pipeline = pipeline
        self.stats = stats
        self.logger = structlog.get_logger("stratus.edge")


def build_cache(settings: CdnSettings) -> CacheTier:
    memory = None
    if settings.memory_cache_enabled:
        memory = MemoryTier(
            max_bytes=settings.memory_cache_max_bytes,
            max_entries=settings.memory_cache_max_entries,
            max_entry_bytes=settings.memory_cache_max_entry_bytes,
            ttl_seconds=settings.cache_ttl_seconds,
        )
    disk = None
    if settings.disk_cache_path is not None:
        disk = DiskTier(
            settings.disk_cache_path,
            max_bytes=settings.disk_cache_max_bytes,
            ttl_seconds=settings.cache_ttl_seconds,
        )
    return CacheTier(memory, disk)


def build_state(settings: CdnSettings, origin: Optional[OriginStore] = None) -> EdgeState:
    origin = origin or build_origin(settings)
    cache = build_cache(settings)
    stats = DeliveryStats(settings.stats_database_url) if settings.stats_database_url else None
    pipeline = RequestPipeline(
        settings=settings,
        origin=origin,
        cache=cache,
        compression=CompressionVariantManager(
            cache,
            gzip_level=settings.gzip_level,
            brotli_quality=settings.brotli_quality,
        ),
        guard=SingleFlight(),
        invalidation=InvalidationCoordinator(cache),
        authorizer=JwtAuthorizer(settings.jwt_secrets),
        stats=stats,
    )
    return EdgeState(settings, origin, cache, pipeline, stats)


def get_state(request: Request) -> EdgeState:
    return request.app.state.edge_state  # type: ignore[attr-defined]


def download_requested(query_params: Mapping[str, str]) -> bool:
    """``?download`` or ``?dl``: a bare flag or a truthy value asks for an attachment."""

    for flag in DOWNLOAD_FLAGS:
        value = query_params.get(flag)
        if value is not None:
            return value.strip().lower() in TRUTHY_FLAGS
    return False


def declared_length(request: Request) -> Optional[int]:
    content_length = request.headers.get("content-length")
    if not content_length:
        return None
    try:
        size = int(content_length)
    except ValueError as exc:
        raise InvalidRequest("Invalid Content-Length") from exc
    if size < 0:
        raise InvalidRequest("Invalid Content-Length")
    return size


def _log_request(state: EdgeState, request: Request, response: Response, duration: float) -> None:
    REQUEST_LATENCY_HISTOGRAM.observe(duration)
    log_kwargs = {
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
        "duration_ms": round(duration * 1000, 2),
        "cache": response.headers.get("x-cache"),
    }
    if response.status_code >= 500:
        state.logger.error("http_request", **log_kwargs)
    elif duration >= 1.0:
        state.logger.warning("http_request", **log_kwargs)
    else:
        state.logger.info("http_request", **log_kwargs)


def create_app(settings: Optional[CdnSettings] = None, origin: Optional[OriginStore] = None) -> FastAPI:
    settings = settings or CdnSettings()
    configure_logging("stratus.edge", settings.log_level)
    configure_tracing(
        service_name="stratus.edge",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    state = build_state(settings, origin)
    app = FastAPI(title="Stratus")
    instrument_fastapi_app(app)
    app.state.edge_state = state
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_methods=settings.cors_allowed_methods,
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )

    @app.exception_handler(StratusError)
    async def stratus_error_handler(request: Request, exc: StratusError) -> JSONResponse:
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": exc.status_code,
            "code": exc.code,
            "detail": exc.detail,
        }
        if exc.status_code >= 500:
            state.logger.error("request_failed", **log_kwargs)
        else:
            state.logger.info("request_rejected", **log_kwargs)
        return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=exc.headers)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        state = request.app.state.edge_state  # type: ignore[attr-defined]
        request_id = request_id_from(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
        with bound_contextvars(request_id=request_id):
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
            response.headers[REQUEST_ID_HEADER] = request_id
            _log_request(state, request, response, time.perf_counter() - start)
        return response

    @app.get("/-/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: EdgeState = Depends(get_state)) -> dict:
        """Health check for readiness and liveness checks."""
        health: dict = {"status": "healthy", "checks": {}}
        try:
            origin_status = state.origin.status()
            health["checks"]["origin"] = origin_status.get("backend", "unknown")
            if origin_status.get("circuit_open"):
                health["status"] = "degraded"
        except OSError as exc:
            health["checks"]["origin"] = f"error: {exc}"
            health["status"] = "unhealthy"

        if health["status"] == "unhealthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.get("/-/status")
    async def status_report(state: EdgeState = Depends(get_state)) -> JSONResponse:
        with TRACER.start_as_current_span("edge.status"):
            payload = {
                "origin": state.origin.status(),
                "cache": state.cache.stats(),
                "in_flight": state.pipeline.guard.in_flight(),
                "top_files": state.stats.top_entries() if state.stats is not None else [],
            }
            return JSONResponse(jsonable_encoder(payload))

    @app.get("/-/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(
        request: Request,
        state: EdgeState = Depends(get_state),
    ) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        client_host = request.client.host if request.client else None
        authorize_metrics(request.headers.get("authorization"), client_host, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.api_route("/{file_name:path}", methods=["GET", "HEAD"])
    async def read_file(
        file_name: str,
        request: Request,
        state: EdgeState = Depends(get_state),
    ) -> Response:
        read = ReadRequest(
            file_name=file_name,
            method=request.method,
            accept_encoding=request.headers.get("accept-encoding"),
            if_none_match=request.headers.get("if-none-match"),
            range_header=request.headers.get("range"),
            download=download_requested(request.query_params),
        )
        context = RequestContext(request_id=request.state.request_id)
        with bound_contextvars(file=file_name):
            delivery = await state.pipeline.serve(read, context)
        if delivery.body is None:
            return Response(status_code=delivery.status, headers=delivery.headers)
        return StreamingResponse(delivery.body, status_code=delivery.status, headers=delivery.headers)

    @app.post("/{file_name:path}")
    async def upload_file(
        file_name: str,
        request: Request,
        authorization: str | None = Header(default=None, alias="Authorization"),
        state: EdgeState = Depends(get_state),
    ) -> JSONResponse:
        with bound_contextvars(file=file_name):
            file_obj, created = await state.pipeline.upsert(
                file_name,
                request.stream(),
                authorization=authorization,
                content_type=request.headers.get("content-type"),
                declared_length=declared_length(request),
            )
        return JSONResponse(
            file_obj.to_dict(),
            status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
            headers={"ETag": file_obj.content_hash},
        )

    @app.delete("/{file_name:path}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_file(
        file_name: str,
        authorization: str | None = Header(default=None, alias="Authorization"),
        state: EdgeState = Depends(get_state),
    ) -> Response:
        with bound_contextvars(file=file_name):
            await state.pipeline.delete(file_name, authorization=authorization)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app
