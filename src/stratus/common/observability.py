"""Structured logging and tracing for the delivery server.

Log lines are JSON. Each one carries the service name, the request id and file
name bound for the request being served, and the trace and span ids when it is
emitted inside a span, so a slow or failed delivery can be followed from the
access log into its trace.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional
from uuid import uuid4

import structlog
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from structlog.contextvars import bind_contextvars

REQUEST_ID_HEADER = "X-Request-ID"

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")
# health checks and metric scrapes are too frequent to be worth a span each
_UNTRACED_PATHS = "/-/healthz,/-/metrics"


def request_id_from(header: Optional[str]) -> str:
    """Reuse a caller-supplied request id when it is a plain token, otherwise mint one."""

    if header and _REQUEST_ID_RE.match(header.strip()):
        return header.strip()
    return uuid4().hex


def _add_trace_ids(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict.setdefault("trace_id", format(span_context.trace_id, "032x"))
        event_dict.setdefault("span_id", format(span_context.span_id, "016x"))
    return event_dict


def _numeric_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    numeric = logging.getLevelName((level or "INFO").strip().upper())
    return numeric if isinstance(numeric, int) else logging.INFO


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    """Route structlog through the stdlib root logger as one JSON object per line."""

    numeric_level = _numeric_level(level)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format="%(message)s")
    root.setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_trace_ids,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> dict[str, str]:
    """Parse ``key=value,key=value`` exporter headers, skipping malformed items."""

    result: dict[str, str] = {}
    for item in (headers or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install the process-wide tracer provider once.

    Spans are exported over OTLP/HTTP when ``endpoint`` is set and kept in
    memory otherwise. Child spans follow their parent's sampling decision.
    """

    if isinstance(trace.get_tracer_provider(), TracerProvider):
        return

    ratio = min(1.0, max(0.0, sampler_ratio))
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=ParentBased(TraceIdRatioBased(ratio)),
    )
    if endpoint:
        exporter = OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers))
        provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        provider.add_span_processor(SimpleSpanProcessor(InMemorySpanExporter()))
    trace.set_tracer_provider(provider)


def instrument_fastapi_app(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        excluded_urls=_UNTRACED_PATHS,
    )
