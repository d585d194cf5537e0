"""
OpenTelemetry tracing for the REST front end.

Spans are exported over OTLP/HTTP when an exporter endpoint is configured
(or ``OTEL_ENABLED`` forces it on). Every clamd exchange gets a CLIENT span
nested under the SERVER span of the HTTP request that triggered it.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

logger = logging.getLogger(__name__)

TRACER_NAME = "clamav-rest.clamd"
DEFAULT_SAMPLER_RATIO = 0.10

_state = {"initialized": False, "active": False}


def _env(name: str) -> str:
    return (os.getenv(name) or "").strip()


def get_otlp_traces_endpoint() -> str:
    """Trace endpoint; the generic OTLP endpoint gets ``/v1/traces`` appended."""
    explicit = _env("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    if explicit:
        return explicit
    base = _env("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not base or base.lower().endswith("/v1/traces"):
        return base
    return f"{base.rstrip('/')}/v1/traces"


def get_otlp_headers() -> dict[str, str]:
    # "k1=v1,k2=v2"; entries without "=" are ignored
    headers: dict[str, str] = {}
    for item in _env("OTEL_EXPORTER_OTLP_HEADERS").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def telemetry_enabled_from_env() -> bool:
    flag = _env("OTEL_ENABLED")
    if flag:
        return flag.lower() in ("1", "true", "yes", "y", "on")
    return bool(get_otlp_traces_endpoint())


def _trace_sampler_ratio() -> float:
    try:
        ratio = float(_env("OTEL_TRACES_SAMPLER_RATIO") or DEFAULT_SAMPLER_RATIO)
    except ValueError:
        return DEFAULT_SAMPLER_RATIO
    return min(1.0, max(0.0, ratio))


@dataclass(frozen=True)
class TelemetrySettings:
    enabled: bool
    endpoint: str
    headers: dict[str, str] = field(default_factory=dict)
    sampler_ratio: float = DEFAULT_SAMPLER_RATIO
    service_version: str = "1.0.0"

    @staticmethod
    def from_env() -> TelemetrySettings:
        return TelemetrySettings(
            enabled=telemetry_enabled_from_env(),
            endpoint=get_otlp_traces_endpoint(),
            headers=get_otlp_headers(),
            sampler_ratio=_trace_sampler_ratio(),
            service_version=_env("OTEL_SERVICE_VERSION") or "1.0.0",
        )


def telemetry_is_active() -> bool:
    return _state["active"]


def setup_telemetry(
    *,
    service_name: str,
    logger_obj: Optional[logging.Logger] = None,
    settings: Optional[TelemetrySettings] = None,
) -> bool:
    """
    Install the global tracer provider once per process.

    Returns True when spans are being exported.
    """
    if _state["initialized"]:
        return _state["active"]
    _state["initialized"] = True

    log = logger_obj or logger
    cfg = settings or TelemetrySettings.from_env()
    if not cfg.enabled:
        log.info("OpenTelemetry disabled.")
        return False
    if not cfg.endpoint:
        log.warning(
            "OpenTelemetry requested but no exporter endpoint is set "
            "(OTEL_EXPORTER_OTLP_ENDPOINT or OTEL_EXPORTER_OTLP_TRACES_ENDPOINT)."
        )
        return False

    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": service_name, "service.version": cfg.service_version}
        ),
        sampler=ParentBased(TraceIdRatioBased(cfg.sampler_ratio)),
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=cfg.endpoint, headers=cfg.headers or None)
        )
    )
    trace.set_tracer_provider(provider)
    _state["active"] = True
    log.info(
        "OpenTelemetry enabled (service=%s endpoint=%s sampler_ratio=%.2f).",
        service_name,
        cfg.endpoint,
        cfg.sampler_ratio,
    )
    return True


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def clamd_span(command: str, target: str) -> Iterator[Optional[trace.Span]]:
    """CLIENT span around one clamd exchange; a no-op while telemetry is off."""
    if not telemetry_is_active():
        yield None
        return
    with get_tracer(TRACER_NAME).start_as_current_span(
        f"clamd {command}", kind=trace.SpanKind.CLIENT
    ) as span:
        span.set_attribute("clamd.command", command)
        span.set_attribute("server.address", target)
        yield span


def get_current_trace_fields() -> dict[str, str]:
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return {}
    return {"trace_id": f"{ctx.trace_id:032x}", "span_id": f"{ctx.span_id:016x}"}
