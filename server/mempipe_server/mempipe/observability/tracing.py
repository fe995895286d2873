"""Observability setup for the memory pipeline.

Provides logging configuration, structured log lines with correlation
fields, in-process counters for the save and search paths, and optional
OpenTelemetry tracing.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

from mempipe import config as cfg

logger = logging.getLogger(__name__)

# ── Metrics counters (simple in-process; replace with OTel SDK) ──────

_metrics: dict[str, float] = {
    "pipeline_save_count": 0,
    "pipeline_fallback_keep_count": 0,
    "pipeline_relational_delete_count": 0,
    "pipeline_concepts_stored": 0,
    "pipeline_concept_failures": 0,
    "pipeline_short_term_admissions": 0,
    "pipeline_graph_relationships": 0,
    "pipeline_latency_ms_total": 0,
    "search_count": 0,
    "search_source_failures": 0,
    "search_vector_only_fallback_count": 0,
    "search_llm_rerank_fallback_count": 0,
    "search_latency_ms_total": 0,
}


def record_metric(name: str, value: float = 1.0) -> None:
    """Increment / accumulate a named metric."""
    _metrics[name] = _metrics.get(name, 0) + value


def get_metrics() -> dict[str, float]:
    """Return a snapshot of current metrics."""
    return dict(_metrics)


def reset_metrics() -> None:
    """Reset all metric counters (testing helper)."""
    for key in _metrics:
        _metrics[key] = 0


# ── Logging ──────────────────────────────────────────────────────────

def configure_logging(level: str | None = None) -> None:
    """Install a stdout handler on the root logger at ``LOG_LEVEL``."""
    logging.basicConfig(
        level=getattr(logging, (level or cfg.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def log_with_context(
    level: int,
    message: str,
    *,
    memory_id: Any = None,
    phase: str = "",
    **extra: Any,
) -> None:
    """Emit a structured log line with correlation fields."""
    fields = {"memory_id": memory_id, "phase": phase, **extra}
    logger.log(level, "%s | %s", message, fields)


# ── Optional OpenTelemetry bootstrap ─────────────────────────────────

def init_otel() -> None:
    """Initialise OpenTelemetry tracing if ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set."""
    endpoint = cfg.OTEL_EXPORTER_OTLP_ENDPOINT
    if not endpoint:
        logger.info("OTEL endpoint not configured; tracing disabled.")
        return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        resource = Resource.create({"service.name": "mempipe"})
        provider = TracerProvider(resource=resource)
        exporter = OTLPSpanExporter(endpoint=endpoint)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
        logger.info("OpenTelemetry tracing initialised (endpoint=%s)", endpoint)
    except ImportError:
        logger.warning("OpenTelemetry SDK not installed; tracing disabled.")
    except Exception:
        logger.exception("OpenTelemetry initialisation failed")
