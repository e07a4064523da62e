"""Observability utilities: trace IDs, generation metrics, and pass logging.

This module provides:
- Trace ID generation and propagation via context vars
- Prometheus metrics for operations and generation passes
- Structured logging helpers correlating the start and end of each pass
"""

import secrets
import time
from contextvars import ContextVar
from dataclasses import dataclass

import structlog
from prometheus_client import Counter, Gauge, Histogram

logger = structlog.get_logger()

# =============================================================================
# Trace ID Context
# =============================================================================

# Context variable for trace ID propagation across async calls
trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")


def generate_trace_id() -> str:
    """Generate cryptographically secure trace ID for request tracking."""
    return secrets.token_hex(16)  # 32 hex chars, same format as uuid4().hex


def get_trace_id() -> str:
    """Get current trace ID from context, or empty string if not set."""
    return trace_id_ctx.get()


def set_trace_id(trace_id: str) -> None:
    """Set trace ID in context."""
    trace_id_ctx.set(trace_id)


# =============================================================================
# Prometheus Metrics
# =============================================================================

operations_active = Gauge(
    "autocv_operations_active",
    "Operations currently held in the operation store",
)

operations_total = Counter(
    "autocv_operations_total",
    "Operations by how they ended",
    ["outcome"],  # values: initiated, cancelled, expired, evicted
)

generation_passes_total = Counter(
    "autocv_generation_passes_total",
    "Generation passes by outcome",
    ["outcome", "refinement"],  # outcome: completed, cancelled, error
)

generation_fragments_total = Counter(
    "autocv_generation_fragments_total",
    "Text fragments forwarded to clients",
)

generation_latency_seconds = Histogram(
    "autocv_generation_latency_seconds",
    "Wall time of one generation pass in seconds",
    ["outcome"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)

persistence_failures_total = Counter(
    "autocv_persistence_failures_total",
    "Result persistence writes that failed",
    ["stage"],  # values: initiated, final
)

generation_active_passes = Gauge(
    "autocv_generation_active_passes",
    "Generation passes currently running",
)


# =============================================================================
# Generation Pass Logging
# =============================================================================


@dataclass
class GenerationPassLog:
    """Structured log data for one generation pass."""

    trace_id: str
    operation_id: str
    refinement: bool
    target_section: str | None
    resume_chars: int
    job_posting_chars: int
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        if self.timestamp == 0.0:
            self.timestamp = time.time()


def log_generation_start(
    operation_id: str,
    resume_text: str,
    job_posting_text: str,
    target_section: str | None = None,
) -> GenerationPassLog:
    """Log the start of a generation pass.

    Returns GenerationPassLog for correlation with the end of the pass.
    """
    pass_log = GenerationPassLog(
        trace_id=get_trace_id(),
        operation_id=operation_id,
        refinement=target_section is not None,
        target_section=target_section,
        resume_chars=len(resume_text),
        job_posting_chars=len(job_posting_text),
    )

    logger.info(
        "generation_start",
        trace_id=pass_log.trace_id,
        operation_id=pass_log.operation_id,
        refinement=pass_log.refinement,
        target_section=pass_log.target_section,
        resume_chars=pass_log.resume_chars,
        job_posting_chars=pass_log.job_posting_chars,
    )

    generation_active_passes.inc()
    return pass_log


def log_generation_end(
    pass_log: GenerationPassLog,
    outcome: str,
    fragments: int = 0,
    response_chars: int = 0,
    error: str | None = None,
) -> None:
    """Log the end of a generation pass with metrics and correlation."""
    latency_ms = int((time.time() - pass_log.timestamp) * 1000)

    if error:
        logger.error(
            "generation_end",
            trace_id=pass_log.trace_id,
            operation_id=pass_log.operation_id,
            outcome=outcome,
            fragments=fragments,
            latency_ms=latency_ms,
            error=error,
        )
    else:
        logger.info(
            "generation_end",
            trace_id=pass_log.trace_id,
            operation_id=pass_log.operation_id,
            outcome=outcome,
            fragments=fragments,
            response_chars=response_chars,
            latency_ms=latency_ms,
        )

    generation_active_passes.dec()
    generation_passes_total.labels(
        outcome=outcome,
        refinement=str(pass_log.refinement).lower(),
    ).inc()
    generation_latency_seconds.labels(outcome=outcome).observe(latency_ms / 1000.0)
