"""Observability utilities: trace IDs, metrics, and completion call logging.

This module provides:
- Trace ID generation and propagation via context vars
- Prometheus metrics for completion calls (tokens, latency, errors)
- Prometheus metrics for conversation persistence (flushes, fallbacks)
- Structured logging helpers for request/response correlation
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
# Prometheus Metrics for completions
# =============================================================================

completion_requests_total = Counter(
    "completion_requests_total",
    "Total completion API requests",
    ["model", "status"],
)

completion_tokens_total = Counter(
    "completion_tokens_total",
    "Total tokens used in completion calls",
    ["model"],
)

completion_latency_seconds = Histogram(
    "completion_latency_seconds",
    "Completion response latency in seconds",
    ["model"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)

context_chars = Histogram(
    "context_chars",
    "Characters of reference text sent with each prompt",
    buckets=[0, 500, 1000, 2000, 4000, 8000],
)

completion_active_requests = Gauge(
    "completion_active_requests",
    "Currently active completion requests",
    ["model"],
)

# =============================================================================
# Prometheus Metrics for persistence
# =============================================================================

conversation_flushes_total = Counter(
    "conversation_flushes_total",
    "Batch flushes to the durable conversation store",
    ["status"],  # values: success, error
)

conversation_records_flushed_total = Counter(
    "conversation_records_flushed_total",
    "Conversation records written to the durable store",
)

conversation_pending_writes = Gauge(
    "conversation_pending_writes",
    "Conversation records waiting for the next batch flush",
)

conversation_store_fallbacks_total = Counter(
    "conversation_store_fallbacks_total",
    "Durable store failures absorbed by the transient cache",
    ["operation"],  # values: load, flush, list, sweep
)

conversation_sessions_expired_total = Counter(
    "conversation_sessions_expired_total",
    "Conversation records removed by the expiry sweep",
)


# =============================================================================
# Completion call logging
# =============================================================================


@dataclass
class CompletionRequestLog:
    """Structured log data for completion requests."""

    trace_id: str
    model: str
    session_id: str
    prompt_chars: int
    context_chars: int
    question_preview: str  # First 100 chars
    history_messages: int
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        if self.timestamp == 0.0:
            self.timestamp = time.time()


def log_completion_request(
    model: str,
    session_id: str,
    prompt: str,
    context: str,
    question: str,
    history_messages: int,
) -> CompletionRequestLog:
    """Log a completion request.

    Returns CompletionRequestLog for correlation with the response.
    """
    log_data = CompletionRequestLog(
        trace_id=get_trace_id(),
        model=model,
        session_id=session_id,
        prompt_chars=len(prompt),
        context_chars=len(context),
        question_preview=question[:100] + ("..." if len(question) > 100 else ""),
        history_messages=history_messages,
    )

    logger.info(
        "completion_request",
        trace_id=log_data.trace_id,
        model=log_data.model,
        session_id=log_data.session_id,
        prompt_chars=log_data.prompt_chars,
        context_chars=log_data.context_chars,
        question_preview=log_data.question_preview,
        history_messages=log_data.history_messages,
    )

    completion_active_requests.labels(model=model).inc()
    context_chars.observe(len(context))

    return log_data


def log_completion_response(
    request_log: CompletionRequestLog,
    tokens_total: int = 0,
    finish_reason: str = "unknown",
    error: str | None = None,
) -> None:
    """Log a completion response with metrics and correlation."""
    latency_ms = int((time.time() - request_log.timestamp) * 1000)

    if error:
        logger.error(
            "completion_response",
            trace_id=request_log.trace_id,
            model=request_log.model,
            session_id=request_log.session_id,
            latency_ms=latency_ms,
            error=error,
        )
        status = "error"
    else:
        logger.info(
            "completion_response",
            trace_id=request_log.trace_id,
            model=request_log.model,
            session_id=request_log.session_id,
            tokens_total=tokens_total,
            latency_ms=latency_ms,
            finish_reason=finish_reason,
        )
        status = "success"

    completion_active_requests.labels(model=request_log.model).dec()
    completion_requests_total.labels(model=request_log.model, status=status).inc()

    if tokens_total > 0:
        completion_tokens_total.labels(model=request_log.model).inc(tokens_total)

    completion_latency_seconds.labels(model=request_log.model).observe(latency_ms / 1000.0)
