"""Structured logging utilities with correlation ID support.

Provides:
- Correlation ID context management for request tracing
- Structured logging formatter for consistent log output
- Helpers that emit one record per webhook outcome and per pipeline stage

Usage:
    from payhook.utils.logging import get_logger, set_correlation_id

    # In middleware/request handler:
    set_correlation_id(request.headers.get("X-Correlation-ID"))

    # In service code:
    logger = get_logger(__name__)
    logger.info("Routing event", extra={"event_id": "pay_123"})
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Any

# Context variable for correlation ID - thread-safe and async-safe
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def generate_correlation_id() -> str:
    """Generate a new correlation ID.

    Returns:
        UUID-based correlation ID string
    """
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set the correlation ID for the current request context.

    Args:
        correlation_id: Optional existing correlation ID. If None, generates new one.

    Returns:
        The correlation ID that was set
    """
    cid = correlation_id or generate_correlation_id()
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> str | None:
    """Get the current correlation ID.

    Returns:
        Current correlation ID or None if not set
    """
    return _correlation_id.get()


def clear_correlation_id() -> None:
    """Clear the correlation ID context."""
    _correlation_id.set(None)


class CorrelationIdFilter(logging.Filter):
    """Logging filter that adds correlation_id to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "no-correlation-id"
        return True


class StructuredFormatter(logging.Formatter):
    """Formatter for structured log output with correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with structured fields.

        Args:
            record: Log record to format

        Returns:
            Formatted log string
        """
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or "no-correlation-id"

        base = super().format(record)

        # Correlation ID prefix for grep/filtering
        return f"[{record.correlation_id}] {base}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger with correlation ID support.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if not any(isinstance(f, CorrelationIdFilter) for f in logger.filters):
        logger.addFilter(CorrelationIdFilter())

    return logger


def configure_logging(level: int | str = logging.INFO) -> None:
    """Install the structured formatter on the root logger.

    Safe to call more than once; an existing structured handler is reused.

    Args:
        level: Root log level
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        if isinstance(handler.formatter, StructuredFormatter):
            return

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter(DEFAULT_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)


def log_webhook_event(
    logger: logging.Logger,
    event_type: str,
    event_id: str,
    *,
    result: str | None = None,
    subscription_id: str | None = None,
    payment_id: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a webhook event outcome with structured context.

    Args:
        logger: Logger instance
        event_type: Razorpay event type (e.g., "payment.captured")
        event_id: Razorpay entity ID used as idempotency key
        result: Processing result (processed, duplicate, skipped, failed, error)
        subscription_id: Associated subscription ID if available
        payment_id: Associated payment ID if available
        error: Error message if processing failed
        **extra: Additional context fields
    """
    context: dict[str, Any] = {
        "event_type": event_type,
        "event_id": event_id,
    }

    if result:
        context["result"] = result
    if subscription_id:
        context["subscription_id"] = subscription_id
    if payment_id:
        context["payment_id"] = payment_id
    if error:
        context["error"] = error

    context.update(extra)

    msg_parts = [f"Webhook event: {event_type} ({event_id})"]
    if result:
        msg_parts.append(f"result={result}")
    if subscription_id:
        msg_parts.append(f"subscription={subscription_id}")
    if payment_id:
        msg_parts.append(f"payment={payment_id}")
    if error:
        msg_parts.append(f"error={error}")

    message = " | ".join(msg_parts)

    if result in ("error", "failed"):
        logger.error(message, extra=context)
    elif result in ("duplicate", "skipped"):
        logger.warning(message, extra=context)
    else:
        logger.info(message, extra=context)


def log_pipeline_stage(
    logger: logging.Logger,
    stage: str,
    *,
    outcome: str,
    event_id: str | None = None,
    event_type: str | None = None,
    duration_ms: float | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log the outcome of a single pipeline stage.

    Stages: signature_verification, parse, idempotency_check, admission,
    routing, handler, finalize.

    Args:
        logger: Logger instance
        stage: Pipeline stage name
        outcome: Stage outcome (e.g., "ok", "rejected", "hit", "miss", "timeout")
        event_id: Event ID when already known
        event_type: Event type when already known
        duration_ms: Stage latency in milliseconds
        error: Error message if the stage failed
        **extra: Additional context fields
    """
    context: dict[str, Any] = {"stage": stage, "outcome": outcome}

    if event_id:
        context["event_id"] = event_id
    if event_type:
        context["event_type"] = event_type
    if duration_ms is not None:
        context["duration_ms"] = round(duration_ms, 2)
    if error:
        context["error"] = error

    context.update(extra)

    msg_parts = [f"Pipeline stage: {stage}", f"outcome={outcome}"]
    if event_id:
        msg_parts.append(f"event={event_id}")
    if duration_ms is not None:
        msg_parts.append(f"duration_ms={duration_ms:.2f}")
    if error:
        msg_parts.append(f"error={error}")

    message = " | ".join(msg_parts)

    if error:
        logger.warning(message, extra=context)
    else:
        logger.info(message, extra=context)
