"""Pydantic models for the Razorpay webhook pipeline."""

from .errors import (
    ERROR_MESSAGES,
    ErrorDetail,
    ErrorKind,
    IdempotencyStoreError,
    RouteRegistrationError,
    StateFinalizedError,
    WebhookError,
    get_http_status_for_error,
    is_retryable,
)
from .response import WebhookOutcome, WebhookResponse
from .routing import (
    EventHandler,
    EventRoute,
    HandlerDetails,
    HandlerExecution,
    HandlerResult,
    ProcessingState,
    RoutingResult,
)
from .webhook_event import (
    EventCategory,
    IdempotencyCheck,
    IdempotencyRecord,
    KnownEventType,
    ParsedEvent,
    ProcessingStatus,
    WebhookEventStats,
)

__all__ = [
    "ERROR_MESSAGES",
    "ErrorDetail",
    "ErrorKind",
    "IdempotencyStoreError",
    "RouteRegistrationError",
    "StateFinalizedError",
    "WebhookError",
    "get_http_status_for_error",
    "is_retryable",
    "WebhookOutcome",
    "WebhookResponse",
    "EventHandler",
    "EventRoute",
    "HandlerDetails",
    "HandlerExecution",
    "HandlerResult",
    "ProcessingState",
    "RoutingResult",
    "EventCategory",
    "IdempotencyCheck",
    "IdempotencyRecord",
    "KnownEventType",
    "ParsedEvent",
    "ProcessingStatus",
    "WebhookEventStats",
]
