"""Routing and processing-state models shared by the router and state tracker."""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorKind, is_retryable
from .webhook_event import IdempotencyRecord, ParsedEvent, ProcessingStatus


class HandlerDetails(BaseModel):
    """Entity references reported back by a handler."""

    model_config = ConfigDict(frozen=True)

    subscription_id: str | None = None
    payment_id: str | None = None
    status: str | None = None
    action: str | None = None
    metadata: dict[str, Any] | None = None


class HandlerResult(BaseModel):
    """Outcome of one handler invocation.

    ``success`` says whether the handler ran without error; ``processed``
    says whether it applied a business effect. A handler that succeeds
    without processing has deliberately declined the event.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    processed: bool = False
    error: str | None = None
    retryable: bool | None = Field(
        default=None,
        description="Handler's own verdict on redelivery; None means retryable",
    )
    details: HandlerDetails | None = None


# A handler takes the parsed event plus its idempotency record and returns a
# HandlerResult (or an equivalent dict), synchronously or as a coroutine.
HandlerReturn = Union[HandlerResult, dict[str, Any]]
EventHandler = Callable[
    [ParsedEvent, Union[IdempotencyRecord, None]],
    Union[HandlerReturn, Awaitable[HandlerReturn]],
]

# Undoes a handler's partial work after it raised; same arguments as the handler.
RollbackHook = Callable[
    [ParsedEvent, Union[IdempotencyRecord, None]],
    Union[None, Awaitable[None]],
]


class EventRoute(BaseModel):
    """Registry entry binding an event type to its handler."""

    model_config = ConfigDict(frozen=True)

    event_type: str = Field(..., examples=["subscription.activated"])
    handler: EventHandler
    description: str = Field(..., min_length=1)
    required_fields: tuple[str, ...] = ()
    enabled: bool = True
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Per-route timeout; the router default applies when None",
    )
    rollback: RollbackHook | None = Field(
        default=None,
        description="Best-effort hook run when the handler raises",
    )

    @property
    def handler_name(self) -> str:
        return getattr(self.handler, "__qualname__", None) or type(self.handler).__name__

    @property
    def category(self) -> str:
        return self.event_type.split(".", 1)[0]


class RoutingResult(BaseModel):
    """Outcome of routing one event."""

    model_config = ConfigDict(frozen=True)

    success: bool
    routed: bool
    event_type: str
    handler: str | None = None
    result: HandlerResult | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None
    routing_time_ms: float = 0.0

    @property
    def retryable(self) -> bool:
        if self.error_kind is not None:
            return is_retryable(self.error_kind)
        if self.result is not None and not self.result.success:
            return self.result.retryable is not False
        return False


class HandlerExecution(BaseModel):
    """Audit entry for one handler run within a processing attempt."""

    model_config = ConfigDict(frozen=True)

    event_type: str
    handler_name: str
    success: bool
    processed: bool
    duration_ms: float
    error: str | None = None
    details: HandlerDetails | None = None


class ProcessingState(BaseModel):
    """In-request audit trail of one processing attempt.

    Immutable: the state tracker returns a new instance for every change and
    refuses to change an instance whose ``completed_at`` is set.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    status: ProcessingStatus = ProcessingStatus.PENDING
    started_at: datetime
    completed_at: datetime | None = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    handler_results: tuple[HandlerExecution, ...] = ()
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None
