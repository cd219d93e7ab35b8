"""Webhook event models: parsed events and their idempotency records."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventCategory(str, Enum):
    """Allow-listed event categories (first segment of the event type)."""

    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"
    ORDER = "order"
    REFUND = "refund"
    INVOICE = "invoice"


class KnownEventType(str, Enum):
    """Event types published by Razorpay that this service knows about.

    Routing keys on the plain ``category.action`` string, so event types
    missing here still parse and can be routed once a handler exists.
    """

    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_PENDING = "payment.pending"
    SUBSCRIPTION_AUTHENTICATED = "subscription.authenticated"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CHARGED = "subscription.charged"
    SUBSCRIPTION_COMPLETED = "subscription.completed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_HALTED = "subscription.halted"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    SUBSCRIPTION_PENDING = "subscription.pending"
    ORDER_PAID = "order.paid"
    REFUND_CREATED = "refund.created"
    REFUND_PROCESSED = "refund.processed"


class ParsedEvent(BaseModel):
    """A structurally valid webhook event.

    Built once per request from a verified raw body and never mutated.
    """

    model_config = ConfigDict(strict=True, frozen=True)

    event_id: str = Field(
        ...,
        description="Idempotency key: the X-Razorpay-Event-Id header, else payload.entity.id",
        examples=["evt_Hn6tF1dCuRj2Fq", "pay_29QQoUBi66xm2f"],
    )
    event_type: str = Field(
        ...,
        description="Event type in category.action form",
        examples=["payment.captured", "subscription.activated"],
    )
    account_id: str = Field(
        ...,
        description="Merchant account the event belongs to",
        examples=["acc_BFQ7uQEaa7j2z7"],
    )
    entity: dict[str, Any] = Field(
        default_factory=dict,
        description="The payload.entity object sent by the provider",
    )
    created_at: int | None = Field(
        default=None,
        description="Provider event timestamp in epoch seconds, when sent",
        examples=[1735689600],
    )

    @property
    def category(self) -> EventCategory:
        return EventCategory(self.event_type.split(".", 1)[0])

    @property
    def action(self) -> str:
        return self.event_type.split(".", 1)[1]

    @property
    def known_type(self) -> KnownEventType | None:
        """The tagged event type, or None for types added after this release."""
        try:
            return KnownEventType(self.event_type)
        except ValueError:
            return None

    @property
    def entity_id(self) -> str:
        return str(self.entity["id"])


class ProcessingStatus(str, Enum):
    """Lifecycle of a webhook event in the idempotency store."""

    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Statuses after which the event is never routed again
TERMINAL_STATUSES: set[ProcessingStatus] = {
    ProcessingStatus.PROCESSED,
    ProcessingStatus.SKIPPED,
}

# Statuses where another delivery currently owns the event
IN_FLIGHT_STATUSES: set[ProcessingStatus] = {
    ProcessingStatus.PENDING,
    ProcessingStatus.PROCESSING,
}


class IdempotencyRecord(BaseModel):
    """Durable record of one provider event.

    The record's existence is the at-most-once guarantee: it is created by a
    conditional insert keyed on ``event_id`` and afterwards only changed by
    status transitions.
    """

    model_config = ConfigDict(strict=True, frozen=True)

    event_id: str = Field(..., description="Provider event ID (unique key)")
    event_type: str = Field(..., description="Event type in category.action form")
    account_id: str = Field(..., description="Merchant account ID")
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Entity payload as received",
    )
    payload_hash: str | None = Field(
        default=None,
        description="SHA-256 hash of the raw body for auditing",
    )
    signature_verified: bool = Field(default=True)
    status: ProcessingStatus = Field(default=ProcessingStatus.PENDING)
    attempts: int = Field(default=0, ge=0, description="Processing attempts so far")
    error: str | None = Field(default=None, description="Last processing error")
    retryable_failure: bool = Field(
        default=True,
        description="Whether a failed event may be re-run on redelivery",
    )
    related_subscription_id: str | None = None
    related_payment_id: str | None = None
    processing_started_at: datetime | None = None
    processed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    expires_at: int | None = Field(
        default=None,
        description="Epoch seconds after which the retention sweep removes the record",
    )

    def is_terminal(self, max_attempts: int) -> bool:
        """Whether this event must never be routed again.

        Args:
            max_attempts: Attempt cap after which a failure is final.

        Returns:
            True for processed/skipped events and for failures that are
            non-retryable or have used up their attempts.
        """
        if self.status in TERMINAL_STATUSES:
            return True
        if self.status == ProcessingStatus.FAILED:
            return not self.retryable_failure or self.attempts >= max_attempts
        return False


class IdempotencyCheck(BaseModel):
    """Result of an idempotency lookup."""

    model_config = ConfigDict(strict=True, frozen=True)

    exists: bool
    status: ProcessingStatus | None = None
    record: IdempotencyRecord | None = None


class WebhookEventStats(BaseModel):
    """Aggregated counts over the idempotency store."""

    total_events: int = 0
    pending_events: int = 0
    processing_events: int = 0
    processed_events: int = 0
    failed_events: int = 0
    skipped_events: int = 0
    events_by_type: dict[str, int] = Field(default_factory=dict)
