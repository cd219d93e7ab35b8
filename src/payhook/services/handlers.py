"""Reference handlers that sync Razorpay entity status into DynamoDB.

Handlers must be idempotent per event and tolerate out-of-order delivery:
each write is a conditional update that (a) is a no-op when the same event
was already applied, (b) refuses to move an entity back from a later
lifecycle stage and (c) within one stage, refuses an event older than the
last applied one by the provider's ``created_at``. Events without a
timestamp are only ordered by stage. A refused write is reported as success
without processing, which the pipeline records as skipped.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from payhook.config import WebhookSettings
from payhook.models.routing import HandlerDetails, HandlerResult
from payhook.models.webhook_event import (
    EventCategory,
    IdempotencyRecord,
    KnownEventType,
    ParsedEvent,
)
from payhook.services.dynamodb import DynamoDBService
from payhook.services.event_router import EventRouter
from payhook.utils.logging import get_logger

logger = get_logger(__name__)

SUBSCRIPTION_REQUIRED_FIELDS = ("id", "status")
PAYMENT_REQUIRED_FIELDS = ("id", "status", "amount", "currency")

# Lifecycle rank: a write is accepted only if its rank is not lower than the
# stored one; equal ranks fall back to event timestamps. Terminal states sit
# at the top.
SUBSCRIPTION_STATUS_RANK: dict[str, int] = {
    "created": 0,
    "authenticated": 1,
    "pending": 2,
    "active": 2,
    "halted": 2,
    "paused": 2,
    "completed": 3,
    "cancelled": 3,
    "expired": 3,
}

PAYMENT_STATUS_RANK: dict[str, int] = {
    "created": 0,
    "pending": 1,
    "authorized": 1,
    "captured": 2,
    "failed": 2,
    "processed": 2,
    "refunded": 3,
}


class EntityStatusHandler(ABC):
    """Upserts the status of one Razorpay entity type.

    Args:
        db: DynamoDB service
        table: Table name without prefix, keyed on ``key_name``
        key_name: Partition key attribute
        status_rank: Lifecycle rank per status
        copied_fields: Entity fields copied onto the row when present
    """

    entity_kind = "entity"

    def __init__(
        self,
        db: DynamoDBService,
        table: str,
        *,
        key_name: str,
        status_rank: dict[str, int],
        copied_fields: tuple[str, ...] = (),
    ) -> None:
        self.db = db
        self.table = table
        self.key_name = key_name
        self.status_rank = status_rank
        self.copied_fields = copied_fields

    @abstractmethod
    def _details(self, event: ParsedEvent, status: str, **metadata: Any) -> HandlerDetails:
        """Build the entity references reported for this event."""

    def _extra_attributes(self, event: ParsedEvent) -> dict[str, Any]:
        return {}

    def __call__(
        self, event: ParsedEvent, record: IdempotencyRecord | None = None
    ) -> HandlerResult:
        entity_id = str(event.entity["id"])
        status = str(event.entity["status"])
        rank = self.status_rank.get(status, 0)
        now = datetime.now(timezone.utc).isoformat()

        update = (
            "SET #status = :status, status_rank = :rank, last_event_id = :event_id, "
            "last_event_type = :event_type, account_id = :account_id, updated_at = :now"
        )
        values: dict[str, Any] = {
            ":status": status,
            ":rank": rank,
            ":event_id": event.event_id,
            ":event_type": event.event_type,
            ":account_id": event.account_id,
            ":now": now,
        }
        names = {"#status": "status"}
        if event.created_at is None:
            ordering = "status_rank <= :rank"
        else:
            update += ", last_event_at = :event_at"
            values[":event_at"] = event.created_at
            ordering = (
                "(status_rank < :rank OR (status_rank = :rank AND "
                "(attribute_not_exists(last_event_at) OR last_event_at <= :event_at)))"
            )
        attributes ={field: event.entity.get(field) for field in self.copied_fields}
        attributes.update(self._extra_attributes(event))
        for index, (field, value) in enumerate(attributes.items()):
            if value is None or isinstance(value, (dict, list, float)):
                continue
            update += f", #f{index} = :f{index}"
            names[f"#f{index}"] = field
            values[f":f{index}"] = value

        attrs = self.db.update_item(
            table=self.table,
            key={self.key_name: entity_id},
            update_expression=update,
            expression_attribute_values=values,
            expression_attribute_names=names,
            condition_expression=(
                f"attribute_not_exists({self.key_name}) OR "
                f"(last_event_id <> :event_id AND {ordering})"
            ),
        )

        if attrs is not None:
            logger.info(
                "%s %s -> %s (%s)",
                self.entity_kind,
                entity_id,
                status,
                event.event_type,
                extra={"event_id": event.event_id, "entity_id": entity_id, "status": status},
            )
            return HandlerResult(
                success=True,
                processed=True,
                details=self._details(event, status),
            )

        current = self.db.get_item(
            self.table, {self.key_name: entity_id}, consistent_read=True
        ) or {}
        if current.get("last_event_id") == event.event_id:
            return HandlerResult(
                success=True,
                processed=True,
                details=self._details(event, status, already_applied=True),
            )

        logger.info(
            "Ignoring stale %s for %s %s: stored status %s supersedes %s",
            event.event_type,
            self.entity_kind,
            entity_id,
            current.get("status"),
            status,
            extra={"event_id": event.event_id, "entity_id": entity_id},
        )
        return HandlerResult(
            success=True,
            processed=False,
            details=self._details(
                event, status, stale=True, current_status=current.get("status")
            ),
        )


class SubscriptionEventHandler(EntityStatusHandler):
    """Keeps the subscriptions table in sync with subscription.* events."""

    entity_kind = "subscription"

    def __init__(self, db: DynamoDBService, table: str = "razorpay-subscriptions") -> None:
        super().__init__(
            db,
            table,
            key_name="subscription_id",
            status_rank=SUBSCRIPTION_STATUS_RANK,
            copied_fields=(
                "plan_id",
                "customer_id",
                "current_start",
                "current_end",
                "paid_count",
                "total_count",
            ),
        )

    def _details(self, event: ParsedEvent, status: str, **metadata: Any) -> HandlerDetails:
        return HandlerDetails(
            subscription_id=str(event.entity["id"]),
            status=status,
            action=event.action,
            metadata=metadata or None,
        )


class PaymentEventHandler(EntityStatusHandler):
    """Keeps the payments table in sync with payment.* and refund.* events.

    Refunds are stored as their own rows (keyed by refund ID) referencing
    the refunded payment.
    """

    entity_kind = "payment"

    def __init__(self, db: DynamoDBService, table: str = "razorpay-payments") -> None:
        super().__init__(
            db,
            table,
            key_name="payment_id",
            status_rank=PAYMENT_STATUS_RANK,
            copied_fields=(
                "amount",
                "currency",
                "method",
                "order_id",
                "invoice_id",
                "error_code",
            ),
        )

    def _extra_attributes(self, event: ParsedEvent) -> dict[str, Any]:
        if event.category == EventCategory.REFUND:
            return {"kind": "refund", "refunded_payment_id": event.entity.get("payment_id")}
        return {"kind": "payment"}

    def _details(self, event: ParsedEvent, status: str, **metadata: Any) -> HandlerDetails:
        if event.category == EventCategory.REFUND:
            metadata["refund_id"] = str(event.entity["id"])
            payment_id = event.entity.get("payment_id")
        else:
            payment_id = event.entity["id"]
        return HandlerDetails(
            payment_id=str(payment_id) if payment_id else None,
            status=status,
            action=event.action,
            metadata=metadata or None,
        )


def acknowledge_event(
    event: ParsedEvent, record: IdempotencyRecord | None = None
) -> HandlerResult:
    """Handler for events that are accepted but need no business effect."""
    return HandlerResult(
        success=True,
        processed=False,
        details=HandlerDetails(action=event.action, metadata={"acknowledged": True}),
    )


SUBSCRIPTION_EVENTS: tuple[KnownEventType, ...] = (
    KnownEventType.SUBSCRIPTION_AUTHENTICATED,
    KnownEventType.SUBSCRIPTION_ACTIVATED,
    KnownEventType.SUBSCRIPTION_CHARGED,
    KnownEventType.SUBSCRIPTION_COMPLETED,
    KnownEventType.SUBSCRIPTION_CANCELLED,
    KnownEventType.SUBSCRIPTION_HALTED,
    KnownEventType.SUBSCRIPTION_PAUSED,
    KnownEventType.SUBSCRIPTION_RESUMED,
    KnownEventType.SUBSCRIPTION_PENDING,
)

PAYMENT_EVENTS: tuple[KnownEventType, ...] = (
    KnownEventType.PAYMENT_AUTHORIZED,
    KnownEventType.PAYMENT_CAPTURED,
    KnownEventType.PAYMENT_FAILED,
    KnownEventType.PAYMENT_PENDING,
    KnownEventType.REFUND_CREATED,
    KnownEventType.REFUND_PROCESSED,
)


def register_default_routes(
    router: EventRouter,
    db: DynamoDBService,
    settings: WebhookSettings,
) -> EventRouter:
    """Register the subscription and payment status-sync routes.

    Args:
        router: Router to populate (must not be frozen)
        db: DynamoDB service used by the handlers
        settings: Table names

    Returns:
        The same router
    """
    subscriptions = SubscriptionEventHandler(db, settings.subscriptions_table)
    payments = PaymentEventHandler(db, settings.payments_table)

    for event_type in SUBSCRIPTION_EVENTS:
        router.add_route(
            event_type.value,
            subscriptions,
            f"Sync subscription status on {event_type.value}",
            required_fields=SUBSCRIPTION_REQUIRED_FIELDS,
        )
    for event_type in PAYMENT_EVENTS:
        router.add_route(
            event_type.value,
            payments,
            f"Sync payment status on {event_type.value}",
            required_fields=PAYMENT_REQUIRED_FIELDS,
        )
    # payment.captured carries the effect for paid orders
    router.add_route(
        KnownEventType.ORDER_PAID.value,
        acknowledge_event,
        "Acknowledge order.paid without changes",
    )
    return router
