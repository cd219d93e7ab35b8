"""Unit tests for the entity status-sync handlers (DynamoDB via moto)."""

from typing import Any

import pytest

from payhook.config import WebhookSettings
from payhook.models.webhook_event import ParsedEvent
from payhook.services.dynamodb import DynamoDBService
from payhook.services.event_router import EventRouter
from payhook.services.handlers import (
    PAYMENT_REQUIRED_FIELDS,
    PAYMENT_STATUS_RANK,
    EntityStatusHandler,
    PaymentEventHandler,
    SubscriptionEventHandler,
    acknowledge_event,
    register_default_routes,
)


def _event(
    event_id: str,
    event_type: str,
    entity: dict[str, Any],
    created_at: int | None = None,
) -> ParsedEvent:
    return ParsedEvent(
        event_id=event_id,
        event_type=event_type,
        account_id="acc_test",
        entity=entity,
        created_at=created_at,
    )


def _subscription(
    event_id: str, event_type: str, status: str, created_at: int | None = None
) -> ParsedEvent:
    return _event(
        event_id,
        event_type,
        {"id": "sub_00000000000001", "status": status, "plan_id": "plan_gold", "paid_count": 1},
        created_at,
    )


@pytest.fixture
def subscriptions(dynamodb_service: DynamoDBService) -> SubscriptionEventHandler:
    return SubscriptionEventHandler(dynamodb_service)


@pytest.fixture
def payments(dynamodb_service: DynamoDBService) -> PaymentEventHandler:
    return PaymentEventHandler(dynamodb_service)


# === Subscription Events ===


class TestSubscriptionEventHandler:
    def test_creates_row(self, subscriptions: SubscriptionEventHandler, dynamodb_service: DynamoDBService):
        result = subscriptions(_subscription("evt_1", "subscription.activated", "active"))

        assert result.success is True
        assert result.processed is True
        assert result.details.subscription_id == "sub_00000000000001"
        assert result.details.action == "activated"

        row = dynamodb_service.get_item("razorpay-subscriptions", {"subscription_id": "sub_00000000000001"})
        assert row["status"] == "active"
        assert row["plan_id"] == "plan_gold"
        assert row["paid_count"] == 1
        assert row["last_event_id"] == "evt_1"

    def test_same_event_applied_once(self, subscriptions: SubscriptionEventHandler):
        event = _subscription("evt_1", "subscription.activated", "active")
        subscriptions(event)

        result = subscriptions(event)

        assert result.processed is True
        assert result.details.metadata == {"already_applied": True}

    def test_later_event_at_same_stage_applies(
        self, subscriptions: SubscriptionEventHandler, dynamodb_service: DynamoDBService
    ):
        subscriptions(_subscription("evt_1", "subscription.activated", "active"))

        result = subscriptions(_subscription("evt_2", "subscription.charged", "active"))

        assert result.processed is True
        row = dynamodb_service.get_item("razorpay-subscriptions", {"subscription_id": "sub_00000000000001"})
        assert row["last_event_type"] == "subscription.charged"

    def test_out_of_order_event_is_stale(
        self, subscriptions: SubscriptionEventHandler, dynamodb_service: DynamoDBService
    ):
        subscriptions(_subscription("evt_2", "subscription.cancelled", "cancelled"))

        result = subscriptions(_subscription("evt_1", "subscription.activated", "active"))

        assert result.success is True
        assert result.processed is False
        assert result.details.metadata == {"stale": True, "current_status": "cancelled"}
        row = dynamodb_service.get_item("razorpay-subscriptions", {"subscription_id": "sub_00000000000001"})
        assert row["status"] == "cancelled"

    def test_older_event_at_same_stage_is_stale(
        self, subscriptions: SubscriptionEventHandler, dynamodb_service: DynamoDBService
    ):
        subscriptions(_subscription("evt_2", "subscription.halted", "halted", created_at=1735690000))

        result = subscriptions(
            _subscription("evt_1", "subscription.activated", "active", created_at=1735689600)
        )

        assert result.processed is False
        assert result.details.metadata == {"stale": True, "current_status": "halted"}
        row = dynamodb_service.get_item("razorpay-subscriptions", {"subscription_id": "sub_00000000000001"})
        assert row["status"] == "halted"
        assert row["last_event_at"] == 1735690000

    def test_newer_event_at_same_stage_applies(
        self, subscriptions: SubscriptionEventHandler, dynamodb_service: DynamoDBService
    ):
        subscriptions(_subscription("evt_1", "subscription.halted", "halted", created_at=1735689600))

        result = subscriptions(
            _subscription("evt_2", "subscription.resumed", "active", created_at=1735690000)
        )

        assert result.processed is True
        row = dynamodb_service.get_item("razorpay-subscriptions", {"subscription_id": "sub_00000000000001"})
        assert row["status"] == "active"


class TestEntityStatusHandler:
    def test_base_handler_is_abstract(self, dynamodb_service: DynamoDBService):
        with pytest.raises(TypeError):
            EntityStatusHandler(
                dynamodb_service,
                "razorpay-payments",
                key_name="payment_id",
                status_rank=PAYMENT_STATUS_RANK,
            )


# === Payment and Refund Events ===


class TestPaymentEventHandler:
    def test_payment_captured(self, payments: PaymentEventHandler, dynamodb_service: DynamoDBService):
        event = _event(
            "evt_pay_1",
            "payment.captured",
            {
                "id": "pay_29QQoUBi66xm2f",
                "status": "captured",
                "amount": 50000,
                "currency": "INR",
                "method": "upi",
                "fee": 1.5,
                "notes": {"plan": "gold"},
            },
        )

        result = payments(event)

        assert result.processed is True
        assert result.details.payment_id == "pay_29QQoUBi66xm2f"
        row = dynamodb_service.get_item("razorpay-payments", {"payment_id": "pay_29QQoUBi66xm2f"})
        assert row["amount"] == 50000
        assert row["method"] == "upi"
        assert row["kind"] == "payment"
        assert "notes" not in row

    def test_failed_payment_does_not_overwrite_capture(self, payments: PaymentEventHandler):
        entity = {"id": "pay_1", "amount": 100, "currency": "INR"}
        payments(_event("evt_a", "payment.captured", {**entity, "status": "captured"}))

        result = payments(_event("evt_b", "payment.authorized", {**entity, "status": "authorized"}))

        assert result.processed is False
        assert result.details.metadata["stale"] is True

    def test_refund_row_references_payment(
        self, payments: PaymentEventHandler, dynamodb_service: DynamoDBService
    ):
        event = _event(
            "evt_rfnd_1",
            "refund.processed",
            {
                "id": "rfnd_FP8QHiV938haTz",
                "payment_id": "pay_29QQoUBi66xm2f",
                "status": "processed",
                "amount": 500,
                "currency": "INR",
            },
        )

        result = payments(event)

        assert result.details.payment_id == "pay_29QQoUBi66xm2f"
        assert result.details.metadata == {"refund_id": "rfnd_FP8QHiV938haTz"}
        row = dynamodb_service.get_item("razorpay-payments", {"payment_id": "rfnd_FP8QHiV938haTz"})
        assert row["kind"] == "refund"
        assert row["refunded_payment_id"] == "pay_29QQoUBi66xm2f"


# === Default Routes ===


class TestDefaultRoutes:
    def test_register_default_routes(self, dynamodb_service: DynamoDBService):
        router = register_default_routes(EventRouter(), dynamodb_service, WebhookSettings())

        assert router.get_statistics().total_routes == 16
        assert router.get_route("payment.captured").required_fields == PAYMENT_REQUIRED_FIELDS
        assert router.get_route("subscription.halted").handler_name == "SubscriptionEventHandler"
        assert router.get_route("refund.created").handler_name == "PaymentEventHandler"
        assert router.get_route("order.paid").handler is acknowledge_event

    def test_acknowledge_event(self):
        result = acknowledge_event(_event("evt_1", "order.paid", {"id": "order_1"}))

        assert result.success is True
        assert result.processed is False
