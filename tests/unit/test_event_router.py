"""Unit tests for the event router.

Async routing is driven with asyncio.run; handler timeouts use small
per-route limits so the suite stays fast.
"""

import asyncio
import threading
from typing import Any

import pytest

from payhook.models.errors import ErrorKind, RouteRegistrationError
from payhook.models.routing import HandlerDetails, HandlerResult, RoutingResult
from payhook.models.webhook_event import ParsedEvent
from payhook.services.event_router import EventRouter, RouterConfig, invoke_handler


def _event(event_type: str = "payment.captured", **entity: Any) -> ParsedEvent:
    return ParsedEvent(
        event_id="evt_test_1",
        event_type=event_type,
        account_id="acc_test",
        entity={"id": "pay_1", "status": "captured", "amount": 100, "currency": "INR", **entity},
    )


async def processed_handler(event: ParsedEvent, record: Any) -> HandlerResult:
    return HandlerResult(
        success=True,
        processed=True,
        details=HandlerDetails(payment_id=event.entity_id),
    )


class RecordingHandler:
    """Sync handler that records the thread and events it ran with."""

    def __init__(self) -> None:
        self.calls: list[ParsedEvent] = []
        self.thread_ids: list[int] = []

    def __call__(self, event: ParsedEvent, record: Any) -> dict[str, Any]:
        self.calls.append(event)
        self.thread_ids.append(threading.get_ident())
        return {"success": True, "processed": True}


# === Registration ===


class TestRegistration:
    def test_add_route(self):
        router = EventRouter()
        route = router.add_route("payment.captured", processed_handler, "Capture payment")

        assert router.is_registered("payment.captured")
        assert router.get_route("payment.captured") is route
        assert route.handler_name == "processed_handler"
        assert route.category == "payment"

    def test_duplicate_route_rejected(self):
        router = EventRouter()
        router.add_route("payment.captured", processed_handler, "Capture payment")

        with pytest.raises(RouteRegistrationError):
            router.add_route("payment.captured", processed_handler, "Again")

    def test_replace_route(self):
        router = EventRouter()
        router.add_route("payment.captured", processed_handler, "Capture payment")
        router.add_route("payment.captured", RecordingHandler(), "Replaced", replace=True)

        assert router.get_route("payment.captured").description == "Replaced"

    def test_frozen_router_rejects_registration(self):
        router = EventRouter().freeze()

        assert router.frozen is True
        with pytest.raises(RouteRegistrationError):
            router.add_route("payment.captured", processed_handler, "Capture payment")

    @pytest.mark.parametrize("event_type", ["customer.created", "payment", "payment.a.b"])
    def test_invalid_event_type_rejected(self, event_type: str):
        with pytest.raises(RouteRegistrationError):
            EventRouter().add_route(event_type, processed_handler, "Bad type")

    def test_empty_description_rejected(self):
        with pytest.raises(RouteRegistrationError):
            EventRouter().add_route("payment.captured", processed_handler, "")

    def test_non_callable_handler_rejected(self):
        with pytest.raises(RouteRegistrationError):
            EventRouter().add_route("payment.captured", "not-a-handler", "Bad handler")  # type: ignore[arg-type]

    def test_registered_event_types_sorted(self):
        router = EventRouter()
        router.add_route("subscription.activated", processed_handler, "Activate")
        router.add_route("payment.captured", processed_handler, "Capture")

        assert router.registered_event_types() == ["payment.captured", "subscription.activated"]


# === Toggles and Introspection ===


class TestToggles:
    def test_set_route_enabled(self):
        router = EventRouter()
        router.add_route("payment.captured", processed_handler, "Capture")

        assert router.set_route_enabled("payment.captured", False) is True
        assert router.get_route("payment.captured").enabled is False
        assert router.set_route_enabled("payment.unknown", False) is False

    def test_toggles_work_on_frozen_router(self):
        router = EventRouter()
        router.add_route("payment.captured", processed_handler, "Capture")
        router.freeze()

        assert router.set_route_enabled("payment.captured", False) is True

    def test_set_category_enabled(self):
        router = EventRouter()
        router.add_route("payment.captured", processed_handler, "Capture")
        router.add_route("payment.failed", processed_handler, "Fail")
        router.add_route("subscription.activated", processed_handler, "Activate")

        assert router.set_category_enabled("payment", False) == 2
        assert router.set_category_enabled("payment", False) == 0
        assert router.get_route("subscription.activated").enabled is True

    def test_statistics(self):
        router = EventRouter()
        router.add_route("payment.captured", processed_handler, "Capture")
        router.add_route("subscription.activated", processed_handler, "Activate", enabled=False)

        stats = router.get_statistics()
        assert stats.total_routes == 2
        assert stats.enabled_routes == 1
        assert stats.disabled_routes == 1
        assert stats.routes_by_category == {"payment": 1, "subscription": 1}

    def test_route_info(self):
        router = EventRouter(RouterConfig(timeout_seconds=12))
        router.add_route(
            "payment.captured",
            processed_handler,
            "Capture",
            required_fields=("id", "amount"),
        )

        info = router.get_route_info("payment.captured")
        assert info["required_fields"] == ["id", "amount"]
        assert info["timeout_seconds"] == 12
        assert info["known_event_type"] is True
        assert router.get_route_info("payment.unknown") is None


# === Dispatch ===


class TestRoute:
    def test_routes_to_async_handler(self):
        router = EventRouter()
        router.add_route("payment.captured", processed_handler, "Capture")

        result = asyncio.run(router.route(_event()))

        assert result.success is True
        assert result.routed is True
        assert result.handler == "processed_handler"
        assert result.result.details.payment_id == "pay_1"
        assert result.error_kind is None
        assert router.get_statistics().routed_events == 1

    def test_sync_handler_runs_off_the_loop_thread(self):
        handler = RecordingHandler()
        router = EventRouter()
        router.add_route("payment.captured", handler, "Capture")

        result = asyncio.run(router.route(_event()))

        assert result.success is True
        assert result.result.processed is True
        assert handler.thread_ids[0] != threading.get_ident()

    def test_no_handler_registered(self):
        router = EventRouter()

        result = asyncio.run(router.route(_event("invoice.paid")))

        assert result.routed is False
        assert result.success is False
        assert result.error_kind == ErrorKind.NO_HANDLER_REGISTERED
        assert result.retryable is False
        assert router.get_statistics().unknown_events == 1

    def test_disabled_route(self):
        handler = RecordingHandler()
        router = EventRouter()
        router.add_route("payment.captured", handler, "Capture", enabled=False)

        result = asyncio.run(router.route(_event()))

        assert result.error_kind == ErrorKind.HANDLER_DISABLED
        assert handler.calls == []

    @pytest.mark.parametrize("entity", [{"amount": None}, {"currency": None}])
    def test_missing_required_field(self, entity: dict[str, Any]):
        handler = RecordingHandler()
        router = EventRouter()
        router.add_route(
            "payment.captured",
            handler,
            "Capture",
            required_fields=("id", "amount", "currency"),
        )

        result = asyncio.run(router.route(_event(**entity)))

        assert result.error_kind == ErrorKind.MISSING_REQUIRED_FIELD
        assert result.routed is False
        assert handler.calls == []

    def test_validation_can_be_disabled(self):
        handler = RecordingHandler()
        router = EventRouter(RouterConfig(enable_event_validation=False))
        router.add_route("payment.captured", handler, "Capture", required_fields=("amount",))

        result = asyncio.run(router.route(_event(amount=None)))

        assert result.success is True
        assert len(handler.calls) == 1

    def test_handler_exception_reported(self):
        async def failing_handler(event: ParsedEvent, record: Any) -> HandlerResult:
            raise ValueError("boom")

        router = EventRouter()
        router.add_route("payment.captured", failing_handler, "Capture")

        result = asyncio.run(router.route(_event()))

        assert result.routed is True
        assert result.error_kind == ErrorKind.HANDLER_ERROR
        assert result.error == "ValueError: boom"
        assert result.retryable is True
        assert router.get_statistics().handler_errors == 1

    def test_rollback_runs_when_handler_raises(self):
        undone: list[str] = []

        async def failing_handler(event: ParsedEvent, record: Any) -> HandlerResult:
            raise ValueError("boom")

        def undo(event: ParsedEvent, record: Any) -> None:
            undone.append(event.event_id)

        router = EventRouter()
        router.add_route("payment.captured", failing_handler, "Capture", rollback=undo)

        result = asyncio.run(router.route(_event()))

        assert undone == ["evt_test_1"]
        assert result.error_kind == ErrorKind.HANDLER_ERROR
        assert result.error == "ValueError: boom"
        assert router.get_route_info("payment.captured")["has_rollback"] is True

    def test_failing_rollback_keeps_handler_error(self):
        async def failing_handler(event: ParsedEvent, record: Any) -> HandlerResult:
            raise ValueError("boom")

        async def broken_undo(event: ParsedEvent, record: Any) -> None:
            raise RuntimeError("undo failed")

        router = EventRouter()
        router.add_route("payment.captured", failing_handler, "Capture", rollback=broken_undo)

        result = asyncio.run(router.route(_event()))

        assert result.error == "ValueError: boom"

    def test_rollback_skipped_on_success(self):
        undone: list[str] = []

        async def undo(event: ParsedEvent, record: Any) -> None:
            undone.append(event.event_id)

        router = EventRouter()
        router.add_route("payment.captured", processed_handler, "Capture", rollback=undo)

        result = asyncio.run(router.route(_event()))

        assert result.success is True
        assert undone == []

    def test_invalid_return_type_is_handler_error(self):
        async def bad_handler(event: ParsedEvent, record: Any) -> str:
            return "ok"

        router = EventRouter()
        router.add_route("payment.captured", bad_handler, "Capture")

        result = asyncio.run(router.route(_event()))

        assert result.error_kind == ErrorKind.HANDLER_ERROR
        assert result.error.startswith("TypeError")

    def test_handler_failure_result_passed_through(self):
        async def declined(event: ParsedEvent, record: Any) -> HandlerResult:
            return HandlerResult(success=False, error="Entity locked", retryable=False)

        router = EventRouter()
        router.add_route("payment.captured", declined, "Capture")

        result = asyncio.run(router.route(_event()))

        assert result.success is False
        assert result.error_kind is None
        assert result.error == "Entity locked"
        assert result.retryable is False


class TestTimeouts:
    def test_slow_handler_times_out(self):
        async def slow_handler(event: ParsedEvent, record: Any) -> HandlerResult:
            await asyncio.sleep(1)
            return HandlerResult(success=True, processed=True)

        router = EventRouter()
        router.add_route("payment.captured", slow_handler, "Capture", timeout_seconds=0.05)

        async def scenario() -> tuple[RoutingResult, int]:
            result = await router.route(_event())
            return result, router.get_statistics().abandoned_in_flight

        result, abandoned = asyncio.run(scenario())

        assert result.routed is True
        assert result.success is False
        assert result.error_kind == ErrorKind.HANDLER_TIMEOUT
        assert result.retryable is True
        assert abandoned == 1
        assert router.get_statistics().handler_timeouts == 1

    def test_late_completion_is_discarded(self):
        state: dict[str, bool] = {"finished": False}

        async def late_handler(event: ParsedEvent, record: Any) -> HandlerResult:
            await asyncio.sleep(0.1)
            state["finished"] = True
            return HandlerResult(success=True, processed=True)

        router = EventRouter()
        router.add_route("payment.captured", late_handler, "Capture", timeout_seconds=0.02)

        async def scenario() -> RoutingResult:
            result = await router.route(_event())
            await asyncio.sleep(0.3)
            return result

        result = asyncio.run(scenario())

        assert state["finished"] is True
        assert result.error_kind == ErrorKind.HANDLER_TIMEOUT
        assert router.get_statistics().abandoned_in_flight == 0

    def test_router_default_timeout(self):
        async def slow_handler(event: ParsedEvent, record: Any) -> HandlerResult:
            await asyncio.sleep(1)
            return HandlerResult(success=True, processed=True)

        router = EventRouter(RouterConfig(timeout_seconds=0.05))
        router.add_route("payment.captured", slow_handler, "Capture")

        result = asyncio.run(router.route(_event()))

        assert result.error_kind == ErrorKind.HANDLER_TIMEOUT
        assert "0.05" in result.error


class TestInvokeHandler:
    def test_dict_result_coerced(self):
        result = asyncio.run(invoke_handler(RecordingHandler(), _event(), None))
        assert result == HandlerResult(success=True, processed=True)
