"""Event router: maps ``category.action`` event types to handlers.

The registry is built once at startup, frozen, and injected into the
processor. Routing looks up the exact event type, checks the route's
required entity fields and runs the handler against a per-route timeout.
A timed-out handler is abandoned, not cancelled: its result is discarded
and its completion is only logged. When a handler raises, the route's
rollback hook runs before the error is reported.
"""

import asyncio
import functools
import inspect
import time
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from payhook.models.errors import ErrorKind, RouteRegistrationError, WebhookError
from payhook.models.routing import (
    EventHandler,
    EventRoute,
    HandlerResult,
    RollbackHook,
    RoutingResult,
)
from payhook.models.webhook_event import IdempotencyRecord, KnownEventType, ParsedEvent
from payhook.services.event_parser import validate_event_type
from payhook.services.state_tracker import execute_with_rollback
from payhook.utils.logging import get_logger, log_pipeline_stage

logger = get_logger(__name__)


class RouterConfig(BaseModel):
    """Router-wide settings."""

    model_config = ConfigDict(frozen=True)

    timeout_seconds: float = Field(default=30.0, gt=0)
    enable_unknown_event_logging: bool = True
    enable_event_validation: bool = True


class RouterStatistics(BaseModel):
    """Registry shape plus routing counters since startup."""

    total_routes: int
    enabled_routes: int
    disabled_routes: int
    routes_by_category: dict[str, int]
    routed_events: int = 0
    unknown_events: int = 0
    rejected_events: int = 0
    handler_timeouts: int = 0
    handler_errors: int = 0
    abandoned_in_flight: int = 0


def _coerce_result(outcome: Any) -> HandlerResult:
    if isinstance(outcome, HandlerResult):
        return outcome
    if isinstance(outcome, dict):
        return HandlerResult.model_validate(outcome)
    raise TypeError(
        f"Handler returned {type(outcome).__name__}, expected HandlerResult or dict"
    )


async def invoke_handler(
    handler: EventHandler,
    event: ParsedEvent,
    record: IdempotencyRecord | None,
) -> HandlerResult:
    """Call a handler and normalize its result.

    Coroutine functions are awaited on the loop; plain callables run in a
    worker thread so blocking I/O does not stall other requests.

    Args:
        handler: Registered handler
        event: Parsed event
        record: Idempotency record of the event, if available

    Returns:
        The handler's HandlerResult
    """
    if inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    ):
        outcome = await handler(event, record)
    else:
        outcome = await asyncio.to_thread(handler, event, record)
        if inspect.isawaitable(outcome):
            outcome = await outcome
    return _coerce_result(outcome)


async def invoke_rollback(
    rollback: RollbackHook,
    event: ParsedEvent,
    record: IdempotencyRecord | None,
) -> None:
    """Call a rollback hook, off the loop when it is a plain callable."""
    if inspect.iscoroutinefunction(rollback) or inspect.iscoroutinefunction(
        getattr(rollback, "__call__", None)
    ):
        await rollback(event, record)
        return
    outcome = await asyncio.to_thread(rollback, event, record)
    if inspect.isawaitable(outcome):
        await outcome


class EventRouter:
    """Registry of event routes with timeout-bounded dispatch."""

    def __init__(
        self,
        config: RouterConfig | None = None,
        routes: Iterable[EventRoute] = (),
    ) -> None:
        self.config = config or RouterConfig()
        self._routes: dict[str, EventRoute] = {}
        self._by_category: dict[str, set[str]] = {}
        self._frozen = False
        self._abandoned: set[asyncio.Task[HandlerResult]] = set()
        self._counters = {
            "routed_events": 0,
            "unknown_events": 0,
            "rejected_events": 0,
            "handler_timeouts": 0,
            "handler_errors": 0,
        }
        for route in routes:
            self.register(route)

    # Registration

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> "EventRouter":
        """Reject further registrations. Enable/disable toggles still work."""
        self._frozen = True
        return self

    def register(self, route: EventRoute, *, replace: bool = False) -> None:
        """Add a route to the registry.

        Args:
            route: Route to add
            replace: Overwrite an existing route for the same event type

        Raises:
            RouteRegistrationError: If the registry is frozen, the event type
                is malformed, the handler is not callable, or the event type
                is already registered and replace is False
        """
        if self._frozen:
            raise RouteRegistrationError(
                f"Router is frozen; cannot register {route.event_type}"
            )
        try:
            validate_event_type(route.event_type)
        except WebhookError as e:
            raise RouteRegistrationError(e.message) from e
        if not callable(route.handler):
            raise RouteRegistrationError(
                f"Handler for {route.event_type} is not callable"
            )
        if route.event_type in self._routes and not replace:
            raise RouteRegistrationError(
                f"Route already registered for {route.event_type}"
            )

        self._routes[route.event_type] = route
        self._by_category.setdefault(route.category, set()).add(route.event_type)
        logger.info(
            "Registered route %s -> %s",
            route.event_type,
            route.handler_name,
            extra={"event_type": route.event_type, "handler": route.handler_name},
        )

    def add_route(
        self,
        event_type: str,
        handler: EventHandler,
        description: str,
        *,
        required_fields: Iterable[str] = (),
        enabled: bool = True,
        timeout_seconds: float | None = None,
        rollback: RollbackHook | None = None,
        replace: bool = False,
    ) -> EventRoute:
        """Build an EventRoute and register it.

        Returns:
            The registered route
        """
        try:
            route = EventRoute(
                event_type=event_type,
                handler=handler,
                description=description,
                required_fields=tuple(required_fields),
                enabled=enabled,
                timeout_seconds=timeout_seconds,
                rollback=rollback,
            )
        except ValidationError as e:
            raise RouteRegistrationError(f"Invalid route {event_type}: {e}") from e
        self.register(route, replace=replace)
        return route

    # Lookups

    def get_route(self, event_type: str) -> EventRoute | None:
        return self._routes.get(event_type)

    def is_registered(self, event_type: str) -> bool:
        return event_type in self._routes

    def registered_event_types(self) -> list[str]:
        return sorted(self._routes)

    # Operational toggles

    def set_route_enabled(self, event_type: str, enabled: bool) -> bool:
        """Enable or disable one route.

        Returns:
            True if the route exists
        """
        route = self._routes.get(event_type)
        if route is None:
            return False
        self._routes[event_type] = route.model_copy(update={"enabled": enabled})
        logger.info(
            "Route %s %s",
            event_type,
            "enabled" if enabled else "disabled",
            extra={"event_type": event_type, "enabled": enabled},
        )
        return True

    def set_category_enabled(self, category: str, enabled: bool) -> int:
        """Enable or disable every route in a category.

        Returns:
            Number of routes changed
        """
        changed = 0
        for event_type in sorted(self._by_category.get(category, ())):
            if self._routes[event_type].enabled != enabled:
                self.set_route_enabled(event_type, enabled)
                changed += 1
        return changed

    # Introspection

    def get_statistics(self) -> RouterStatistics:
        enabled = sum(1 for r in self._routes.values() if r.enabled)
        return RouterStatistics(
            total_routes=len(self._routes),
            enabled_routes=enabled,
            disabled_routes=len(self._routes) - enabled,
            routes_by_category={
                category: len(types)
                for category, types in sorted(self._by_category.items())
            },
            abandoned_in_flight=len(self._abandoned),
            **self._counters,
        )

    def get_route_info(self, event_type: str) -> dict[str, Any] | None:
        route = self._routes.get(event_type)
        if route is None:
            return None
        known = event_type in {t.value for t in KnownEventType}
        return {
            "event_type": route.event_type,
            "description": route.description,
            "handler": route.handler_name,
            "required_fields": list(route.required_fields),
            "enabled": route.enabled,
            "timeout_seconds": route.timeout_seconds or self.config.timeout_seconds,
            "has_rollback": route.rollback is not None,
            "known_event_type": known,
        }

    # Dispatch

    def _finish(
        self,
        event: ParsedEvent,
        started: float,
        *,
        routed: bool,
        handler: str | None = None,
        result: HandlerResult | None = None,
        error_kind: ErrorKind | None = None,
        error: str | None = None,
    ) -> RoutingResult:
        routing_time_ms = (time.perf_counter() - started) * 1000
        success = routed and error_kind is None and result is not None and result.success
        routing_result = RoutingResult(
            success=success,
            routed=routed,
            event_type=event.event_type,
            handler=handler,
            result=result,
            error_kind=error_kind,
            error=error,
            routing_time_ms=routing_time_ms,
        )
        log_pipeline_stage(
            logger,
            "routing",
            outcome=error_kind.name.lower() if error_kind else "routed",
            event_id=event.event_id,
            event_type=event.event_type,
            duration_ms=routing_time_ms,
            error=error,
            handler=handler,
        )
        return routing_result

    def _missing_fields(self, route: EventRoute, entity: dict[str, Any]) -> list[str]:
        return [f for f in route.required_fields if entity.get(f) is None]

    def _on_abandoned_done(self, event: ParsedEvent, task: "asyncio.Task[HandlerResult]") -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            logger.warning(
                "Abandoned handler for %s was cancelled",
                event.event_id,
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Abandoned handler for %s failed after timeout: %s",
                event.event_id,
                exc,
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return
        result = task.result()
        logger.warning(
            "Abandoned handler for %s finished after timeout (success=%s processed=%s); result discarded",
            event.event_id,
            result.success,
            result.processed,
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )

    async def route(
        self, event: ParsedEvent, record: IdempotencyRecord | None = None
    ) -> RoutingResult:
        """Dispatch one event to its handler.

        Args:
            event: Parsed event
            record: The event's idempotency record, passed to the handler

        Returns:
            RoutingResult; handler failures are reported, never raised
        """
        started = time.perf_counter()
        route = self._routes.get(event.event_type)

        if route is None:
            self._counters["unknown_events"] += 1
            if self.config.enable_unknown_event_logging:
                logger.warning(
                    "No handler registered for %s (%s)",
                    event.event_type,
                    event.event_id,
                    extra={
                        "event_type": event.event_type,
                        "event_id": event.event_id,
                        "known_event_type": event.known_type is not None,
                    },
                )
            return self._finish(
                event,
                started,
                routed=False,
                error_kind=ErrorKind.NO_HANDLER_REGISTERED,
                error=f"No handler registered for {event.event_type}",
            )

        if not route.enabled:
            self._counters["rejected_events"] += 1
            return self._finish(
                event,
                started,
                routed=False,
                handler=route.handler_name,
                error_kind=ErrorKind.HANDLER_DISABLED,
                error=f"Handler for {event.event_type} is disabled",
            )

        if self.config.enable_event_validation:
            missing = self._missing_fields(route, event.entity)
            if missing:
                self._counters["rejected_events"] += 1
                return self._finish(
                    event,
                    started,
                    routed=False,
                    handler=route.handler_name,
                    error_kind=ErrorKind.MISSING_REQUIRED_FIELD,
                    error=f"Missing required fields: {', '.join(missing)}",
                )

        timeout = route.timeout_seconds or self.config.timeout_seconds
        rollback = None
        if route.rollback is not None:
            rollback = functools.partial(invoke_rollback, route.rollback, event, record)
        task = asyncio.ensure_future(
            execute_with_rollback(
                functools.partial(invoke_handler, route.handler, event, record),
                rollback,
                event_id=event.event_id,
            )
        )
        done, _ = await asyncio.wait({task}, timeout=timeout)

        if not done:
            self._counters["handler_timeouts"] += 1
            self._abandoned.add(task)
            task.add_done_callback(lambda t: self._on_abandoned_done(event, t))
            return self._finish(
                event,
                started,
                routed=True,
                handler=route.handler_name,
                error_kind=ErrorKind.HANDLER_TIMEOUT,
                error=f"Handler timed out after {timeout:g}s",
            )

        try:
            result = task.result()
        except Exception as e:
            self._counters["handler_errors"] += 1
            logger.exception(
                "Handler %s raised for %s",
                route.handler_name,
                event.event_id,
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return self._finish(
                event,
                started,
                routed=True,
                handler=route.handler_name,
                error_kind=ErrorKind.HANDLER_ERROR,
                error=f"{type(e).__name__}: {e}",
            )

        self._counters["routed_events"] += 1
        return self._finish(
            event,
            started,
            routed=True,
            handler=route.handler_name,
            result=result,
            error=result.error,
        )
