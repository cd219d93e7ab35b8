"""Processing-state tracking for individual webhook events.

A ProcessingState is the audit trail of one processing attempt. States are
immutable: every change returns a new instance, and a state whose
``completed_at`` is set can no longer change. Persisting states is optional
and best-effort; the idempotency record stays the source of truth.
"""

import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from payhook.models.errors import StateFinalizedError
from payhook.models.routing import (
    HandlerExecution,
    HandlerResult,
    ProcessingState,
)
from payhook.models.webhook_event import ParsedEvent, ProcessingStatus
from payhook.services.dynamodb import DynamoDBService
from payhook.utils.logging import get_logger

logger = get_logger(__name__)


class StateStore(Protocol):
    """Persistence for processing states (latest attempt per event)."""

    def save(self, state: ProcessingState) -> None: ...

    def load(self, event_id: str) -> ProcessingState | None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def derive_status(result: HandlerResult) -> ProcessingStatus:
    """Map a handler result to the final processing status.

    success and processed -> processed; success without processing ->
    skipped (the handler declined the event); otherwise failed.
    """
    if result.success and result.processed:
        return ProcessingStatus.PROCESSED
    if result.success:
        return ProcessingStatus.SKIPPED
    return ProcessingStatus.FAILED


def validate_processing_state(state: ProcessingState) -> list[str]:
    """Check a state for internal consistency.

    Args:
        state: State to check

    Returns:
        List of problems; empty when the state is consistent
    """
    errors: list[str] = []
    if not state.event_id:
        errors.append("event_id is required")
    if state.retry_count > state.max_retries:
        errors.append(
            f"retry_count {state.retry_count} exceeds max_retries {state.max_retries}"
        )
    if state.completed_at is not None and state.completed_at < state.started_at:
        errors.append("completed_at is before started_at")
    if state.is_complete and state.status in (
        ProcessingStatus.PENDING,
        ProcessingStatus.PROCESSING,
    ):
        errors.append(f"completed state has non-final status {state.status.value}")
    if state.status == ProcessingStatus.FAILED and not state.error:
        errors.append("failed state has no error")
    for execution in state.handler_results:
        if execution.duration_ms < 0:
            errors.append(f"negative duration for handler {execution.handler_name}")
    return errors


class StateTracker:
    """Creates and advances ProcessingState instances.

    Args:
        store: Optional persistence; failures are logged and never raised
        max_retries: Value recorded on new states
    """

    def __init__(self, store: StateStore | None = None, *, max_retries: int = 3) -> None:
        self.store = store
        self.max_retries = max_retries

    def _persist(self, state: ProcessingState) -> None:
        if self.store is None:
            return
        try:
            self.store.save(state)
        except Exception as e:
            logger.warning(
                "Failed to persist processing state for %s: %s",
                state.event_id,
                e,
                extra={"event_id": state.event_id, "status": state.status.value},
            )

    def _ensure_open(self, state: ProcessingState) -> None:
        if state.is_complete:
            raise StateFinalizedError(
                f"Processing state for {state.event_id} is already complete"
            )

    def initialize_state(
        self,
        event: ParsedEvent,
        *,
        retry_count: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> ProcessingState:
        """Create a pending state for a newly admitted event.

        Args:
            event: Parsed event
            retry_count: Previous attempts for this event
            metadata: Extra audit fields

        Returns:
            New pending ProcessingState
        """
        state = ProcessingState(
            event_id=event.event_id,
            event_type=event.event_type,
            status=ProcessingStatus.PENDING,
            started_at=_utcnow(),
            retry_count=retry_count,
            max_retries=max(self.max_retries, retry_count),
            metadata={"account_id": event.account_id, **(metadata or {})},
        )
        self._persist(state)
        return state

    def mark_processing(self, state: ProcessingState) -> ProcessingState:
        self._ensure_open(state)
        updated = state.model_copy(update={"status": ProcessingStatus.PROCESSING})
        self._persist(updated)
        return updated

    def record_handler_execution(
        self,
        state: ProcessingState,
        result: HandlerResult,
        *,
        handler_name: str,
        duration_ms: float,
    ) -> ProcessingState:
        """Append a handler execution and complete the state.

        Args:
            state: Open processing state
            result: Handler result
            handler_name: Name of the handler that ran
            duration_ms: Handler latency

        Returns:
            Completed state with the derived status

        Raises:
            StateFinalizedError: If the state is already complete
        """
        self._ensure_open(state)
        execution = HandlerExecution(
            event_type=state.event_type,
            handler_name=handler_name,
            success=result.success,
            processed=result.processed,
            duration_ms=duration_ms,
            error=result.error,
            details=result.details,
        )
        status = derive_status(result)
        error = result.error if status == ProcessingStatus.FAILED else None
        if status == ProcessingStatus.FAILED and not error:
            error = "Handler reported failure"

        updated = state.model_copy(
            update={
                "status": status,
                "completed_at": _utcnow(),
                "handler_results": (*state.handler_results, execution),
                "error": error,
            }
        )
        self._persist(updated)
        return updated

    def finalize_state(
        self,
        state: ProcessingState,
        status: ProcessingStatus,
        error: str | None = None,
    ) -> ProcessingState:
        """Complete a state without a handler result (skipped or rejected routing).

        Raises:
            StateFinalizedError: If the state is already complete
        """
        self._ensure_open(state)
        if status == ProcessingStatus.FAILED and not error:
            error = "Processing failed"
        updated = state.model_copy(
            update={"status": status, "completed_at": _utcnow(), "error": error}
        )
        self._persist(updated)
        return updated

    def get_processing_state(self, event_id: str) -> ProcessingState | None:
        """Load the last persisted state of an event, if persistence is enabled."""
        if self.store is None:
            return None
        try:
            return self.store.load(event_id)
        except Exception as e:
            logger.warning(
                "Failed to load processing state for %s: %s",
                event_id,
                e,
                extra={"event_id": event_id},
            )
            return None


async def execute_with_rollback(
    action: Callable[[], Awaitable[Any]],
    rollback: Callable[[], Awaitable[None]] | None = None,
    *,
    event_id: str,
) -> Any:
    """Run an action and invoke a best-effort rollback hook if it raises.

    The original exception is re-raised; a failing rollback is only logged.

    Args:
        action: Coroutine function doing the work
        rollback: Coroutine function undoing partial work
        event_id: Event ID for log context

    Returns:
        The action's return value
    """
    try:
        return await action()
    except Exception:
        if rollback is not None:
            try:
                await rollback()
                logger.info("Rollback completed for %s", event_id, extra={"event_id": event_id})
            except Exception as rollback_error:
                logger.error(
                    "Rollback failed for %s: %s",
                    event_id,
                    rollback_error,
                    extra={"event_id": event_id},
                )
        raise


# =========================================================================
# Persistence
# =========================================================================


def state_to_item(state: ProcessingState, retention_days: int) -> dict[str, Any]:
    """Serialize a state; nested audit data is stored as JSON strings."""
    item: dict[str, Any] = {
        "event_id": state.event_id,
        "event_type": state.event_type,
        "processing_status": state.status.value,
        "started_at": state.started_at.isoformat(),
        "retry_count": state.retry_count,
        "max_retries": state.max_retries,
        "handler_results_json": json.dumps(
            [
                execution.model_dump(mode="json", exclude_none=True)
                for execution in state.handler_results
            ]
        ),
        "metadata_json": json.dumps(state.metadata, default=str),
        "expires_at": int((state.started_at + timedelta(days=retention_days)).timestamp()),
    }
    if state.completed_at:
        item["completed_at"] = state.completed_at.isoformat()
    if state.error:
        item["error"] = state.error
    return item


def item_to_state(item: dict[str, Any]) -> ProcessingState:
    executions = tuple(
        HandlerExecution.model_validate(raw)
        for raw in json.loads(item.get("handler_results_json") or "[]")
    )
    completed_at = item.get("completed_at")
    return ProcessingState(
        event_id=item["event_id"],
        event_type=item["event_type"],
        status=ProcessingStatus(item["processing_status"]),
        started_at=datetime.fromisoformat(item["started_at"]),
        completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
        retry_count=int(item.get("retry_count", 0)),
        max_retries=int(item.get("max_retries", 3)),
        handler_results=executions,
        error=item.get("error"),
        metadata=json.loads(item.get("metadata_json") or "{}"),
    )


class DynamoDBStateStore:
    """Stores the latest processing state per event in DynamoDB."""

    def __init__(
        self,
        db: DynamoDBService,
        table: str = "webhook-processing-states",
        *,
        retention_days: int = 30,
    ) -> None:
        self.db = db
        self.table = table
        self.retention_days = retention_days

    def save(self, state: ProcessingState) -> None:
        self.db.put_item(self.table, state_to_item(state, self.retention_days))

    def load(self, event_id: str) -> ProcessingState | None:
        item = self.db.get_item(self.table, {"event_id": event_id}, consistent_read=True)
        return item_to_state(item) if item else None


class InMemoryStateStore:
    """Dict-backed state store for tests and local runs."""

    def __init__(self) -> None:
        self.states: dict[str, ProcessingState] = {}

    def save(self, state: ProcessingState) -> None:
        self.states[state.event_id] = state

    def load(self, event_id: str) -> ProcessingState | None:
        return self.states.get(event_id)
