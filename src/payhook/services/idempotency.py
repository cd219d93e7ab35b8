"""Idempotency store for webhook events.

Admission is a single conditional insert keyed on ``event_id``: when two
deliveries of the same event race, exactly one insert succeeds and the other
is told the event was already admitted. Every later change is a conditional
status transition, so no caller ever reads a record and writes it back.

Two implementations share the same contract:

- DynamoDBIdempotencyStore: production store (conditional writes, TTL-based
  retention, ``status-index`` GSI for operator queries)
- InMemoryIdempotencyStore: lock-guarded dict for tests and local runs
"""

import json
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from payhook.models.errors import IdempotencyStoreError
from payhook.models.webhook_event import (
    IdempotencyCheck,
    IdempotencyRecord,
    ProcessingStatus,
    WebhookEventStats,
)
from payhook.services.dynamodb import DynamoDBService
from payhook.utils.logging import get_logger

logger = get_logger(__name__)

STATUS_INDEX = "status-index"
DEFAULT_RETENTION_DAYS = 30
DEFAULT_MAX_ATTEMPTS = 5

T = TypeVar("T")


class IdempotencyStore(Protocol):
    """Contract every idempotency backend implements.

    All operations are atomic per ``event_id`` and raise
    IdempotencyStoreError on any I/O failure.
    """

    def check_processed(self, event_id: str) -> IdempotencyCheck: ...

    def get_record(self, event_id: str) -> IdempotencyRecord | None: ...

    def record_event(
        self,
        event_id: str,
        event_type: str,
        account_id: str,
        payload: dict[str, Any],
        signature: str | None,
        *,
        payload_hash: str | None = None,
    ) -> bool: ...

    def mark_processing(self, event_id: str) -> bool: ...

    def mark_processed(
        self,
        event_id: str,
        related_subscription_id: str | None = None,
        related_payment_id: str | None = None,
    ) -> bool: ...

    def mark_failed(
        self, event_id: str, error_message: str, *, retryable: bool = True
    ) -> bool: ...

    def mark_skipped(self, event_id: str, reason: str | None = None) -> bool: ...

    def claim_for_retry(self, event_id: str, expected_attempts: int) -> bool: ...

    def claim_stale_processing(
        self, event_id: str, expected_attempts: int, started_before: datetime
    ) -> bool: ...

    def get_events_by_status(
        self, status: ProcessingStatus, limit: int = 100
    ) -> list[IdempotencyRecord]: ...

    def get_unprocessed_events(self, limit: int = 100) -> list[IdempotencyRecord]: ...

    def get_statistics(self) -> WebhookEventStats: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stats_from_rows(rows: list[tuple[str, str]]) -> WebhookEventStats:
    """Aggregate (status, event_type) pairs into WebhookEventStats."""
    counts = {status: 0 for status in ProcessingStatus}
    by_type: dict[str, int] = {}
    for status, event_type in rows:
        counts[ProcessingStatus(status)] += 1
        by_type[event_type] = by_type.get(event_type, 0) + 1

    return WebhookEventStats(
        total_events=len(rows),
        pending_events=counts[ProcessingStatus.PENDING],
        processing_events=counts[ProcessingStatus.PROCESSING],
        processed_events=counts[ProcessingStatus.PROCESSED],
        failed_events=counts[ProcessingStatus.FAILED],
        skipped_events=counts[ProcessingStatus.SKIPPED],
        events_by_type=by_type,
    )


# =========================================================================
# DynamoDB implementation
# =========================================================================


def record_to_item(record: IdempotencyRecord, signature: str | None = None) -> dict[str, Any]:
    """Serialize a record into a DynamoDB item.

    The payload is stored as a JSON string so float amounts never reach the
    DynamoDB number type.
    """
    item: dict[str, Any] = {
        "event_id": record.event_id,
        "event_type": record.event_type,
        "account_id": record.account_id,
        "payload_json": json.dumps(record.payload, separators=(",", ":")),
        "signature_verified": record.signature_verified,
        "processing_status": record.status.value,
        "attempts": record.attempts,
        "retryable_failure": record.retryable_failure,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
    }
    optional: dict[str, Any] = {
        "payload_hash": record.payload_hash,
        "signature": signature,
        "processing_error": record.error,
        "related_subscription_id": record.related_subscription_id,
        "related_payment_id": record.related_payment_id,
        "processing_started_at": (
            record.processing_started_at.isoformat()
            if record.processing_started_at
            else None
        ),
        "processed_at": record.processed_at.isoformat() if record.processed_at else None,
        "expires_at": record.expires_at,
    }
    item.update({k: v for k, v in optional.items() if v is not None})
    return item


def item_to_record(item: dict[str, Any]) -> IdempotencyRecord:
    """Deserialize a DynamoDB item into an IdempotencyRecord."""

    def _dt(key: str) -> datetime | None:
        value = item.get(key)
        return datetime.fromisoformat(value) if value else None

    expires_at = item.get("expires_at")
    return IdempotencyRecord(
        event_id=item["event_id"],
        event_type=item["event_type"],
        account_id=item["account_id"],
        payload=json.loads(item.get("payload_json") or "{}"),
        payload_hash=item.get("payload_hash"),
        signature_verified=bool(item.get("signature_verified", True)),
        status=ProcessingStatus(item["processing_status"]),
        attempts=int(item.get("attempts", 0)),
        error=item.get("processing_error"),
        retryable_failure=bool(item.get("retryable_failure", True)),
        related_subscription_id=item.get("related_subscription_id"),
        related_payment_id=item.get("related_payment_id"),
        processing_started_at=_dt("processing_started_at"),
        processed_at=_dt("processed_at"),
        created_at=_dt("created_at") or _utcnow(),
        updated_at=_dt("updated_at") or _utcnow(),
        expires_at=int(expires_at) if expires_at is not None else None,
    )


class DynamoDBIdempotencyStore:
    """Idempotency store backed by a DynamoDB table keyed on ``event_id``.

    Table layout:
        - Partition key ``event_id`` (S)
        - GSI ``status-index``: ``processing_status`` (S) + ``created_at`` (S)
        - TTL attribute ``expires_at`` implementing the retention sweep
    """

    def __init__(
        self,
        db: DynamoDBService,
        table: str = "webhook-events",
        *,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.db = db
        self.table = table
        self.retention_days = retention_days
        self.max_attempts = max_attempts

    def _call(self, operation: str, event_id: str | None, fn: Callable[[], T]) -> T:
        """Run a DynamoDB call, mapping any client failure to IdempotencyStoreError."""
        try:
            return fn()
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "Idempotency store %s failed for %s: %s",
                operation,
                event_id or "-",
                e,
                extra={"operation": operation, "event_id": event_id},
            )
            raise IdempotencyStoreError(f"{operation} failed: {e}") from e

    def _transition(
        self,
        operation: str,
        event_id: str,
        update_expression: str,
        values: dict[str, Any],
        condition: str,
        names: dict[str, str] | None = None,
    ) -> bool:
        attribute_names = {"#status": "processing_status"}
        if names:
            attribute_names.update(names)

        attrs = self._call(
            operation,
            event_id,
            lambda: self.db.update_item(
                table=self.table,
                key={"event_id": event_id},
                update_expression=update_expression,
                expression_attribute_values=values,
                expression_attribute_names=attribute_names,
                condition_expression=condition,
            ),
        )
        if attrs is None:
            logger.debug("%s not applied for %s (condition failed)", operation, event_id)
            return False
        return True

    # Lookups

    def get_record(self, event_id: str) -> IdempotencyRecord | None:
        item = self._call(
            "get_record",
            event_id,
            lambda: self.db.get_item(
                self.table, {"event_id": event_id}, consistent_read=True
            ),
        )
        return item_to_record(item) if item else None

    def check_processed(self, event_id: str) -> IdempotencyCheck:
        """Look up the latest committed state of an event.

        Args:
            event_id: Provider event ID

        Returns:
            IdempotencyCheck with exists=False when the event was never admitted
        """
        record = self.get_record(event_id)
        if record is None:
            return IdempotencyCheck(exists=False)
        return IdempotencyCheck(exists=True, status=record.status, record=record)

    # Admission

    def record_event(
        self,
        event_id: str,
        event_type: str,
        account_id: str,
        payload: dict[str, Any],
        signature: str | None,
        *,
        payload_hash: str | None = None,
    ) -> bool:
        """Admit an event with a single conditional insert.

        Args:
            event_id: Provider event ID (unique key)
            event_type: Event type
            account_id: Merchant account ID
            payload: Entity payload
            signature: Verified signature, kept for auditing
            payload_hash: SHA-256 hash of the raw body

        Returns:
            True if this call admitted the event, False if it already existed

        Raises:
            IdempotencyStoreError: If DynamoDB cannot be reached
        """
        now = _utcnow()
        record = IdempotencyRecord(
            event_id=event_id,
            event_type=event_type,
            account_id=account_id,
            payload=payload,
            payload_hash=payload_hash,
            signature_verified=True,
            status=ProcessingStatus.PENDING,
            created_at=now,
            updated_at=now,
            expires_at=int((now + timedelta(days=self.retention_days)).timestamp()),
        )
        admitted = self._call(
            "record_event",
            event_id,
            lambda: self.db.put_item(
                self.table,
                record_to_item(record, signature),
                condition_expression="attribute_not_exists(event_id)",
            ),
        )
        if not admitted:
            logger.info(
                "Event %s already admitted", event_id, extra={"event_id": event_id}
            )
        return admitted

    # Status transitions

    def mark_processing(self, event_id: str) -> bool:
        """Move a pending event to processing and count the attempt."""
        now = _utcnow().isoformat()
        return self._transition(
            "mark_processing",
            event_id,
            "SET #status = :processing, attempts = attempts + :one, "
            "processing_started_at = :now, updated_at = :now",
            {
                ":processing": ProcessingStatus.PROCESSING.value,
                ":pending": ProcessingStatus.PENDING.value,
                ":one": 1,
                ":now": now,
            },
            "#status = :pending",
        )

    def mark_processed(
        self,
        event_id: str,
        related_subscription_id: str | None = None,
        related_payment_id: str | None = None,
    ) -> bool:
        """Move a processing event to processed.

        Calling twice is safe: the second call returns False. Related IDs
        already on the record are kept when none are given.

        Returns:
            True if the record transitioned
        """
        now = _utcnow().isoformat()
        update = "SET #status = :processed, processed_at = :now, updated_at = :now"
        values: dict[str, Any] = {
            ":processed": ProcessingStatus.PROCESSED.value,
            ":processing": ProcessingStatus.PROCESSING.value,
            ":now": now,
        }
        if related_subscription_id:
            update += ", related_subscription_id = :sub"
            values[":sub"] = related_subscription_id
        if related_payment_id:
            update += ", related_payment_id = :pay"
            values[":pay"] = related_payment_id

        return self._transition(
            "mark_processed",
            event_id,
            update + " REMOVE processing_error",
            values,
            "#status = :processing",
        )

    def mark_failed(
        self, event_id: str, error_message: str, *, retryable: bool = True
    ) -> bool:
        """Record a processing failure for a pending or processing event.

        Args:
            event_id: Provider event ID
            error_message: Error kept for operator visibility
            retryable: Whether a redelivery may re-run the event

        Returns:
            True if the record transitioned (False once it has a final status)
        """
        return self._transition(
            "mark_failed",
            event_id,
            "SET #status = :failed, processing_error = :error, "
            "retryable_failure = :retryable, updated_at = :now",
            {
                ":failed": ProcessingStatus.FAILED.value,
                ":pending": ProcessingStatus.PENDING.value,
                ":processing": ProcessingStatus.PROCESSING.value,
                ":error": error_message[:1000],
                ":retryable": retryable,
                ":now": _utcnow().isoformat(),
            },
            "#status = :pending OR #status = :processing",
        )

    def mark_skipped(self, event_id: str, reason: str | None = None) -> bool:
        """Acknowledge a processing event that was deliberately not applied."""
        values: dict[str, Any] = {
            ":skipped": ProcessingStatus.SKIPPED.value,
            ":processing": ProcessingStatus.PROCESSING.value,
            ":now": _utcnow().isoformat(),
        }
        update = "SET #status = :skipped, processed_at = :now, updated_at = :now"
        if reason:
            update += ", processing_error = :reason"
            values[":reason"] = reason[:1000]

        return self._transition(
            "mark_skipped",
            event_id,
            update,
            values,
            "#status = :processing",
        )

    def claim_for_retry(self, event_id: str, expected_attempts: int) -> bool:
        """Reclaim a retryable failed event for another attempt.

        Compare-and-swap on status and attempt count: of several concurrent
        redeliveries only one gets True.

        Args:
            event_id: Provider event ID
            expected_attempts: Attempt count read from the failed record

        Returns:
            True if the event moved back to pending for this caller
        """
        return self._transition(
            "claim_for_retry",
            event_id,
            "SET #status = :pending, updated_at = :now",
            {
                ":pending": ProcessingStatus.PENDING.value,
                ":failed": ProcessingStatus.FAILED.value,
                ":attempts": expected_attempts,
                ":max": self.max_attempts,
                ":true": True,
                ":now": _utcnow().isoformat(),
            },
            "#status = :failed AND attempts = :attempts "
            "AND attempts < :max AND retryable_failure = :true",
        )

    def claim_stale_processing(
        self, event_id: str, expected_attempts: int, started_before: datetime
    ) -> bool:
        """Reclaim an event whose processing lease has expired.

        A delivery that dies between ``mark_processing`` and its final
        transition leaves the record in processing. Once the attempt started
        before ``started_before`` a redelivery may take it over; the compare
        on the attempt count lets only one redelivery win.

        Args:
            event_id: Provider event ID
            expected_attempts: Attempt count read from the processing record
            started_before: Lease cutoff for ``processing_started_at``

        Returns:
            True if the event moved back to pending for this caller
        """
        return self._transition(
            "claim_stale_processing",
            event_id,
            "SET #status = :pending, updated_at = :now",
            {
                ":pending": ProcessingStatus.PENDING.value,
                ":processing": ProcessingStatus.PROCESSING.value,
                ":attempts": expected_attempts,
                ":max": self.max_attempts,
                ":cutoff": started_before.isoformat(),
                ":now": _utcnow().isoformat(),
            },
            "#status = :processing AND attempts = :attempts "
            "AND attempts < :max AND processing_started_at < :cutoff",
        )

    # Operator queries

    def get_events_by_status(
        self, status: ProcessingStatus, limit: int = 100
    ) -> list[IdempotencyRecord]:
        items = self._call(
            "get_events_by_status",
            None,
            lambda: self.db.query_by_gsi(
                table=self.table,
                index_name=STATUS_INDEX,
                partition_key_name="processing_status",
                partition_key_value=status.value,
                limit=limit,
            ),
        )
        return [item_to_record(item) for item in items]

    def get_unprocessed_events(self, limit: int = 100) -> list[IdempotencyRecord]:
        """Events a replay sweep may pick up, oldest first.

        Pending events plus retryable failures below the attempt cap.
        """
        candidates = self.get_events_by_status(ProcessingStatus.PENDING, limit)
        candidates += [
            record
            for record in self.get_events_by_status(ProcessingStatus.FAILED, limit)
            if record.retryable_failure and record.attempts < self.max_attempts
        ]
        candidates.sort(key=lambda record: record.created_at)
        return candidates[:limit]

    def get_statistics(self) -> WebhookEventStats:
        items = self._call(
            "get_statistics",
            None,
            lambda: self.db.scan_projection(
                self.table, ["processing_status", "event_type"]
            ),
        )
        return _stats_from_rows(
            [(item["processing_status"], item["event_type"]) for item in items]
        )


# =========================================================================
# In-memory implementation
# =========================================================================


class InMemoryIdempotencyStore:
    """Thread-safe in-process store with the same semantics as DynamoDB.

    Each operation holds a single lock for its read-check-write, which gives
    the same atomicity the DynamoDB conditional writes provide. Only valid
    within one process.
    """

    def __init__(
        self,
        *,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.retention_days = retention_days
        self.max_attempts = max_attempts
        self._records: dict[str, IdempotencyRecord] = {}
        self._signatures: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _update(
        self,
        event_id: str,
        allowed: Callable[[IdempotencyRecord], bool],
        changes: Callable[[IdempotencyRecord], dict[str, Any]],
    ) -> bool:
        with self._lock:
            record = self._records.get(event_id)
            if record is None or not allowed(record):
                return False
            update = changes(record)
            update.setdefault("updated_at", _utcnow())
            self._records[event_id] = record.model_copy(update=update)
            return True

    def get_record(self, event_id: str) -> IdempotencyRecord | None:
        with self._lock:
            return self._records.get(event_id)

    def check_processed(self, event_id: str) -> IdempotencyCheck:
        record = self.get_record(event_id)
        if record is None:
            return IdempotencyCheck(exists=False)
        return IdempotencyCheck(exists=True, status=record.status, record=record)

    def record_event(
        self,
        event_id: str,
        event_type: str,
        account_id: str,
        payload: dict[str, Any],
        signature: str | None,
        *,
        payload_hash: str | None = None,
    ) -> bool:
        now = _utcnow()
        with self._lock:
            if event_id in self._records:
                return False
            self._records[event_id] = IdempotencyRecord(
                event_id=event_id,
                event_type=event_type,
                account_id=account_id,
                payload=payload,
                payload_hash=payload_hash,
                status=ProcessingStatus.PENDING,
                created_at=now,
                updated_at=now,
                expires_at=int((now + timedelta(days=self.retention_days)).timestamp()),
            )
            self._signatures[event_id] = signature
            return True

    def mark_processing(self, event_id: str) -> bool:
        now = _utcnow()
        return self._update(
            event_id,
            lambda r: r.status == ProcessingStatus.PENDING,
            lambda r: {
                "status": ProcessingStatus.PROCESSING,
                "attempts": r.attempts + 1,
                "processing_started_at": now,
            },
        )

    def mark_processed(
        self,
        event_id: str,
        related_subscription_id: str | None = None,
        related_payment_id: str | None = None,
    ) -> bool:
        return self._update(
            event_id,
            lambda r: r.status == ProcessingStatus.PROCESSING,
            lambda r: {
                "status": ProcessingStatus.PROCESSED,
                "processed_at": _utcnow(),
                "error": None,
                "related_subscription_id": related_subscription_id
                or r.related_subscription_id,
                "related_payment_id": related_payment_id or r.related_payment_id,
            },
        )

    def mark_failed(
        self, event_id: str, error_message: str, *, retryable: bool = True
    ) -> bool:
        return self._update(
            event_id,
            lambda r: r.status in (ProcessingStatus.PENDING, ProcessingStatus.PROCESSING),
            lambda r: {
                "status": ProcessingStatus.FAILED,
                "error": error_message[:1000],
                "retryable_failure": retryable,
            },
        )

    def mark_skipped(self, event_id: str, reason: str | None = None) -> bool:
        return self._update(
            event_id,
            lambda r: r.status == ProcessingStatus.PROCESSING,
            lambda r: {
                "status": ProcessingStatus.SKIPPED,
                "processed_at": _utcnow(),
                "error": reason[:1000] if reason else r.error,
            },
        )

    def claim_for_retry(self, event_id: str, expected_attempts: int) -> bool:
        return self._update(
            event_id,
            lambda r: (
                r.status == ProcessingStatus.FAILED
                and r.attempts == expected_attempts
                and r.attempts < self.max_attempts
                and r.retryable_failure
            ),
            lambda r: {"status": ProcessingStatus.PENDING},
        )

    def claim_stale_processing(
        self, event_id: str, expected_attempts: int, started_before: datetime
    ) -> bool:
        return self._update(
            event_id,
            lambda r: (
                r.status == ProcessingStatus.PROCESSING
                and r.attempts == expected_attempts
                and r.attempts < self.max_attempts
                and r.processing_started_at is not None
                and r.processing_started_at < started_before
            ),
            lambda r: {"status": ProcessingStatus.PENDING},
        )

    def get_events_by_status(
        self, status: ProcessingStatus, limit: int = 100
    ) -> list[IdempotencyRecord]:
        with self._lock:
            matching = [r for r in self._records.values() if r.status == status]
        matching.sort(key=lambda r: r.created_at)
        return matching[:limit]

    def get_unprocessed_events(self, limit: int = 100) -> list[IdempotencyRecord]:
        with self._lock:
            matching = [
                r
                for r in self._records.values()
                if r.status == ProcessingStatus.PENDING
                or (
                    r.status == ProcessingStatus.FAILED
                    and r.retryable_failure
                    and r.attempts < self.max_attempts
                )
            ]
        matching.sort(key=lambda r: r.created_at)
        return matching[:limit]

    def get_statistics(self) -> WebhookEventStats:
        with self._lock:
            rows = [(r.status.value, r.event_type) for r in self._records.values()]
        return _stats_from_rows(rows)
