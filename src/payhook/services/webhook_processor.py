"""Webhook processor: the single entry point of the pipeline.

Sequence for one delivery:

    verify signature -> parse -> idempotency check -> admission
        -> processing state -> route -> finalize

Nothing is recorded before the signature and the payload are accepted, and
nothing is routed before admission succeeds. Every outcome maps to one HTTP
status: 200 (processed, duplicate or acknowledged), 400 (never retry),
401 (bad signature) and 500 (retry).
"""

import asyncio
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from payhook.config import WebhookSettings
from payhook.models.errors import (
    ERROR_MESSAGES,
    ErrorKind,
    IdempotencyStoreError,
    WebhookError,
    get_http_status_for_error,
)
from payhook.models.response import WebhookOutcome, WebhookResponse
from payhook.models.routing import HandlerResult, ProcessingState, RoutingResult
from payhook.models.webhook_event import (
    IN_FLIGHT_STATUSES,
    IdempotencyRecord,
    ParsedEvent,
    ProcessingStatus,
)
from payhook.services.event_parser import parse_event
from payhook.services.event_router import EventRouter
from payhook.services.idempotency import IdempotencyStore
from payhook.services.signature import (
    compute_payload_hash,
    extract_signature,
    get_webhook_secret,
    verify_signature,
)
from payhook.services.state_tracker import StateTracker
from payhook.utils.logging import (
    get_correlation_id,
    get_logger,
    log_pipeline_stage,
    log_webhook_event,
    set_correlation_id,
)

logger = get_logger(__name__)

EVENT_ID_HEADER = "x-razorpay-event-id"

MSG_PROCESSED = "Webhook processed successfully"
MSG_DUPLICATE = "Duplicate event acknowledged"
MSG_IN_FLIGHT = "Event is already being processed"
MSG_ACKNOWLEDGED = "Event acknowledged without processing"
MSG_DECLINED = "Event acknowledged; handler made no changes"


def get_header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value.strip() or None
    return None


class WebhookProcessor:
    """Runs one webhook delivery through the pipeline.

    Args:
        router: Frozen event router
        store: Idempotency store
        settings: Webhook settings
        state_tracker: Processing-state tracker (defaults to an unpersisted one)
        secret_provider: Returns the webhook secret; defaults to env/SSM lookup
    """

    def __init__(
        self,
        router: EventRouter,
        store: IdempotencyStore,
        settings: WebhookSettings,
        *,
        state_tracker: StateTracker | None = None,
        secret_provider: Callable[[], str | None] | None = None,
    ) -> None:
        self.router = router
        self.store = store
        self.settings = settings
        self.state_tracker = state_tracker or StateTracker(max_retries=settings.max_retries)
        self.secret_provider = secret_provider or (lambda: get_webhook_secret(settings))

    async def _run_blocking(
        self, operation: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        """Run a blocking store or state-store call in a worker thread."""
        return await asyncio.to_thread(operation, *args, **kwargs)

    def _respond(
        self,
        status_code: int,
        started: float,
        *,
        success: bool,
        message: str,
        status: str,
        event: ParsedEvent | None = None,
        error_kind: ErrorKind | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> WebhookOutcome:
        response = WebhookResponse(
            success=success,
            message=message,
            timestamp=datetime.now(timezone.utc),
            request_id=get_correlation_id() or set_correlation_id(),
            event_id=event.event_id if event else None,
            event_type=event.event_type if event else None,
            status=status,
            error_code=error_kind,
            retryable=retryable,
            processing_time_ms=round((time.perf_counter() - started) * 1000, 2),
            details=details,
        )
        return WebhookOutcome(status_code=status_code, response=response)

    async def process(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        """Process one webhook delivery.

        Args:
            raw_body: Exact request body bytes
            headers: Request headers

        Returns:
            WebhookOutcome with the HTTP status code and response envelope
        """
        started = time.perf_counter()
        if get_correlation_id() is None:
            set_correlation_id()

        try:
            return await self._process(raw_body, headers, started)
        except IdempotencyStoreError as e:
            logger.error("Idempotency store unavailable: %s", e)
            return self._respond(
                get_http_status_for_error(ErrorKind.STORE_UNAVAILABLE),
                started,
                success=False,
                message=ERROR_MESSAGES[ErrorKind.STORE_UNAVAILABLE],
                status="error",
                error_kind=ErrorKind.STORE_UNAVAILABLE,
                retryable=True,
            )
        except Exception:
            logger.exception("Unexpected error while processing webhook")
            return self._respond(
                500,
                started,
                success=False,
                message=ERROR_MESSAGES[ErrorKind.INTERNAL_ERROR],
                status="error",
                error_kind=ErrorKind.INTERNAL_ERROR,
                retryable=True,
            )

    async def _process(
        self, raw_body: bytes, headers: Mapping[str, str], started: float
    ) -> WebhookOutcome:
        # 1. Signature
        secret = await asyncio.to_thread(self.secret_provider)
        signature = extract_signature(headers, self.settings.signature_header)
        verification = verify_signature(
            raw_body,
            signature,
            secret,
            min_secret_length=self.settings.min_secret_length,
        )
        log_pipeline_stage(
            logger,
            "signature_verification",
            outcome="ok" if verification.valid else "rejected",
            error=verification.reason,
        )
        if not verification.valid:
            return self._respond(
                401,
                started,
                success=False,
                message=ERROR_MESSAGES[ErrorKind.SIGNATURE_INVALID],
                status="rejected",
                error_kind=ErrorKind.SIGNATURE_INVALID,
                retryable=False,
            )

        # 2. Parse
        try:
            event = parse_event(raw_body, event_id=get_header(headers, EVENT_ID_HEADER))
        except WebhookError as e:
            log_pipeline_stage(logger, "parse", outcome="rejected", error=e.message)
            return self._respond(
                get_http_status_for_error(e.code),
                started,
                success=False,
                message=e.message,
                status="rejected",
                error_kind=e.code,
                retryable=False,
                details=e.details,
            )
        log_pipeline_stage(
            logger,
            "parse",
            outcome="ok",
            event_id=event.event_id,
            event_type=event.event_type,
        )

        # 3. Idempotency check and admission
        admission = await self._admit(event, raw_body, signature, started)
        if isinstance(admission, WebhookOutcome):
            return admission

        try:
            return await self._run_admitted(event, admission, started)
        except Exception as e:
            await self._release(event.event_id, e)
            raise

    async def _run_admitted(
        self, event: ParsedEvent, retry_count: int, started: float
    ) -> WebhookOutcome:
        """Run an event this delivery owns from processing state to finalize."""
        # 4. Processing state
        try:
            state = await self._run_blocking(
                self.state_tracker.initialize_state, event, retry_count=retry_count
            )
        except Exception as e:
            logger.exception("Could not initialize processing state for %s", event.event_id)
            await self._run_blocking(
                self.store.mark_failed,
                event.event_id,
                f"State initialization failed: {e}",
                retryable=True,
            )
            return self._respond(
                500,
                started,
                success=False,
                message=ERROR_MESSAGES[ErrorKind.INTERNAL_ERROR],
                status="error",
                event=event,
                error_kind=ErrorKind.INTERNAL_ERROR,
                retryable=True,
            )

        if not await self._run_blocking(self.store.mark_processing, event.event_id):
            log_webhook_event(logger, event.event_type, event.event_id, result="duplicate")
            return self._respond(
                200,
                started,
                success=True,
                message=MSG_IN_FLIGHT,
                status="duplicate",
                event=event,
            )
        state = await self._run_blocking(self.state_tracker.mark_processing, state)
        record: IdempotencyRecord | None = await self._run_blocking(
            self.store.get_record, event.event_id
        )

        # 5. Route
        routing = await self.router.route(event, record)
        return await self._finalize(event, state, routing, started)

    async def _release(self, event_id: str, error: Exception) -> None:
        """Mark an admitted event as a retryable failure after the pipeline broke off.

        A record left pending or processing would answer every redelivery as
        in flight. When this write fails too, the processing lease still
        lets a later redelivery reclaim the event.
        """
        try:
            released = await self._run_blocking(
                self.store.mark_failed,
                event_id,
                f"Processing interrupted: {type(error).__name__}: {error}",
                retryable=True,
            )
        except Exception as release_error:
            logger.error(
                "Could not release %s after %s: %s",
                event_id,
                type(error).__name__,
                release_error,
                extra={"event_id": event_id},
            )
            return
        if released:
            logger.warning(
                "Released %s for redelivery after %s",
                event_id,
                type(error).__name__,
                extra={"event_id": event_id},
            )

    async def _admit(
        self,
        event: ParsedEvent,
        raw_body: bytes,
        signature: str | None,
        started: float,
    ) -> WebhookOutcome | int:
        """Claim the event for this delivery.

        Returns:
            The number of earlier attempts when this delivery owns the event,
            or a duplicate WebhookOutcome when it does not
        """
        check = await self._run_blocking(self.store.check_processed, event.event_id)

        if check.exists and check.record is not None:
            record = check.record
            retryable_failure = (
                record.status == ProcessingStatus.FAILED
                and not record.is_terminal(self.settings.max_processing_attempts)
            )
            lease_cutoff = datetime.now(timezone.utc) - timedelta(
                seconds=self.settings.processing_lease_seconds
            )
            lease_expired = (
                record.status == ProcessingStatus.PROCESSING
                and record.processing_started_at is not None
                and record.processing_started_at < lease_cutoff
                and record.attempts < self.settings.max_processing_attempts
            )

            claimed = False
            if retryable_failure:
                claimed = await self._run_blocking(
                    self.store.claim_for_retry, event.event_id, record.attempts
                )
            elif lease_expired:
                claimed = await self._run_blocking(
                    self.store.claim_stale_processing,
                    event.event_id,
                    record.attempts,
                    lease_cutoff,
                )
            if claimed:
                log_pipeline_stage(
                    logger,
                    "idempotency_check",
                    outcome="retry" if retryable_failure else "lease_expired",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    attempts=record.attempts,
                )
                return record.attempts

            log_pipeline_stage(
                logger,
                "idempotency_check",
                outcome="hit",
                event_id=event.event_id,
                event_type=event.event_type,
                previous_status=record.status.value,
            )
            log_webhook_event(logger, event.event_type, event.event_id, result="duplicate")
            in_flight = record.status in IN_FLIGHT_STATUSES or retryable_failure
            return self._respond(
                200,
                started,
                success=True,
                message=MSG_IN_FLIGHT if in_flight else MSG_DUPLICATE,
                status="duplicate",
                event=event,
                details={"previous_status": record.status.value},
            )

        log_pipeline_stage(
            logger,
            "idempotency_check",
            outcome="miss",
            event_id=event.event_id,
            event_type=event.event_type,
        )

        admitted = await self._run_blocking(
            self.store.record_event,
            event.event_id,
            event.event_type,
            event.account_id,
            event.entity,
            signature,
            payload_hash=compute_payload_hash(raw_body),
        )
        log_pipeline_stage(
            logger,
            "admission",
            outcome="admitted" if admitted else "collision",
            event_id=event.event_id,
            event_type=event.event_type,
        )
        if not admitted:
            log_webhook_event(logger, event.event_type, event.event_id, result="duplicate")
            return self._respond(
                200,
                started,
                success=True,
                message=MSG_DUPLICATE,
                status="duplicate",
                event=event,
            )
        return 0

    async def _finalize(
        self,
        event: ParsedEvent,
        state: ProcessingState,
        routing: RoutingResult,
        started: float,
    ) -> WebhookOutcome:
        """Record the routing outcome and build the response."""
        kind = routing.error_kind
        event_id = event.event_id

        if kind in (ErrorKind.NO_HANDLER_REGISTERED, ErrorKind.HANDLER_DISABLED):
            await self._run_blocking(self.store.mark_skipped, event_id, routing.error)
            await self._run_blocking(
                self.state_tracker.finalize_state, state, ProcessingStatus.SKIPPED, routing.error
            )
            log_webhook_event(
                logger, event.event_type, event_id, result="skipped", reason=routing.error
            )
            return self._respond(
                200,
                started,
                success=True,
                message=MSG_ACKNOWLEDGED,
                status="skipped",
                event=event,
                error_kind=kind,
                retryable=False,
            )

        if kind == ErrorKind.MISSING_REQUIRED_FIELD:
            error = routing.error or ERROR_MESSAGES[kind]
            await self._run_blocking(self.store.mark_failed, event_id, error, retryable=False)
            await self._run_blocking(
                self.state_tracker.finalize_state, state, ProcessingStatus.FAILED, error
            )
            log_webhook_event(logger, event.event_type, event_id, result="failed", error=error)
            return self._respond(
                400,
                started,
                success=False,
                message=error,
                status="failed",
                event=event,
                error_kind=kind,
                retryable=False,
            )

        if kind in (ErrorKind.HANDLER_TIMEOUT, ErrorKind.HANDLER_ERROR):
            error = routing.error or ERROR_MESSAGES[kind]
            await self._run_blocking(self.store.mark_failed, event_id, error, retryable=True)
            await self._run_blocking(
                self.state_tracker.record_handler_execution,
                state,
                HandlerResult(success=False, processed=False, error=error),
                handler_name=routing.handler or "unknown",
                duration_ms=routing.routing_time_ms,
            )
            log_webhook_event(logger, event.event_type, event_id, result="failed", error=error)
            return self._respond(
                500,
                started,
                success=False,
                message=ERROR_MESSAGES[kind],
                status="failed",
                event=event,
                error_kind=kind,
                retryable=True,
            )

        result = routing.result
        if result is None:
            raise RuntimeError(f"Routing for {event_id} returned neither result nor error")

        state = await self._run_blocking(
            self.state_tracker.record_handler_execution,
            state,
            result,
            handler_name=routing.handler or "unknown",
            duration_ms=routing.routing_time_ms,
        )
        details = result.details

        if state.status == ProcessingStatus.PROCESSED:
            await self._run_blocking(
                self.store.mark_processed,
                event_id,
                details.subscription_id if details else None,
                details.payment_id if details else None,
            )
            log_webhook_event(
                logger,
                event.event_type,
                event_id,
                result="processed",
                subscription_id=details.subscription_id if details else None,
                payment_id=details.payment_id if details else None,
            )
            return self._respond(
                200,
                started,
                success=True,
                message=MSG_PROCESSED,
                status="processed",
                event=event,
            )

        if state.status == ProcessingStatus.SKIPPED:
            await self._run_blocking(self.store.mark_skipped, event_id, "Handler declined event")
            log_webhook_event(logger, event.event_type, event_id, result="skipped")
            return self._respond(
                200,
                started,
                success=True,
                message=MSG_DECLINED,
                status="skipped",
                event=event,
            )

        retryable = result.retryable is not False
        error = state.error or ERROR_MESSAGES[ErrorKind.HANDLER_ERROR]
        await self._run_blocking(self.store.mark_failed, event_id, error, retryable=retryable)
        log_webhook_event(logger, event.event_type, event_id, result="failed", error=error)
        return self._respond(
            500 if retryable else 400,
            started,
            success=False,
            message=ERROR_MESSAGES[ErrorKind.HANDLER_ERROR],
            status="failed",
            event=event,
            error_kind=ErrorKind.HANDLER_ERROR,
            retryable=retryable,
        )
