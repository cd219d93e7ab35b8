"""Standard error codes for the webhook processing pipeline.

Every stage of the pipeline reports failures with one of these codes. The
tables below decide, per code, the HTTP status returned to the provider and
whether the provider should redeliver the event.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class ErrorKind(str, Enum):
    """Error codes raised or returned by the webhook pipeline."""

    # Request authentication (ERR_WEBHOOK_001)
    SIGNATURE_INVALID = "ERR_WEBHOOK_001"

    # Payload validation (ERR_WEBHOOK_002-ERR_WEBHOOK_004)
    MALFORMED_PAYLOAD = "ERR_WEBHOOK_002"
    MISSING_FIELD = "ERR_WEBHOOK_003"
    INVALID_CATEGORY = "ERR_WEBHOOK_004"

    # Idempotency (ERR_WEBHOOK_005)
    DUPLICATE_EVENT = "ERR_WEBHOOK_005"

    # Routing (ERR_WEBHOOK_006-ERR_WEBHOOK_009)
    NO_HANDLER_REGISTERED = "ERR_WEBHOOK_006"
    HANDLER_DISABLED = "ERR_WEBHOOK_007"
    MISSING_REQUIRED_FIELD = "ERR_WEBHOOK_008"
    HANDLER_TIMEOUT = "ERR_WEBHOOK_009"

    # Transient failures (ERR_WEBHOOK_010-ERR_WEBHOOK_012)
    STORE_UNAVAILABLE = "ERR_WEBHOOK_010"
    HANDLER_ERROR = "ERR_WEBHOOK_011"
    INTERNAL_ERROR = "ERR_WEBHOOK_012"


# Human-readable error messages
ERROR_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.SIGNATURE_INVALID: "Invalid webhook signature",
    ErrorKind.MALFORMED_PAYLOAD: "Webhook payload is not a valid JSON object",
    ErrorKind.MISSING_FIELD: "Webhook payload is missing a required field",
    ErrorKind.INVALID_CATEGORY: "Webhook event type is not supported",
    ErrorKind.DUPLICATE_EVENT: "Duplicate event acknowledged",
    ErrorKind.NO_HANDLER_REGISTERED: "No handler registered for event type",
    ErrorKind.HANDLER_DISABLED: "Handler for event type is disabled",
    ErrorKind.MISSING_REQUIRED_FIELD: "Event entity is missing a required field",
    ErrorKind.HANDLER_TIMEOUT: "Event handler timed out",
    ErrorKind.STORE_UNAVAILABLE: "Event store is temporarily unavailable",
    ErrorKind.HANDLER_ERROR: "Event handler failed",
    ErrorKind.INTERNAL_ERROR: "An unexpected error occurred",
}

# Map ErrorKind to the HTTP status sent back to the provider
ERROR_KIND_TO_HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.SIGNATURE_INVALID: 401,
    ErrorKind.MALFORMED_PAYLOAD: 400,
    ErrorKind.MISSING_FIELD: 400,
    ErrorKind.INVALID_CATEGORY: 400,
    ErrorKind.MISSING_REQUIRED_FIELD: 400,
    # Acknowledged so the provider stops resending
    ErrorKind.DUPLICATE_EVENT: 200,
    ErrorKind.NO_HANDLER_REGISTERED: 200,
    ErrorKind.HANDLER_DISABLED: 200,
    # Retryable: the provider redelivers on 5xx
    ErrorKind.HANDLER_TIMEOUT: 500,
    ErrorKind.STORE_UNAVAILABLE: 500,
    ErrorKind.HANDLER_ERROR: 500,
    ErrorKind.INTERNAL_ERROR: 500,
}

# Failures that may succeed when the provider redelivers the event
RETRYABLE_ERRORS: set[ErrorKind] = {
    ErrorKind.HANDLER_TIMEOUT,
    ErrorKind.STORE_UNAVAILABLE,
    ErrorKind.HANDLER_ERROR,
    ErrorKind.INTERNAL_ERROR,
}

# Outcomes answered with 200 although nothing was applied
ACKNOWLEDGED_ERRORS: set[ErrorKind] = {
    ErrorKind.DUPLICATE_EVENT,
    ErrorKind.NO_HANDLER_REGISTERED,
    ErrorKind.HANDLER_DISABLED,
}


def is_retryable(kind: Optional[ErrorKind]) -> bool:
    """Check if an error kind is transient and worth a redelivery.

    Args:
        kind: The error kind, or None for no error.

    Returns:
        True if the provider should resend the event.
    """
    return kind in RETRYABLE_ERRORS if kind else False


def get_http_status_for_error(kind: ErrorKind) -> int:
    """Get HTTP status code for an ErrorKind.

    Args:
        kind: The ErrorKind to map

    Returns:
        HTTP status code, defaults to 500 if not explicitly mapped.
    """
    return ERROR_KIND_TO_HTTP_STATUS.get(kind, 500)


class ErrorDetail(BaseModel):
    """Serializable description of a pipeline error."""

    model_config = ConfigDict(strict=True)

    error_code: ErrorKind
    message: str
    retryable: bool
    details: Optional[dict[str, Any]] = None

    @classmethod
    def from_kind(
        cls,
        kind: ErrorKind,
        details: Optional[dict[str, Any]] = None,
    ) -> "ErrorDetail":
        """Create an ErrorDetail from an error kind.

        Args:
            kind: The error kind
            details: Optional additional context about the error

        Returns:
            An ErrorDetail with the standard message for the kind.
        """
        return cls(
            error_code=kind,
            message=ERROR_MESSAGES[kind],
            retryable=is_retryable(kind),
            details=details,
        )


class WebhookError(Exception):
    """Exception raised by pipeline stages that reject an event.

    Carries an ErrorKind so callers can map it to a response without
    inspecting the message.
    """

    def __init__(
        self,
        code: ErrorKind,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message or ERROR_MESSAGES[code]
        self.details = details
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.code)

    def to_error_detail(self) -> ErrorDetail:
        """Convert this exception to an ErrorDetail."""
        return ErrorDetail(
            error_code=self.code,
            message=self.message,
            retryable=self.retryable,
            details=self.details,
        )


class IdempotencyStoreError(Exception):
    """Raised when the idempotency store cannot be read or written.

    Always maps to STORE_UNAVAILABLE, never to a duplicate or a success.
    """

    code = ErrorKind.STORE_UNAVAILABLE


class StateFinalizedError(Exception):
    """Raised on an attempt to change a processing state after completion."""


class RouteRegistrationError(Exception):
    """Raised when a route cannot be added to the router registry."""
