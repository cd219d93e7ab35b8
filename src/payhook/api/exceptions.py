"""FastAPI exception handlers producing the webhook response envelope.

The processor never raises for expected outcomes; these handlers cover
errors raised outside it (request handling, dependency wiring) so that every
response still carries ``success``, ``message``, ``timestamp`` and
``requestId``.

Usage:
    from payhook.api.exceptions import register_exception_handlers
    register_exception_handlers(app)
"""

from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.status import HTTP_500_INTERNAL_SERVER_ERROR

from payhook.models.errors import (
    ERROR_MESSAGES,
    ErrorKind,
    WebhookError,
    get_http_status_for_error,
)
from payhook.models.response import WebhookResponse
from payhook.utils.logging import get_correlation_id, generate_correlation_id, get_logger

logger = get_logger(__name__)


def _envelope(
    message: str,
    error_kind: ErrorKind,
    *,
    retryable: bool,
    details: dict | None = None,
) -> dict:
    return WebhookResponse(
        success=False,
        message=message,
        timestamp=datetime.now(timezone.utc),
        request_id=get_correlation_id() or generate_correlation_id(),
        status="error",
        error_code=error_kind,
        retryable=retryable,
        details=details,
    ).to_body()


async def webhook_error_handler(request: Request, exc: WebhookError) -> JSONResponse:
    """Convert a WebhookError into the response envelope.

    Args:
        request: The incoming request (unused but required by FastAPI)
        exc: The WebhookError exception

    Returns:
        JSONResponse with the status mapped from the error kind.
    """
    return JSONResponse(
        status_code=get_http_status_for_error(exc.code),
        content=_envelope(
            exc.message, exc.code, retryable=exc.retryable, details=exc.details
        ),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions with a generic 500 envelope.

    The provider treats 500 as retryable and redelivers the event.
    """
    logger.exception("Unhandled exception: %s", exc)

    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content=_envelope(
            ERROR_MESSAGES[ErrorKind.INTERNAL_ERROR],
            ErrorKind.INTERNAL_ERROR,
            retryable=True,
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app.

    Args:
        app: The FastAPI application instance.
    """
    app.add_exception_handler(WebhookError, webhook_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
