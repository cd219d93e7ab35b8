"""Response envelope returned to the webhook provider."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import ErrorKind


class WebhookResponse(BaseModel):
    """JSON envelope for every webhook response.

    Serialized with camelCase keys (``requestId``, ``eventId``...). Never
    carries the signature, the secret or the raw payload.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    message: str
    timestamp: datetime
    request_id: str = Field(..., description="Correlation ID for log lookup")
    event_id: str | None = None
    event_type: str | None = None
    status: str | None = Field(
        default=None,
        description="Processing result: processed, duplicate, skipped, failed, rejected",
        examples=["processed", "duplicate"],
    )
    error_code: ErrorKind | None = None
    retryable: bool | None = None
    processing_time_ms: float | None = None
    details: dict[str, Any] | None = None

    def to_body(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WebhookOutcome(BaseModel):
    """HTTP status code plus envelope produced by the processor."""

    status_code: int
    response: WebhookResponse
