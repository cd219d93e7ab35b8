"""Parse and validate verified webhook bodies into ParsedEvent."""

import json
from typing import Any

from payhook.models.errors import ErrorKind, WebhookError
from payhook.models.webhook_event import EventCategory, ParsedEvent

ALLOWED_CATEGORIES: frozenset[str] = frozenset(c.value for c in EventCategory)


def _require_string(container: dict[str, Any], key: str, field_path: str) -> str:
    value = container.get(key)
    if value is None or value == "":
        raise WebhookError(
            ErrorKind.MISSING_FIELD,
            f"Missing required field: {field_path}",
            details={"field": field_path},
        )
    if not isinstance(value, str):
        raise WebhookError(
            ErrorKind.MALFORMED_PAYLOAD,
            f"Field {field_path} must be a string",
            details={"field": field_path},
        )
    return value


def _require_object(container: dict[str, Any], key: str, field_path: str) -> dict[str, Any]:
    value = container.get(key)
    if value is None:
        raise WebhookError(
            ErrorKind.MISSING_FIELD,
            f"Missing required field: {field_path}",
            details={"field": field_path},
        )
    if not isinstance(value, dict):
        raise WebhookError(
            ErrorKind.MALFORMED_PAYLOAD,
            f"Field {field_path} must be an object",
            details={"field": field_path},
        )
    return value


def validate_event_type(event_type: str) -> tuple[str, str]:
    """Split an event type into category and action.

    Args:
        event_type: Value of the ``event`` field

    Returns:
        Tuple of (category, action)

    Raises:
        WebhookError: INVALID_CATEGORY for a malformed type or a category
            outside the allow-list
    """
    parts = event_type.split(".")
    if len(parts) != 2 or not all(parts):
        raise WebhookError(
            ErrorKind.INVALID_CATEGORY,
            f"Event type must be category.action: {event_type}",
            details={"event_type": event_type},
        )

    category, action = parts
    if category not in ALLOWED_CATEGORIES:
        raise WebhookError(
            ErrorKind.INVALID_CATEGORY,
            f"Unsupported event category: {category}",
            details={"event_type": event_type, "category": category},
        )
    return category, action


def parse_event(raw_body: bytes, *, event_id: str | None = None) -> ParsedEvent:
    """Turn a verified raw body into a ParsedEvent.

    Required fields are checked in the order ``event``, ``account_id``,
    ``payload.entity``, ``payload.entity.id``; the first one missing is
    reported.

    Args:
        raw_body: Request body bytes that already passed signature checks
        event_id: Provider event ID from the X-Razorpay-Event-Id header;
            payload.entity.id is the idempotency key when absent

    Returns:
        The parsed event

    Raises:
        WebhookError: MALFORMED_PAYLOAD, MISSING_FIELD or INVALID_CATEGORY
    """
    try:
        document = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise WebhookError(
            ErrorKind.MALFORMED_PAYLOAD,
            f"Invalid JSON body: {e.msg if isinstance(e, json.JSONDecodeError) else e}",
        ) from e

    if not isinstance(document, dict):
        raise WebhookError(
            ErrorKind.MALFORMED_PAYLOAD, "Webhook body must be a JSON object"
        )

    event_type = _require_string(document, "event", "event")
    account_id = _require_string(document, "account_id", "account_id")
    payload = _require_object(document, "payload", "payload.entity")
    entity = _require_object(payload, "entity", "payload.entity")
    entity_id = _require_string(entity, "id", "payload.entity.id")

    validate_event_type(event_type)

    created_at = document.get("created_at")
    if isinstance(created_at, bool) or not isinstance(created_at, int):
        created_at = None

    return ParsedEvent(
        event_id=event_id or entity_id,
        event_type=event_type,
        account_id=account_id,
        entity=entity,
        created_at=created_at,
    )
