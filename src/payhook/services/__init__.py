"""Pipeline services for Razorpay webhook processing."""

from .dynamodb import DynamoDBService, get_dynamodb_service, reset_dynamodb_service
from .event_parser import parse_event
from .event_router import EventRouter, RouterConfig
from .idempotency import (
    DynamoDBIdempotencyStore,
    IdempotencyStore,
    InMemoryIdempotencyStore,
)
from .signature import generate_signature, verify_signature
from .ssm_service import SSMService, SSMServiceError, get_ssm_service
from .state_tracker import DynamoDBStateStore, InMemoryStateStore, StateTracker
from .webhook_processor import WebhookProcessor

__all__ = [
    "DynamoDBService",
    "get_dynamodb_service",
    "reset_dynamodb_service",
    "parse_event",
    "EventRouter",
    "RouterConfig",
    "DynamoDBIdempotencyStore",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "generate_signature",
    "verify_signature",
    "SSMService",
    "SSMServiceError",
    "get_ssm_service",
    "DynamoDBStateStore",
    "InMemoryStateStore",
    "StateTracker",
    "WebhookProcessor",
]
