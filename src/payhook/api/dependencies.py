"""FastAPI dependency providers for the webhook pipeline.

Services are built lazily once per process with @lru_cache. The router is
populated and frozen on first use, then shared by every request.

Service Dependency Graph:
    WebhookSettings
    DynamoDBService (singleton via get_dynamodb_service)
        ├── DynamoDBIdempotencyStore
        ├── StateTracker (DynamoDBStateStore when persistence is enabled)
        └── EventRouter (default subscription/payment routes)
                └── WebhookProcessor

Testing:
    Use reset_services() to clear cached instances between tests, or
    override get_webhook_processor via app.dependency_overrides.
"""

from functools import lru_cache

from payhook.config import WebhookSettings
from payhook.services.dynamodb import get_dynamodb_service
from payhook.services.event_router import EventRouter, RouterConfig
from payhook.services.handlers import register_default_routes
from payhook.services.idempotency import DynamoDBIdempotencyStore
from payhook.services.state_tracker import DynamoDBStateStore, StateTracker
from payhook.services.webhook_processor import WebhookProcessor


@lru_cache
def get_settings() -> WebhookSettings:
    return WebhookSettings.from_env()


@lru_cache
def get_idempotency_store() -> DynamoDBIdempotencyStore:
    """Get cached DynamoDBIdempotencyStore instance."""
    settings = get_settings()
    return DynamoDBIdempotencyStore(
        get_dynamodb_service(settings.environment),
        settings.events_table,
        retention_days=settings.retention_days,
        max_attempts=settings.max_processing_attempts,
    )


@lru_cache
def get_state_tracker() -> StateTracker:
    """Get cached StateTracker, persisting states only when enabled."""
    settings = get_settings()
    store = None
    if settings.enable_state_persistence:
        store = DynamoDBStateStore(
            get_dynamodb_service(settings.environment),
            settings.states_table,
            retention_days=settings.retention_days,
        )
    return StateTracker(store, max_retries=settings.max_retries)


@lru_cache
def get_event_router() -> EventRouter:
    """Get the frozen EventRouter with the default routes registered."""
    settings = get_settings()
    router = EventRouter(RouterConfig(timeout_seconds=settings.handler_timeout_seconds))
    register_default_routes(router, get_dynamodb_service(settings.environment), settings)
    return router.freeze()


@lru_cache
def get_webhook_processor() -> WebhookProcessor:
    """Get cached WebhookProcessor wired with the shared services."""
    return WebhookProcessor(
        get_event_router(),
        get_idempotency_store(),
        get_settings(),
        state_tracker=get_state_tracker(),
    )


def reset_services() -> None:
    """Clear all cached service instances.

    Also resets the underlying DynamoDB singleton.
    """
    from payhook.services.dynamodb import reset_dynamodb_service

    get_settings.cache_clear()
    get_idempotency_store.cache_clear()
    get_state_tracker.cache_clear()
    get_event_router.cache_clear()
    get_webhook_processor.cache_clear()

    reset_dynamodb_service()
