"""Environment-driven settings for the webhook pipeline."""

import os

from pydantic import BaseModel, ConfigDict, Field

SIGNATURE_HEADER = "x-razorpay-signature"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class WebhookSettings(BaseModel):
    """Runtime configuration for signature checks, routing and storage."""

    model_config = ConfigDict(frozen=True)

    environment: str = "dev"
    webhook_secret: str | None = Field(
        default=None,
        description="Shared secret; read from SSM when not set directly",
        repr=False,
    )
    webhook_secret_parameter: str | None = Field(
        default=None,
        description="SSM parameter path holding the webhook secret",
    )
    min_secret_length: int = Field(default=20, ge=1)
    signature_header: str = SIGNATURE_HEADER
    handler_timeout_seconds: float = Field(default=30.0, gt=0)
    processing_lease_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Age after which a processing record may be reclaimed by a redelivery",
    )
    max_processing_attempts: int = Field(default=5, ge=1)
    max_retries: int = Field(default=3, ge=0)
    retention_days: int = Field(default=30, ge=1)
    enable_state_persistence: bool = True
    events_table: str = "webhook-events"
    states_table: str = "webhook-processing-states"
    subscriptions_table: str = "razorpay-subscriptions"
    payments_table: str = "razorpay-payments"

    @property
    def secret_parameter_path(self) -> str:
        return (
            self.webhook_secret_parameter
            or f"/payhook/{self.environment}/razorpay/webhook_secret"
        )

    @classmethod
    def from_env(cls) -> "WebhookSettings":
        """Build settings from environment variables.

        Returns:
            WebhookSettings with defaults for every unset variable.
        """
        return cls(
            environment=os.getenv("ENVIRONMENT", "dev"),
            webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET") or None,
            webhook_secret_parameter=os.getenv("RAZORPAY_WEBHOOK_SECRET_PARAMETER") or None,
            min_secret_length=int(os.getenv("RAZORPAY_WEBHOOK_SECRET_MIN_LENGTH", "20")),
            handler_timeout_seconds=float(
                os.getenv("WEBHOOK_HANDLER_TIMEOUT_SECONDS", "30")
            ),
            processing_lease_seconds=float(
                os.getenv("WEBHOOK_PROCESSING_LEASE_SECONDS", "120")
            ),
            max_processing_attempts=int(os.getenv("WEBHOOK_MAX_PROCESSING_ATTEMPTS", "5")),
            max_retries=int(os.getenv("WEBHOOK_MAX_RETRIES", "3")),
            retention_days=int(os.getenv("WEBHOOK_RETENTION_DAYS", "30")),
            enable_state_persistence=_env_bool("WEBHOOK_STATE_PERSISTENCE", True),
        )
