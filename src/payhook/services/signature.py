"""Razorpay webhook signature verification.

Razorpay signs the exact request body with HMAC-SHA256 using the webhook
secret and sends the lowercase hex digest in ``X-Razorpay-Signature``.
"""

import hashlib
import hmac
import re
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict

from payhook.config import WebhookSettings
from payhook.services.ssm_service import SSMServiceError, get_ssm_service
from payhook.utils.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="
_HEX_SIGNATURE = re.compile(r"[0-9a-f]{64}")


class SignatureVerificationResult(BaseModel):
    """Outcome of a signature check.

    ``reason`` is for server-side logs only; callers must not return it to
    the client.
    """

    model_config = ConfigDict(strict=True, frozen=True)

    valid: bool
    reason: str | None = None


def generate_signature(raw_body: bytes, secret: str) -> str:
    """Compute the hex HMAC-SHA256 signature of a body.

    Args:
        raw_body: Exact request body bytes
        secret: Webhook secret

    Returns:
        Lowercase hex digest (64 characters)
    """
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes,
    signature: str | None,
    secret: str | None,
    *,
    min_secret_length: int = 20,
) -> SignatureVerificationResult:
    """Verify a webhook signature in constant time.

    Fails closed: a missing or short secret rejects every request.

    Args:
        raw_body: Exact request body bytes (never a re-serialized form)
        signature: Hex signature received in the header
        secret: Webhook secret
        min_secret_length: Minimum accepted secret length

    Returns:
        SignatureVerificationResult with valid=True only on a match
    """
    if not secret or len(secret) < min_secret_length:
        return SignatureVerificationResult(valid=False, reason="secret_misconfigured")
    if not signature:
        return SignatureVerificationResult(valid=False, reason="signature_missing")
    if not _HEX_SIGNATURE.fullmatch(signature):
        return SignatureVerificationResult(valid=False, reason="signature_malformed")
    if not raw_body:
        return SignatureVerificationResult(valid=False, reason="body_empty")

    expected = generate_signature(raw_body, secret)
    if not hmac.compare_digest(expected, signature):
        return SignatureVerificationResult(valid=False, reason="signature_mismatch")

    return SignatureVerificationResult(valid=True)


def extract_signature(headers: Mapping[str, str], header_name: str) -> str | None:
    """Find the signature header, ignoring header-name case.

    Accepts both ``<hex>`` and ``sha256=<hex>`` forms.

    Args:
        headers: Request headers
        header_name: Signature header name

    Returns:
        The bare signature or None if the header is absent
    """
    wanted = header_name.lower()
    value = next((v for k, v in headers.items() if k.lower() == wanted), None)
    if value is None:
        return None

    value = value.strip()
    if value.lower().startswith(SIGNATURE_PREFIX):
        value = value[len(SIGNATURE_PREFIX):]
    return value or None


def compute_payload_hash(raw_body: bytes) -> str:
    """SHA-256 hash of the raw body for audit records."""
    return hashlib.sha256(raw_body).hexdigest()


def get_webhook_secret(settings: WebhookSettings) -> str | None:
    """Resolve the webhook secret.

    The environment value wins; otherwise the secret is read from SSM.
    A retrieval failure is logged and returns None so verification fails
    closed instead of raising.

    Args:
        settings: Webhook settings

    Returns:
        The secret, or None if it cannot be obtained
    """
    if settings.webhook_secret:
        return settings.webhook_secret

    try:
        return get_ssm_service().get_parameter(settings.secret_parameter_path)
    except SSMServiceError as e:
        logger.error(
            "Webhook secret unavailable; rejecting webhooks until configured: %s", e
        )
        return None
