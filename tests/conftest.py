"""Pytest configuration and fixtures for the payhook test suite.

This module provides reusable fixtures for testing:
- DynamoDB and SSM mocking with moto
- Signed webhook bodies
- Resets of the process-wide service singletons
"""

import hashlib
import hmac
import json
import os
from collections.abc import Callable
from typing import Any, Generator

import boto3
import pytest
from moto import mock_aws

# === Environment Setup ===

# Set environment variables for testing before imports
os.environ.setdefault("AWS_DEFAULT_REGION", "ap-south-1")
os.environ.setdefault("DYNAMODB_TABLE_PREFIX", "test-payhook")

# Only set fake credentials for moto if no real credentials are present
if not os.environ.get("AWS_PROFILE") and not os.environ.get("AWS_ACCESS_KEY_ID"):
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

TEST_WEBHOOK_SECRET = "whsec_payhook_test_secret_0123456789"
TEST_ACCOUNT_ID = "acc_BFQ7uQEaa7j2z7"


# === Singleton Resets ===


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset cached services before and after each test.

    This ensures tests using mock_aws get fresh boto3 clients inside the
    mock context rather than reusing ones created in a previous test.
    """
    from payhook.api.dependencies import reset_services
    from payhook.services.ssm_service import SSMService, get_ssm_service
    from payhook.utils.logging import clear_correlation_id

    def _reset() -> None:
        reset_services()
        SSMService.reset_instance()
        get_ssm_service.cache_clear()
        clear_correlation_id()

    _reset()
    yield
    _reset()


# === AWS Fixtures ===


@pytest.fixture
def aws_credentials() -> None:
    """Mocked AWS credentials for moto."""
    if not os.environ.get("AWS_PROFILE"):
        os.environ["AWS_ACCESS_KEY_ID"] = "testing"
        os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
        os.environ["AWS_SECURITY_TOKEN"] = "testing"
        os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "ap-south-1"


@pytest.fixture
def mocked_aws(aws_credentials: None) -> Generator[None, None, None]:
    """Activate moto without creating any resources."""
    with mock_aws():
        yield


@pytest.fixture
def dynamodb_client(mocked_aws: None) -> Any:
    """Create a mocked DynamoDB client."""
    return boto3.client("dynamodb", region_name="ap-south-1")


@pytest.fixture
def create_tables(dynamodb_client: Any) -> Any:
    """Create all DynamoDB tables used by the pipeline."""
    prefix = os.environ["DYNAMODB_TABLE_PREFIX"]
    tables = [
        {
            "TableName": f"{prefix}-webhook-events",
            "KeySchema": [{"AttributeName": "event_id", "KeyType": "HASH"}],
            "AttributeDefinitions": [
                {"AttributeName": "event_id", "AttributeType": "S"},
                {"AttributeName": "processing_status", "AttributeType": "S"},
                {"AttributeName": "created_at", "AttributeType": "S"},
            ],
            "GlobalSecondaryIndexes": [
                {
                    "IndexName": "status-index",
                    "KeySchema": [
                        {"AttributeName": "processing_status", "KeyType": "HASH"},
                        {"AttributeName": "created_at", "KeyType": "RANGE"},
                    ],
                    "Projection": {"ProjectionType": "ALL"},
                },
            ],
            "BillingMode": "PAY_PER_REQUEST",
        },
        {
            "TableName": f"{prefix}-webhook-processing-states",
            "KeySchema": [{"AttributeName": "event_id", "KeyType": "HASH"}],
            "AttributeDefinitions": [
                {"AttributeName": "event_id", "AttributeType": "S"},
            ],
            "BillingMode": "PAY_PER_REQUEST",
        },
        {
            "TableName": f"{prefix}-razorpay-subscriptions",
            "KeySchema": [{"AttributeName": "subscription_id", "KeyType": "HASH"}],
            "AttributeDefinitions": [
                {"AttributeName": "subscription_id", "AttributeType": "S"},
            ],
            "BillingMode": "PAY_PER_REQUEST",
        },
        {
            "TableName": f"{prefix}-razorpay-payments",
            "KeySchema": [{"AttributeName": "payment_id", "KeyType": "HASH"}],
            "AttributeDefinitions": [
                {"AttributeName": "payment_id", "AttributeType": "S"},
            ],
            "BillingMode": "PAY_PER_REQUEST",
        },
    ]

    for table_config in tables:
        dynamodb_client.create_table(**table_config)

    return dynamodb_client


@pytest.fixture
def dynamodb_service(create_tables: Any) -> Any:
    """DynamoDBService bound to the mocked tables."""
    from payhook.services.dynamodb import DynamoDBService

    return DynamoDBService("test")


# === Webhook Fixtures ===


@pytest.fixture
def webhook_secret() -> str:
    return TEST_WEBHOOK_SECRET


@pytest.fixture
def sign() -> Callable[[bytes], str]:
    """Return a function computing the Razorpay signature of a body."""

    def _sign(body: bytes, secret: str = TEST_WEBHOOK_SECRET) -> str:
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    return _sign


@pytest.fixture
def make_body() -> Callable[..., bytes]:
    """Return a factory for serialized webhook bodies."""

    def _make_body(
        event_type: str = "payment.captured",
        entity: dict[str, Any] | None = None,
        account_id: str = TEST_ACCOUNT_ID,
    ) -> bytes:
        if entity is None:
            entity = {
                "id": "pay_29QQoUBi66xm2f",
                "entity": "payment",
                "status": "captured",
                "amount": 50000,
                "currency": "INR",
                "method": "upi",
                "order_id": "order_DBJOWzybf0sJbb",
            }
        return json.dumps(
            {
                "entity": "event",
                "account_id": account_id,
                "event": event_type,
                "contains": [event_type.split(".", 1)[0]],
                "payload": {event_type.split(".", 1)[0]: {"entity": entity}, "entity": entity},
                "created_at": 1735689600,
            }
        ).encode("utf-8")

    return _make_body


@pytest.fixture
def signed_headers(sign: Callable[..., str]) -> Callable[..., dict[str, str]]:
    """Return a factory for delivery headers carrying a valid signature."""

    def _headers(body: bytes, event_id: str | None = None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Razorpay-Signature": sign(body),
        }
        if event_id:
            headers["X-Razorpay-Event-Id"] = event_id
        return headers

    return _headers
