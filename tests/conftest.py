"""Shared fixtures: signed webhook payloads, config and projection stores."""

import hashlib
import hmac
import json
import time
from typing import Optional

import pytest

from payrelay.config.settings import AppConfig
from payrelay.payments.store import MemoryProjectionStore

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    if timestamp is None:
        timestamp = int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_body(
    event_type: str,
    obj: dict,
    event_id: str = "evt_1",
    created: int = 1_700_000_000,
) -> bytes:
    """Serialize a minimal Stripe event envelope."""
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created,
            "data": {"object": obj},
        }
    ).encode("utf-8")


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(
        env="dev",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        client_url="http://localhost:3000",
        checkout_success_url="https://example.com/payment",
        checkout_cancel_url="https://example.com/cancel",
        db_dsn=None,
    )


@pytest.fixture
def store() -> MemoryProjectionStore:
    return MemoryProjectionStore()


@pytest.fixture
def sign_payload():
    return sign


@pytest.fixture
def make_event():
    return event_body
