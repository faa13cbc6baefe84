"""Webhook signature verification and typed event decoding.

Stripe signs the exact request bytes, so verification must run before any
JSON parsing. Once verified, the body is decoded into an :class:`Event`
whose payload type is fixed by its :class:`EventKind`.
"""

import hashlib
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

import stripe

from payrelay.db.models import InvoiceStatus, SubscriptionStatus
from payrelay.payments.errors import AuthenticationError, MalformedPayloadError

DEFAULT_TOLERANCE_SECONDS = 300


class EventKind(str, Enum):
    """Closed set of event kinds the reconciler understands."""

    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    OTHER = "other"

    @classmethod
    def from_type(cls, type_tag: str) -> "EventKind":
        """Map a raw Stripe type tag onto a kind, defaulting to OTHER."""
        try:
            return cls(type_tag)
        except ValueError:
            return cls.OTHER

    @property
    def is_subscription(self) -> bool:
        return self in SUBSCRIPTION_KINDS

    @property
    def is_invoice(self) -> bool:
        return self in INVOICE_KINDS


SUBSCRIPTION_KINDS = frozenset(
    {
        EventKind.SUBSCRIPTION_CREATED,
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_DELETED,
    }
)
INVOICE_KINDS = frozenset(
    {
        EventKind.INVOICE_PAYMENT_SUCCEEDED,
        EventKind.INVOICE_PAYMENT_FAILED,
    }
)


@dataclass(frozen=True)
class SubscriptionPayload:
    """Fields of a Stripe subscription object the reconciler needs."""

    id: str
    status: SubscriptionStatus
    customer: Optional[str] = None
    current_period_end: Optional[datetime] = None  # UTC


@dataclass(frozen=True)
class InvoicePayload:
    """Fields of a Stripe invoice object the reconciler needs."""

    id: str
    status: InvoiceStatus
    customer: Optional[str] = None
    subscription: Optional[str] = None


@dataclass(frozen=True)
class Event:
    """A verified webhook delivery."""

    id: str
    type: str
    kind: EventKind
    created: int  # epoch seconds
    payload: Union[SubscriptionPayload, InvoicePayload, None] = None


def verify_and_parse(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> Event:
    """Verify a Stripe webhook signature and decode the body.

    Args:
        raw_body: Request body exactly as received
        signature_header: Value of the Stripe-Signature header
        secret: Endpoint signing secret (whsec_...)
        tolerance: Maximum age of the signed timestamp in seconds

    Returns:
        Decoded Event

    Raises:
        AuthenticationError: Missing header, bad signature or stale timestamp
        MalformedPayloadError: Verified body is not a recognisable event
    """
    if not signature_header:
        raise AuthenticationError("Missing Stripe-Signature header")
    if not secret:
        raise AuthenticationError("Webhook signing secret not configured")

    try:
        body_text = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise AuthenticationError("Unable to decode payload for signature check") from e

    try:
        stripe.WebhookSignature.verify_header(body_text, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise AuthenticationError(str(e.user_message or e)) from e

    # The library only rejects timestamps that are too old
    signed_at = _signature_timestamp(signature_header)
    if signed_at is not None and signed_at > time.time() + tolerance:
        raise AuthenticationError("Timestamp outside the tolerance zone (in the future)")

    try:
        data = json.loads(body_text)
    except ValueError as e:
        raise MalformedPayloadError(f"Invalid payload: {e}") from e

    # Bodies without an id are keyed by their digest so redeliveries still match
    fallback_id = "sha256:" + hashlib.sha256(raw_body).hexdigest()
    return parse_event(data, fallback_id=fallback_id)


def parse_event(data: Any, fallback_id: Optional[str] = None) -> Event:
    """Decode an already-verified event envelope.

    ``fallback_id`` stands in for a missing event id.

    Raises:
        MalformedPayloadError: If the envelope or a known payload is malformed
    """
    if not isinstance(data, dict):
        raise MalformedPayloadError("Event body must be a JSON object")

    event_id = data.get("id") or fallback_id
    type_tag = data.get("type")
    envelope = data.get("data")
    obj = envelope.get("object") if isinstance(envelope, dict) else None
    if not isinstance(event_id, str) or not event_id:
        raise MalformedPayloadError("Event is missing an id")
    if not isinstance(type_tag, str) or not type_tag:
        raise MalformedPayloadError(f"Event {event_id} is missing a type")
    if not isinstance(obj, dict):
        raise MalformedPayloadError(f"Event {event_id} is missing data.object")

    created = data.get("created", 0)
    if not isinstance(created, int) or isinstance(created, bool):
        raise MalformedPayloadError(f"Event {event_id} has a non-integer created timestamp")

    kind = EventKind.from_type(type_tag)
    if kind.is_subscription:
        payload = _parse_subscription(event_id, obj)
    elif kind.is_invoice:
        payload = _parse_invoice(event_id, obj)
    else:
        payload = None

    return Event(id=event_id, type=type_tag, kind=kind, created=created, payload=payload)


def _require_id_and_status(event_id: str, obj: dict) -> tuple[str, str]:
    object_id = obj.get("id")
    status = obj.get("status")
    if not isinstance(object_id, str) or not object_id:
        raise MalformedPayloadError(f"Event {event_id} object is missing an id")
    if not isinstance(status, str) or not status:
        raise MalformedPayloadError(f"Event {event_id} object {object_id} is missing a status")
    return object_id, status


def _parse_subscription(event_id: str, obj: dict) -> SubscriptionPayload:
    object_id, status = _require_id_and_status(event_id, obj)
    try:
        parsed_status = SubscriptionStatus(status)
    except ValueError:
        raise MalformedPayloadError(f"Unknown subscription status: {status}")

    # Newer API versions moved the billing period onto subscription items
    period_end = obj.get("current_period_end")
    if period_end is None:
        items = obj.get("items")
        items = (items.get("data") if isinstance(items, dict) else None) or []
        if items and isinstance(items[0], dict):
            period_end = items[0].get("current_period_end")

    return SubscriptionPayload(
        id=object_id,
        status=parsed_status,
        customer=_customer_id(obj.get("customer")),
        current_period_end=timestamp_to_datetime(period_end),
    )


def _parse_invoice(event_id: str, obj: dict) -> InvoicePayload:
    object_id, status = _require_id_and_status(event_id, obj)
    try:
        parsed_status = InvoiceStatus(status)
    except ValueError:
        raise MalformedPayloadError(f"Unknown invoice status: {status}")

    subscription = obj.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")

    return InvoicePayload(
        id=object_id,
        status=parsed_status,
        customer=_customer_id(obj.get("customer")),
        subscription=subscription if isinstance(subscription, str) else None,
    )


def _customer_id(value: Any) -> Optional[str]:
    # Expanded customers arrive as objects
    if isinstance(value, dict):
        value = value.get("id")
    return value if isinstance(value, str) else None


def timestamp_to_datetime(value: Any) -> Optional[datetime]:
    """Convert a Stripe epoch-seconds field to an aware UTC datetime."""
    if value is None:
        return None
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise MalformedPayloadError(f"Invalid timestamp: {value!r}")
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _signature_timestamp(header: str) -> Optional[int]:
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None
