"""Stripe checkout, subscription confirmation and webhook reconciliation.

Handles checkout session creation, subscription confirmation, webhook
verification, and idempotent subscription/invoice status projections.
"""

from payrelay.payments.checkout import create_payment_session
from payrelay.payments.events import Event, EventKind, verify_and_parse
from payrelay.payments.reconcile import ReconcileResult, Reconciler
from payrelay.payments.subscriptions import confirm_subscription
from payrelay.payments.webhooks import handle_webhook

__all__ = [
    "Event",
    "EventKind",
    "ReconcileResult",
    "Reconciler",
    "confirm_subscription",
    "create_payment_session",
    "handle_webhook",
    "verify_and_parse",
]
