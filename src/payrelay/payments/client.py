"""Stripe API access through an explicitly constructed client.

The secret key is passed on every call instead of being assigned to
``stripe.api_key``, so several clients can coexist and nothing depends on
import-time global state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from payrelay.payments.errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentIntentInfo:
    """Subset of a Stripe PaymentIntent."""

    id: str
    status: str


@dataclass(frozen=True)
class CreatedSubscription:
    """Subset of a newly created Stripe Subscription."""

    id: str
    status: str
    current_period_end: Optional[datetime]
    invoice_url: Optional[str]


def _upstream(e: stripe.StripeError) -> UpstreamError:
    return UpstreamError(e.user_message or str(e))


class ProcessorClient:
    """Thin wrapper over the Stripe operations this service uses."""

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("stripe_secret_key not configured")
        self._api_key = api_key

    @property
    def api_version(self) -> Optional[str]:
        return stripe.api_version

    def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
    ) -> str:
        """Create a hosted subscription Checkout Session.

        Returns:
            Checkout Session URL

        Raises:
            UpstreamError: On Stripe API errors
        """
        params: dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_id:
            params["customer"] = customer_id

        try:
            session = stripe.checkout.Session.create(api_key=self._api_key, **params)
        except stripe.StripeError as e:
            raise _upstream(e) from e

        logger.info(f"Created checkout session {session.id} for price {price_id}")
        return session.url

    def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntentInfo:
        """Fetch a PaymentIntent's id and status."""
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self._api_key)
        except stripe.StripeError as e:
            raise _upstream(e) from e
        return PaymentIntentInfo(id=intent.id, status=intent.status)

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        """Make a payment method the customer's default for invoices."""
        try:
            stripe.Customer.modify(
                customer_id,
                api_key=self._api_key,
                invoice_settings={"default_payment_method": payment_method_id},
            )
        except stripe.StripeError as e:
            raise _upstream(e) from e

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method_id: str,
    ) -> CreatedSubscription:
        """Create a subscription with its latest invoice expanded."""
        try:
            subscription = stripe.Subscription.create(
                api_key=self._api_key,
                customer=customer_id,
                items=[{"price": price_id}],
                default_payment_method=payment_method_id,
                expand=["latest_invoice"],
            )
        except stripe.StripeError as e:
            raise _upstream(e) from e

        latest_invoice = getattr(subscription, "latest_invoice", None)
        invoice_url = getattr(latest_invoice, "hosted_invoice_url", None) if latest_invoice else None

        logger.info(
            f"Created subscription {subscription.id} for customer {customer_id}: "
            f"status={subscription.status}"
        )
        return CreatedSubscription(
            id=subscription.id,
            status=subscription.status,
            current_period_end=_period_end(subscription),
            invoice_url=invoice_url or None,
        )


def _period_end(subscription: Any) -> Optional[datetime]:
    value = getattr(subscription, "current_period_end", None)
    if value is None:
        # Newer API versions report the period per subscription item
        try:
            value = subscription["items"]["data"][0]["current_period_end"]
        except (KeyError, IndexError, TypeError):
            return None
    return datetime.fromtimestamp(value, tz=timezone.utc)
