"""Stripe Checkout session creation for subscription signup."""

import logging
from typing import Optional

from payrelay.config.settings import AppConfig
from payrelay.payments.client import ProcessorClient
from payrelay.payments.errors import ValidationError

logger = logging.getLogger(__name__)


def create_payment_session(
    client: ProcessorClient,
    config: AppConfig,
    price_id: Optional[str],
    customer_id: Optional[str] = None,
) -> str:
    """Create a hosted Checkout Session for a subscription price.

    Args:
        client: Stripe client
        config: Supplies the success and cancel redirect URLs
        price_id: Stripe price to subscribe to
        customer_id: Optional existing Stripe customer to attach

    Returns:
        Stripe Checkout Session URL

    Raises:
        ValidationError: If price_id is missing (no Stripe call is made)
        UpstreamError: On Stripe API errors
    """
    if not price_id:
        raise ValidationError("Missing priceId")

    return client.create_checkout_session(
        price_id=price_id,
        success_url=config.checkout_success_url,
        cancel_url=config.checkout_cancel_url,
        customer_id=customer_id or None,
    )
