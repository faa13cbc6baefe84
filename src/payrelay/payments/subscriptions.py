"""Subscription confirmation after a client-side payment."""

import logging

from payrelay.payments.client import ProcessorClient
from payrelay.payments.errors import ValidationError
from payrelay.payments.schemas import ConfirmSubscriptionRequest, ConfirmSubscriptionResponse

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "succeeded"


def confirm_subscription(
    client: ProcessorClient,
    request: ConfirmSubscriptionRequest,
) -> ConfirmSubscriptionResponse:
    """Create a subscription once its first payment has gone through.

    Checks the PaymentIntent succeeded, makes the payment method the
    customer's default, then creates the subscription.

    Raises:
        ValidationError: Missing fields, or the PaymentIntent has not succeeded
        UpstreamError: On Stripe API errors
    """
    if not request.is_complete():
        raise ValidationError("Missing required parameters")

    intent = client.retrieve_payment_intent(request.payment_intent_id)
    if intent.status != PAYMENT_SUCCEEDED:
        logger.warning(
            f"PaymentIntent {intent.id} not succeeded (status={intent.status}) - "
            f"no subscription created for {request.customer_id}"
        )
        raise ValidationError(f"Payment not successful. Current status: {intent.status}")

    client.set_default_payment_method(request.customer_id, request.payment_method_id)

    subscription = client.create_subscription(
        customer_id=request.customer_id,
        price_id=request.price_id,
        payment_method_id=request.payment_method_id,
    )

    return ConfirmSubscriptionResponse(
        subscription_id=subscription.id,
        status=subscription.status,
        current_period_end=subscription.current_period_end,
        invoice_url=subscription.invoice_url,
    )
