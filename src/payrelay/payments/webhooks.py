"""Stripe webhook intake: verify, decode, reconcile, acknowledge."""

import asyncio
import logging

from aiohttp import web

from payrelay.config.settings import AppConfig
from payrelay.payments.errors import AuthenticationError, MalformedPayloadError
from payrelay.payments.events import verify_and_parse
from payrelay.payments.reconcile import ReconcileResult, Reconciler

logger = logging.getLogger(__name__)


async def handle_webhook(
    payload: bytes,
    sig_header: str | None,
    reconciler: Reconciler,
    config: AppConfig,
) -> web.Response:
    """Handle and verify a Stripe webhook delivery.

    The reconcile step is awaited before answering, so a 200 means the
    projection write finished (or was judged unnecessary).

    Args:
        payload: Raw webhook payload bytes
        sig_header: Stripe-Signature header value
        reconciler: Applies the event to the projection store
        config: Signing secret, tolerance and timeout settings

    Returns:
        aiohttp.web.Response: 200 ``{"received": true}`` when accepted,
        400 ``Webhook Error: ...`` when verification or decoding fails,
        500 when the store failed and ``ack_on_store_failure`` is off
    """
    try:
        event = verify_and_parse(
            payload,
            sig_header,
            config.stripe_webhook_secret.get_secret_value(),
            tolerance=config.webhook_tolerance_seconds,
        )
    except (AuthenticationError, MalformedPayloadError) as e:
        logger.error(f"Webhook Error: {e.message}")
        return web.Response(status=400, text=f"Webhook Error: {e.message}")

    logger.info(f"Received webhook: {event.type} ({event.id})")

    try:
        result = await asyncio.wait_for(
            reconciler.reconcile(event),
            timeout=config.webhook_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(
            f"Reconciling event {event.id} exceeded {config.webhook_timeout_seconds}s"
        )
        result = ReconcileResult(handled=True, error="timed out")

    if result.error and not config.ack_on_store_failure:
        # Stripe redelivers on non-2xx
        return web.json_response({"received": False}, status=500)

    return web.json_response({"received": True})
