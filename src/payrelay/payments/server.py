"""aiohttp application exposing the payment routes."""

import asyncio
import json
import logging
from typing import Optional

import pydantic
from aiohttp import web

from payrelay.config.settings import AppConfig
from payrelay.payments.checkout import create_payment_session
from payrelay.payments.client import ProcessorClient
from payrelay.payments.errors import PaymentsError
from payrelay.payments.reconcile import Reconciler
from payrelay.payments.schemas import (
    ConfirmSubscriptionRequest,
    CreatePaymentSessionRequest,
    CreatePaymentSessionResponse,
)
from payrelay.payments.store import ProjectionStore
from payrelay.payments.subscriptions import confirm_subscription
from payrelay.payments.webhooks import handle_webhook

logger = logging.getLogger(__name__)

CORS_METHODS = "GET, POST, PUT, DELETE"


class InvalidBody(Exception):
    """Request body is not a JSON object."""


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidBody(str(e)) from e
    if not isinstance(body, dict):
        raise InvalidBody("body must be an object")
    return body


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _invalid_fields(e: pydantic.ValidationError) -> str:
    fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
    return f"Invalid value for {', '.join(fields)}: expected a string"


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/webhook.

    The body is read as raw bytes; parsing it before verification would
    break the signature check.
    """
    payload = await request.read()
    return await handle_webhook(
        payload,
        request.headers.get("Stripe-Signature"),
        request.app["reconciler"],
        request.app["config"],
    )


async def create_payment_session_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/create-payment-session."""
    try:
        body = CreatePaymentSessionRequest.model_validate(await _json_body(request))
        # Stripe SDK calls block, so they run on a worker thread
        url = await asyncio.to_thread(
            create_payment_session,
            request.app["client"],
            request.app["config"],
            body.price_id,
            body.customer_id,
        )
    except InvalidBody:
        return _error(400, "Invalid JSON body")
    except pydantic.ValidationError as e:
        return _error(400, _invalid_fields(e))
    except PaymentsError as e:
        if e.status >= 500:
            logger.error(f"Stripe Checkout error: {e.message}")
        return _error(e.status, e.message)
    except Exception:
        logger.exception("Error creating payment session")
        return _error(500, "An error occurred while creating the payment session")

    return web.json_response(CreatePaymentSessionResponse(url=url).model_dump())


async def confirm_subscription_endpoint(request: web.Request) -> web.Response:
    """Handle POST /api/confirm-subscription."""
    try:
        body = ConfirmSubscriptionRequest.model_validate(await _json_body(request))
        response = await asyncio.to_thread(confirm_subscription, request.app["client"], body)
    except InvalidBody:
        return _error(400, "Invalid JSON body")
    except pydantic.ValidationError as e:
        return _error(400, _invalid_fields(e))
    except PaymentsError as e:
        if e.status >= 500:
            logger.error(f"Error confirming subscription: {e.message}")
        return _error(e.status, e.message)
    except Exception:
        logger.exception("Error confirming subscription")
        return _error(500, "An error occurred while confirming the subscription")

    return web.json_response(response.to_json())


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Allow credentialed browser calls from the configured client origin."""
    origin = request.headers.get("Origin")
    if request.method == "OPTIONS" and request.headers.get("Access-Control-Request-Method"):
        response = web.Response(status=204)
    else:
        response = await handler(request)

    if origin and origin == request.app["config"].client_url:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Vary"] = "Origin"
        if request.method == "OPTIONS":
            response.headers["Access-Control-Allow-Methods"] = CORS_METHODS
            requested = request.headers.get("Access-Control-Request-Headers")
            if requested:
                response.headers["Access-Control-Allow-Headers"] = requested
    return response


def create_app(
    config: AppConfig,
    client: ProcessorClient,
    store: ProjectionStore,
) -> web.Application:
    """Create aiohttp application with all payment routes.

    Args:
        config: Application settings
        client: Stripe client shared by the synchronous routes
        store: Projection store used by the webhook reconciler

    Returns:
        Configured aiohttp Application
    """
    app = web.Application(middlewares=[cors_middleware])
    app["config"] = config
    app["client"] = client
    app["store"] = store
    app["reconciler"] = Reconciler(store, max_attempts=config.reconcile_max_attempts)

    app.router.add_post("/api/webhook", webhook_endpoint)
    app.router.add_post("/api/create-payment-session", create_payment_session_endpoint)
    app.router.add_post("/api/confirm-subscription", confirm_subscription_endpoint)
    return app


async def run_server(
    app: web.Application,
    port: int,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """Serve ``app`` until ``shutdown_event`` is set.

    Args:
        app: Application from create_app
        port: TCP port to listen on
        shutdown_event: Optional event to signal shutdown
    """
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()

    logger.info(f"Server running on port {port}")
    client = app["client"]
    logger.info(f"Using Stripe API version: {client.api_version}")

    if shutdown_event:
        await shutdown_event.wait()
    else:
        await asyncio.Event().wait()

    logger.info("Shutting down server...")
    await runner.cleanup()
