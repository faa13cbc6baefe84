"""Idempotent reconciliation of verified webhook events into projections."""

import logging
from dataclasses import dataclass, replace
from typing import Optional

from payrelay.db.models import EntityKind, PaymentOutcome, SubscriptionStatus
from payrelay.payments.events import Event, EventKind, InvoicePayload, SubscriptionPayload
from payrelay.payments.projections import (
    Decision,
    InvoiceProjection,
    SubscriptionProjection,
    decide,
)
from payrelay.payments.store import ProjectionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    """What reconciling one event did, for logging and the HTTP response."""

    handled: bool
    entity_kind: Optional[EntityKind] = None
    entity_id: Optional[str] = None
    new_status: Optional[str] = None
    applied: bool = False
    duplicate: bool = False
    error: Optional[str] = None


class ConcurrentUpdateError(Exception):
    """Compare-and-set kept losing to other deliveries for the same entity."""


class Reconciler:
    """Apply webhook events to a projection store.

    Holds no state of its own between calls; everything lives in the store.
    """

    def __init__(self, store: ProjectionStore, max_attempts: int = 3):
        self._store = store
        self._max_attempts = max_attempts

    async def reconcile(self, event: Event) -> ReconcileResult:
        """Apply one event.

        Unknown event kinds are reported as unhandled without touching the
        store. Store failures are logged and reported in the result rather
        than raised.
        """
        match event.kind:
            case (
                EventKind.SUBSCRIPTION_CREATED
                | EventKind.SUBSCRIPTION_UPDATED
                | EventKind.SUBSCRIPTION_DELETED
            ):
                entity_kind = EntityKind.SUBSCRIPTION
            case EventKind.INVOICE_PAYMENT_SUCCEEDED | EventKind.INVOICE_PAYMENT_FAILED:
                entity_kind = EntityKind.INVOICE
            case EventKind.OTHER:
                logger.info(f"Unhandled event type: {event.type}")
                return ReconcileResult(handled=False)

        entity_id = event.payload.id

        try:
            if await self._store.has_processed(event.id):
                current = await self._get(entity_kind, entity_id)
                logger.info(f"Event {event.id} already processed - skipping")
                return ReconcileResult(
                    handled=True,
                    entity_kind=entity_kind,
                    entity_id=entity_id,
                    new_status=current.status.value if current else None,
                    duplicate=True,
                )

            if entity_kind == EntityKind.SUBSCRIPTION:
                result = await self._apply_subscription(event, event.payload)
            else:
                result = await self._apply_invoice(event, event.payload)

            await self._store.mark_processed(event.id, event.type)
            return result

        except Exception as e:
            logger.exception(
                f"Failed to reconcile event {event.id} ({event.type}) for "
                f"{entity_kind.value} {entity_id} - needs manual remediation"
            )
            return ReconcileResult(
                handled=True,
                entity_kind=entity_kind,
                entity_id=entity_id,
                error=str(e) or type(e).__name__,
            )

    async def _get(self, entity_kind: EntityKind, entity_id: str):
        if entity_kind == EntityKind.SUBSCRIPTION:
            return await self._store.get_subscription(entity_id)
        return await self._store.get_invoice(entity_id)

    async def _apply_subscription(
        self, event: Event, payload: SubscriptionPayload
    ) -> ReconcileResult:
        status = payload.status
        if event.kind == EventKind.SUBSCRIPTION_DELETED:
            status = SubscriptionStatus.CANCELED

        for _ in range(self._max_attempts):
            current = await self._store.get_subscription(payload.id)
            incoming = SubscriptionProjection(
                subscription_id=payload.id,
                status=status,
                customer_id=payload.customer,
                current_period_end=payload.current_period_end,
                last_event_id=event.id,
                last_event_created=event.created,
            )
            if current is not None:
                incoming = replace(
                    incoming,
                    customer_id=incoming.customer_id or current.customer_id,
                    current_period_end=incoming.current_period_end or current.current_period_end,
                )

            decision = decide(current, incoming)
            if decision != Decision.APPLY:
                return self._skipped(event, EntityKind.SUBSCRIPTION, payload.id, current, decision)

            expected = current.version if current is not None else 0
            if await self._store.put_subscription(incoming, expected):
                logger.info(
                    f"Subscription {payload.id} -> {status.value} (event {event.id})"
                )
                return ReconcileResult(
                    handled=True,
                    entity_kind=EntityKind.SUBSCRIPTION,
                    entity_id=payload.id,
                    new_status=status.value,
                    applied=True,
                )
            logger.debug(f"Lost compare-and-set on subscription {payload.id}, retrying")

        raise ConcurrentUpdateError(
            f"Gave up on subscription {payload.id} after {self._max_attempts} attempts"
        )

    async def _apply_invoice(self, event: Event, payload: InvoicePayload) -> ReconcileResult:
        if event.kind == EventKind.INVOICE_PAYMENT_SUCCEEDED:
            outcome = PaymentOutcome.SUCCEEDED
        else:
            outcome = PaymentOutcome.FAILED

        for _ in range(self._max_attempts):
            current = await self._store.get_invoice(payload.id)
            incoming = InvoiceProjection(
                invoice_id=payload.id,
                status=payload.status,
                outcome=outcome,
                subscription_id=payload.subscription,
                customer_id=payload.customer,
                last_event_id=event.id,
                last_event_created=event.created,
            )
            if current is not None:
                incoming = replace(
                    incoming,
                    subscription_id=incoming.subscription_id or current.subscription_id,
                    customer_id=incoming.customer_id or current.customer_id,
                )

            decision = decide(current, incoming)
            if decision != Decision.APPLY:
                return self._skipped(event, EntityKind.INVOICE, payload.id, current, decision)

            expected = current.version if current is not None else 0
            if await self._store.put_invoice(incoming, expected):
                logger.info(
                    f"Invoice {payload.id} -> {payload.status.value} "
                    f"({outcome.value}, event {event.id})"
                )
                return ReconcileResult(
                    handled=True,
                    entity_kind=EntityKind.INVOICE,
                    entity_id=payload.id,
                    new_status=payload.status.value,
                    applied=True,
                )
            logger.debug(f"Lost compare-and-set on invoice {payload.id}, retrying")

        raise ConcurrentUpdateError(
            f"Gave up on invoice {payload.id} after {self._max_attempts} attempts"
        )

    @staticmethod
    def _skipped(event, entity_kind, entity_id, current, decision) -> ReconcileResult:
        logger.info(
            f"Ignoring event {event.id} for {entity_kind.value} {entity_id}: "
            f"{decision.value} (stored status {current.status.value})"
        )
        return ReconcileResult(
            handled=True,
            entity_kind=entity_kind,
            entity_id=entity_id,
            new_status=current.status.value,
            duplicate=decision == Decision.DUPLICATE,
        )
