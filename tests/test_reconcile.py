"""Tests for idempotent, order-tolerant reconciliation."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from payrelay.db.models import EntityKind, InvoiceStatus, PaymentOutcome, SubscriptionStatus
from payrelay.payments.events import Event, EventKind, InvoicePayload, SubscriptionPayload
from payrelay.payments.projections import Decision, SubscriptionProjection, decide
from payrelay.payments.reconcile import Reconciler
from payrelay.payments.store import MemoryProjectionStore, ProjectionStore


def subscription_event(
    event_id: str,
    status: str,
    created: int,
    kind: EventKind = EventKind.SUBSCRIPTION_UPDATED,
    subscription_id: str = "sub_1",
    period_end: datetime | None = None,
) -> Event:
    return Event(
        id=event_id,
        type=kind.value,
        kind=kind,
        created=created,
        payload=SubscriptionPayload(
            id=subscription_id,
            status=SubscriptionStatus(status),
            customer="cus_1",
            current_period_end=period_end,
        ),
    )


def invoice_event(event_id: str, kind: EventKind, status: str, created: int) -> Event:
    return Event(
        id=event_id,
        type=kind.value,
        kind=kind,
        created=created,
        payload=InvoicePayload(id="in_1", status=InvoiceStatus(status), subscription="sub_1"),
    )


class TestUnhandled:
    @pytest.mark.asyncio
    async def test_unknown_type_is_unhandled_and_never_touches_store(self):
        store = AsyncMock(spec=ProjectionStore)
        event = Event(id="evt_1", type="charge.refunded", kind=EventKind.OTHER, created=1)

        result = await Reconciler(store).reconcile(event)

        assert result.handled is False
        assert result.applied is False
        assert result.error is None
        assert store.mock_calls == []


def _event_of_kind(kind: EventKind) -> Event:
    if kind.is_subscription:
        return subscription_event("evt_1", "active", 100, kind)
    if kind.is_invoice:
        return invoice_event("evt_1", kind, "paid", 100)
    return Event(id="evt_1", type="charge.refunded", kind=kind, created=100)


class TestDispatch:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", list(EventKind))
    async def test_every_kind_is_dispatched(self, store, kind):
        result = await Reconciler(store).reconcile(_event_of_kind(kind))

        assert result.error is None
        if kind == EventKind.OTHER:
            assert result.handled is False
        elif kind.is_subscription:
            assert result.entity_kind == EntityKind.SUBSCRIPTION
            assert result.applied is True
        else:
            assert result.entity_kind == EntityKind.INVOICE
            assert result.applied is True


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_created_event_inserts_projection(self, store):
        period_end = datetime(2025, 1, 1, tzinfo=timezone.utc)
        event = subscription_event(
            "evt_1", "incomplete", 100, EventKind.SUBSCRIPTION_CREATED, period_end=period_end
        )

        result = await Reconciler(store).reconcile(event)

        assert result.handled and result.applied
        assert result.entity_kind == EntityKind.SUBSCRIPTION
        assert result.entity_id == "sub_1"
        assert result.new_status == "incomplete"

        stored = await store.get_subscription("sub_1")
        assert stored.status == SubscriptionStatus.INCOMPLETE
        assert stored.current_period_end == period_end
        assert stored.customer_id == "cus_1"
        assert stored.version == 1
        assert await store.has_processed("evt_1")

    @pytest.mark.asyncio
    async def test_same_event_twice_is_idempotent(self, store):
        reconciler = Reconciler(store)
        event = subscription_event("evt_1", "active", 100)

        first = await reconciler.reconcile(event)
        after_first = await store.get_subscription("sub_1")
        second = await reconciler.reconcile(event)
        after_second = await store.get_subscription("sub_1")

        assert first.applied is True
        assert second.applied is False
        assert second.duplicate is True
        assert second.new_status == "active"
        assert after_second == after_first

    @pytest.mark.asyncio
    async def test_redelivery_before_mark_processed_is_still_a_noop(self, store):
        """A crash between the write and mark_processed must not double-apply."""
        event = subscription_event("evt_1", "active", 100)
        await Reconciler(store).reconcile(event)
        store._processed.clear()

        result = await Reconciler(store).reconcile(event)

        assert result.duplicate is True
        assert result.applied is False
        assert (await store.get_subscription("sub_1")).version == 1

    @pytest.mark.asyncio
    async def test_deleted_then_late_active_does_not_regress(self, store):
        reconciler = Reconciler(store)
        await reconciler.reconcile(subscription_event("evt_1", "active", 100))
        await reconciler.reconcile(
            subscription_event("evt_3", "canceled", 300, EventKind.SUBSCRIPTION_DELETED)
        )

        # Redelivered update, newer timestamp than the delete but non-terminal
        result = await reconciler.reconcile(subscription_event("evt_4", "active", 400))

        assert result.applied is False
        assert result.new_status == "canceled"
        assert (await store.get_subscription("sub_1")).status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_out_of_order_older_event_ignored(self, store):
        reconciler = Reconciler(store)
        await reconciler.reconcile(subscription_event("evt_2", "past_due", 200))

        result = await reconciler.reconcile(subscription_event("evt_1", "active", 100))

        assert result.applied is False
        assert result.duplicate is False
        assert (await store.get_subscription("sub_1")).status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_deleted_event_forces_canceled(self, store):
        event = subscription_event("evt_1", "active", 100, EventKind.SUBSCRIPTION_DELETED)

        result = await Reconciler(store).reconcile(event)

        assert result.new_status == "canceled"
        assert (await store.get_subscription("sub_1")).status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_later_update_keeps_known_period_end(self, store):
        reconciler = Reconciler(store)
        period_end = datetime(2025, 1, 1, tzinfo=timezone.utc)
        await reconciler.reconcile(subscription_event("evt_1", "active", 100, period_end=period_end))

        await reconciler.reconcile(subscription_event("evt_2", "past_due", 200))

        stored = await store.get_subscription("sub_1")
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.current_period_end == period_end
        assert stored.version == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reverse", [False, True])
    async def test_same_second_events_settle_regardless_of_arrival(self, store, reverse):
        events = [
            subscription_event("evt_1", "incomplete", 100, EventKind.SUBSCRIPTION_CREATED),
            subscription_event("evt_2", "active", 100),
        ]
        if reverse:
            events.reverse()

        reconciler = Reconciler(store)
        for event in events:
            await reconciler.reconcile(event)

        assert (await store.get_subscription("sub_1")).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_entities_are_independent(self, store):
        reconciler = Reconciler(store)
        await reconciler.reconcile(
            subscription_event("evt_1", "canceled", 100, EventKind.SUBSCRIPTION_DELETED)
        )

        result = await reconciler.reconcile(
            subscription_event("evt_2", "active", 50, subscription_id="sub_2")
        )

        assert result.applied is True
        assert (await store.get_subscription("sub_2")).status == SubscriptionStatus.ACTIVE


class TestInvoices:
    @pytest.mark.asyncio
    async def test_payment_succeeded_records_paid(self, store):
        event = invoice_event("evt_1", EventKind.INVOICE_PAYMENT_SUCCEEDED, "paid", 100)

        result = await Reconciler(store).reconcile(event)

        assert result.entity_kind == EntityKind.INVOICE
        assert result.new_status == "paid"
        stored = await store.get_invoice("in_1")
        assert stored.status == InvoiceStatus.PAID
        assert stored.outcome == PaymentOutcome.SUCCEEDED
        assert stored.subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_failed_after_paid_does_not_regress(self, store):
        reconciler = Reconciler(store)
        await reconciler.reconcile(
            invoice_event("evt_2", EventKind.INVOICE_PAYMENT_SUCCEEDED, "paid", 200)
        )

        result = await reconciler.reconcile(
            invoice_event("evt_3", EventKind.INVOICE_PAYMENT_FAILED, "open", 300)
        )

        assert result.applied is False
        stored = await store.get_invoice("in_1")
        assert stored.status == InvoiceStatus.PAID
        assert stored.outcome == PaymentOutcome.SUCCEEDED

    @pytest.mark.asyncio
    async def test_failed_then_succeeded_advances(self, store):
        reconciler = Reconciler(store)
        await reconciler.reconcile(
            invoice_event("evt_1", EventKind.INVOICE_PAYMENT_FAILED, "open", 100)
        )

        result = await reconciler.reconcile(
            invoice_event("evt_2", EventKind.INVOICE_PAYMENT_SUCCEEDED, "paid", 200)
        )

        assert result.applied is True
        assert (await store.get_invoice("in_1")).outcome == PaymentOutcome.SUCCEEDED


    @pytest.mark.asyncio
    @pytest.mark.parametrize("reverse", [False, True])
    async def test_same_second_failure_and_success_settle_on_paid(self, store, reverse):
        events = [
            invoice_event("evt_1", EventKind.INVOICE_PAYMENT_FAILED, "open", 100),
            invoice_event("evt_2", EventKind.INVOICE_PAYMENT_SUCCEEDED, "paid", 100),
        ]
        if reverse:
            events.reverse()

        reconciler = Reconciler(store)
        for event in events:
            await reconciler.reconcile(event)

        stored = await store.get_invoice("in_1")
        assert stored.status == InvoiceStatus.PAID
        assert stored.outcome == PaymentOutcome.SUCCEEDED


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_store_error_is_reported_not_raised(self):
        store = AsyncMock(spec=ProjectionStore)
        store.has_processed.return_value = False
        store.get_subscription.side_effect = ConnectionError("database unavailable")

        result = await Reconciler(store).reconcile(subscription_event("evt_1", "active", 100))

        assert result.handled is True
        assert result.applied is False
        assert result.error == "database unavailable"
        store.mark_processed.assert_not_called()

    @pytest.mark.asyncio
    async def test_lost_compare_and_set_is_retried(self):
        store = MemoryProjectionStore()
        real_put = store.put_subscription
        calls = []

        async def flaky_put(projection, expected_version):
            calls.append(expected_version)
            if len(calls) == 1:
                return False
            return await real_put(projection, expected_version)

        store.put_subscription = flaky_put

        result = await Reconciler(store).reconcile(subscription_event("evt_1", "active", 100))

        assert result.applied is True
        assert calls == [0, 0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        store = AsyncMock(spec=ProjectionStore)
        store.has_processed.return_value = False
        store.get_subscription.return_value = None
        store.put_subscription.return_value = False

        result = await Reconciler(store, max_attempts=2).reconcile(
            subscription_event("evt_1", "active", 100)
        )

        assert store.put_subscription.await_count == 2
        assert "after 2 attempts" in result.error
        store.mark_processed.assert_not_called()


class TestDecide:
    def _projection(self, event_id, status, created):
        return SubscriptionProjection(
            subscription_id="sub_1",
            status=SubscriptionStatus(status),
            last_event_id=event_id,
            last_event_created=created,
        )

    def test_unseen_entity_applies(self):
        assert decide(None, self._projection("evt_1", "active", 1)) == Decision.APPLY

    def test_same_event_is_duplicate(self):
        current = self._projection("evt_1", "active", 1)
        assert decide(current, current) == Decision.DUPLICATE

    def test_older_event_is_stale(self):
        current = self._projection("evt_2", "active", 2)
        assert decide(current, self._projection("evt_1", "past_due", 1)) == Decision.STALE

    def test_terminal_status_blocks_non_terminal(self):
        current = self._projection("evt_1", "canceled", 1)
        assert decide(current, self._projection("evt_2", "active", 2)) == Decision.TERMINAL

    def test_terminal_to_terminal_applies(self):
        current = self._projection("evt_1", "incomplete_expired", 1)
        assert decide(current, self._projection("evt_2", "canceled", 2)) == Decision.APPLY

    def test_equal_timestamps_advance_the_lifecycle(self):
        current = self._projection("evt_1", "incomplete", 5)
        assert decide(current, self._projection("evt_2", "active", 5)) == Decision.APPLY

    def test_equal_timestamps_never_step_back(self):
        current = self._projection("evt_2", "active", 5)
        assert decide(current, self._projection("evt_1", "incomplete", 5)) == Decision.STALE

    def test_equal_timestamps_same_status_applies(self):
        current = self._projection("evt_1", "active", 5)
        assert decide(current, self._projection("evt_2", "active", 5)) == Decision.APPLY
