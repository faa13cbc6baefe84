"""Projection storage backends.

Writes are compare-and-set on a per-row ``version`` counter: a caller passes
the version it read (0 for an unseen entity) and the write fails if another
delivery got there first.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Optional

import asyncpg

from payrelay.db.models import InvoiceStatus, PaymentOutcome, SubscriptionStatus, Table
from payrelay.payments.projections import InvoiceProjection, Projection, SubscriptionProjection

logger = logging.getLogger(__name__)


class ProjectionStore(ABC):
    """Abstract store for subscription and invoice projections."""

    @abstractmethod
    async def has_processed(self, event_id: str) -> bool:
        """Return True if the event has already been reconciled."""

    @abstractmethod
    async def mark_processed(self, event_id: str, event_type: str) -> None:
        """Record an event as reconciled. Repeated calls are harmless."""

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionProjection]:
        """Fetch the stored subscription projection, if any."""

    @abstractmethod
    async def put_subscription(self, projection: SubscriptionProjection, expected_version: int) -> bool:
        """Write a subscription projection if the stored version still matches."""

    @abstractmethod
    async def get_invoice(self, invoice_id: str) -> Optional[InvoiceProjection]:
        """Fetch the stored invoice projection, if any."""

    @abstractmethod
    async def put_invoice(self, projection: InvoiceProjection, expected_version: int) -> bool:
        """Write an invoice projection if the stored version still matches."""

    async def close(self) -> None:
        """Release any resources held by the store."""


class MemoryProjectionStore(ProjectionStore):
    """In-process store used for tests and database-less deployments."""

    def __init__(self):
        self._subscriptions: dict[str, SubscriptionProjection] = {}
        self._invoices: dict[str, InvoiceProjection] = {}
        self._processed: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def has_processed(self, event_id: str) -> bool:
        return event_id in self._processed

    async def mark_processed(self, event_id: str, event_type: str) -> None:
        self._processed.setdefault(event_id, event_type)

    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionProjection]:
        return self._subscriptions.get(subscription_id)

    async def put_subscription(self, projection: SubscriptionProjection, expected_version: int) -> bool:
        return await self._compare_and_set(
            self._subscriptions, projection.subscription_id, projection, expected_version
        )

    async def get_invoice(self, invoice_id: str) -> Optional[InvoiceProjection]:
        return self._invoices.get(invoice_id)

    async def put_invoice(self, projection: InvoiceProjection, expected_version: int) -> bool:
        return await self._compare_and_set(
            self._invoices, projection.invoice_id, projection, expected_version
        )

    async def _compare_and_set(
        self,
        rows: dict,
        key: str,
        projection: Projection,
        expected_version: int,
    ) -> bool:
        async with self._lock:
            current = rows.get(key)
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                return False
            rows[key] = replace(projection, version=expected_version + 1)
            return True


class PostgresProjectionStore(ProjectionStore):
    """asyncpg-backed store over the tables created by migration 001."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def has_processed(self, event_id: str) -> bool:
        async with self._pool.acquire() as conn:
            row = await conn.fetchval(
                f"SELECT 1 FROM {Table.PROCESSED_EVENTS} WHERE event_id = $1",
                event_id,
            )
        return row is not None

    async def mark_processed(self, event_id: str, event_type: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {Table.PROCESSED_EVENTS} (event_id, event_type)
                VALUES ($1, $2)
                ON CONFLICT (event_id) DO NOTHING
                """,
                event_id,
                event_type,
            )

    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionProjection]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT subscription_id, status, customer_id, current_period_end,
                       last_event_id, last_event_created, version
                FROM {Table.SUBSCRIPTION_PROJECTIONS}
                WHERE subscription_id = $1
                """,
                subscription_id,
            )
        if row is None:
            return None
        return SubscriptionProjection(
            subscription_id=row["subscription_id"],
            status=SubscriptionStatus(row["status"]),
            customer_id=row["customer_id"],
            current_period_end=row["current_period_end"],
            last_event_id=row["last_event_id"],
            last_event_created=row["last_event_created"],
            version=row["version"],
        )

    async def put_subscription(self, projection: SubscriptionProjection, expected_version: int) -> bool:
        args = (
            projection.subscription_id,
            projection.status.value,
            projection.customer_id,
            projection.current_period_end,
            projection.last_event_id,
            projection.last_event_created,
        )
        async with self._pool.acquire() as conn:
            if expected_version == 0:
                result = await conn.execute(
                    f"""
                    INSERT INTO {Table.SUBSCRIPTION_PROJECTIONS}
                        (subscription_id, status, customer_id, current_period_end,
                         last_event_id, last_event_created, version)
                    VALUES ($1, $2, $3, $4, $5, $6, 1)
                    ON CONFLICT (subscription_id) DO NOTHING
                    """,
                    *args,
                )
            else:
                result = await conn.execute(
                    f"""
                    UPDATE {Table.SUBSCRIPTION_PROJECTIONS} SET
                        status = $2,
                        customer_id = COALESCE($3, customer_id),
                        current_period_end = COALESCE($4, current_period_end),
                        last_event_id = $5,
                        last_event_created = $6,
                        version = version + 1,
                        updated_at = now()
                    WHERE subscription_id = $1 AND version = $7
                    """,
                    *args,
                    expected_version,
                )
        return _rows_affected(result) == 1

    async def get_invoice(self, invoice_id: str) -> Optional[InvoiceProjection]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT invoice_id, status, outcome, subscription_id, customer_id,
                       last_event_id, last_event_created, version
                FROM {Table.INVOICE_PROJECTIONS}
                WHERE invoice_id = $1
                """,
                invoice_id,
            )
        if row is None:
            return None
        return InvoiceProjection(
            invoice_id=row["invoice_id"],
            status=InvoiceStatus(row["status"]),
            outcome=PaymentOutcome(row["outcome"]),
            subscription_id=row["subscription_id"],
            customer_id=row["customer_id"],
            last_event_id=row["last_event_id"],
            last_event_created=row["last_event_created"],
            version=row["version"],
        )

    async def put_invoice(self, projection: InvoiceProjection, expected_version: int) -> bool:
        args = (
            projection.invoice_id,
            projection.status.value,
            projection.outcome.value,
            projection.subscription_id,
            projection.customer_id,
            projection.last_event_id,
            projection.last_event_created,
        )
        async with self._pool.acquire() as conn:
            if expected_version == 0:
                result = await conn.execute(
                    f"""
                    INSERT INTO {Table.INVOICE_PROJECTIONS}
                        (invoice_id, status, outcome, subscription_id, customer_id,
                         last_event_id, last_event_created, version)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, 1)
                    ON CONFLICT (invoice_id) DO NOTHING
                    """,
                    *args,
                )
            else:
                result = await conn.execute(
                    f"""
                    UPDATE {Table.INVOICE_PROJECTIONS} SET
                        status = $2,
                        outcome = $3,
                        subscription_id = COALESCE($4, subscription_id),
                        customer_id = COALESCE($5, customer_id),
                        last_event_id = $6,
                        last_event_created = $7,
                        version = version + 1,
                        updated_at = now()
                    WHERE invoice_id = $1 AND version = $8
                    """,
                    *args,
                    expected_version,
                )
        return _rows_affected(result) == 1


def _rows_affected(status: str) -> int:
    """Parse the row count from an asyncpg command tag like 'UPDATE 1'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0
