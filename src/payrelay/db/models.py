"""Lightweight table-name constants and column-name enums."""

from enum import Enum


# Table name constants
class Table:
    """Database table names."""

    SUBSCRIPTION_PROJECTIONS = "subscription_projections"
    INVOICE_PROJECTIONS = "invoice_projections"
    PROCESSED_EVENTS = "processed_events"
    SCHEMA_MIGRATIONS = "schema_migrations"


# Column name enums
class EntityKind(str, Enum):
    """Kind of projected entity."""

    SUBSCRIPTION = "subscription"
    INVOICE = "invoice"


class SubscriptionStatus(str, Enum):
    """Stripe subscription status."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED)

    @property
    def rank(self) -> int:
        """Position in the subscription lifecycle, used to order same-second events."""
        return _SUBSCRIPTION_RANK[self]


class InvoiceStatus(str, Enum):
    """Stripe invoice status."""

    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    UNCOLLECTIBLE = "uncollectible"
    VOID = "void"

    @property
    def is_terminal(self) -> bool:
        return self in (InvoiceStatus.PAID, InvoiceStatus.VOID)

    @property
    def rank(self) -> int:
        return _INVOICE_RANK[self]


_SUBSCRIPTION_RANK = {
    SubscriptionStatus.INCOMPLETE: 0,
    SubscriptionStatus.TRIALING: 1,
    SubscriptionStatus.ACTIVE: 2,
    SubscriptionStatus.PAST_DUE: 3,
    SubscriptionStatus.UNPAID: 4,
    SubscriptionStatus.PAUSED: 5,
    SubscriptionStatus.INCOMPLETE_EXPIRED: 6,
    SubscriptionStatus.CANCELED: 7,
}

_INVOICE_RANK = {
    InvoiceStatus.DRAFT: 0,
    InvoiceStatus.OPEN: 1,
    InvoiceStatus.UNCOLLECTIBLE: 2,
    InvoiceStatus.PAID: 3,
    InvoiceStatus.VOID: 4,
}


class PaymentOutcome(str, Enum):
    """Result of an invoice payment attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
