"""Status projections and the rules for advancing them.

Stripe delivers webhooks at least once and in no particular order, so a
projection only moves forward when the incoming event is new, not older than
the one already applied, and does not pull a terminal status back. Events
stamped in the same second are ordered by lifecycle position.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from payrelay.db.models import InvoiceStatus, PaymentOutcome, SubscriptionStatus


@dataclass(frozen=True)
class SubscriptionProjection:
    """Latest known state of one subscription."""

    subscription_id: str
    status: SubscriptionStatus
    last_event_id: str
    last_event_created: int
    customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    version: int = 0  # 0 = not yet stored


@dataclass(frozen=True)
class InvoiceProjection:
    """Latest known payment state of one invoice."""

    invoice_id: str
    status: InvoiceStatus
    outcome: PaymentOutcome
    last_event_id: str
    last_event_created: int
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    version: int = 0


Projection = Union[SubscriptionProjection, InvoiceProjection]


class Decision(str, Enum):
    """Outcome of comparing an incoming projection with the stored one."""

    APPLY = "apply"
    DUPLICATE = "duplicate"
    STALE = "stale"
    TERMINAL = "terminal"


def decide(current: Optional[Projection], incoming: Projection) -> Decision:
    """Decide whether ``incoming`` may replace ``current``.

    Args:
        current: Stored projection, or None if the entity is unseen
        incoming: Projection computed from the event being reconciled

    Returns:
        Decision.APPLY if the store should be written, otherwise the reason
        the event is ignored
    """
    if current is None:
        return Decision.APPLY
    if current.last_event_id == incoming.last_event_id:
        return Decision.DUPLICATE
    if incoming.last_event_created < current.last_event_created:
        return Decision.STALE
    # Same-second events are ordered by lifecycle position, not arrival
    if (
        incoming.last_event_created == current.last_event_created
        and incoming.status.rank < current.status.rank
    ):
        return Decision.STALE
    if current.status.is_terminal and not incoming.status.is_terminal:
        return Decision.TERMINAL
    return Decision.APPLY
