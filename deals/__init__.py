"""Deal model and lifecycle rules.

A deal walks a strict graph of statuses. Every move is expressed as a
conditional update against the statuses allowed to reach the target, so a
move that is not in the graph simply updates nothing.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from pydantic import BaseModel

from .exceptions import (
    Reason, BENIGN, DealError, DealNotFoundError, InvalidStatusError,
    PermissionDeniedError, classify, is_benign
)

class DealStatus(str, Enum):
    PENDING = "pending"
    NEGOTIATING = "negotiating"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    CREATIVE_SUBMITTED = "creative_submitted"
    CREATIVE_APPROVED = "creative_approved"
    SCHEDULED = "scheduled"
    POSTED = "posted"
    VERIFIED = "verified"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DECLINED = "declined"

class DealType(str, Enum):
    LISTING = "listing"
    CAMPAIGN = "campaign"

S = DealStatus

TRANSITIONS: Dict[DealStatus, FrozenSet[DealStatus]] = {
    S.PENDING: frozenset({S.NEGOTIATING, S.PAYMENT_PENDING, S.CANCELLED}),
    S.NEGOTIATING: frozenset({S.PAYMENT_PENDING, S.CANCELLED}),
    S.PAYMENT_PENDING: frozenset({S.PAID, S.SCHEDULED, S.CANCELLED, S.DECLINED}),
    S.PAID: frozenset({S.CREATIVE_SUBMITTED, S.SCHEDULED, S.POSTED, S.DECLINED}),
    S.CREATIVE_SUBMITTED: frozenset({S.CREATIVE_APPROVED, S.DECLINED}),
    S.CREATIVE_APPROVED: frozenset({S.SCHEDULED, S.POSTED, S.DECLINED}),
    S.SCHEDULED: frozenset({S.POSTED, S.DECLINED}),
    S.POSTED: frozenset({S.VERIFIED, S.REFUNDED}),
    S.VERIFIED: frozenset({S.COMPLETED}),
    S.DECLINED: frozenset({S.REFUNDED}),
}

TERMINAL = frozenset({S.COMPLETED, S.CANCELLED, S.REFUNDED})

PUBLISHABLE = (S.PAID, S.SCHEDULED, S.CREATIVE_APPROVED)
EXPIRABLE = (S.PENDING, S.NEGOTIATING, S.PAYMENT_PENDING)
# No escrow address has been handed out yet
UNFUNDED = (S.PENDING, S.NEGOTIATING)

def can_transition(source, target) -> bool:
    """Check whether the graph has an edge from source to target."""
    return DealStatus(target) in TRANSITIONS.get(DealStatus(source), frozenset())

def legal_sources(expected: Iterable, target) -> list:
    """Filter the expected source statuses down to those with an edge to target."""
    return [DealStatus(s) for s in expected if can_transition(s, target)]

class Deal(BaseModel):
    """Snapshot of a deal row"""
    id: int
    deal_type: DealType
    channel_id: int
    channel_owner_id: int
    advertiser_id: int
    ad_format: str = "post"
    price: Decimal
    status: DealStatus
    escrow_address: Optional[str] = None
    channel_owner_wallet_address: Optional[str] = None
    payment_tx_hash: Optional[str] = None
    payment_confirmed_at: Optional[datetime] = None
    scheduled_post_time: Optional[datetime] = None
    actual_post_time: Optional[datetime] = None
    post_message_id: Optional[int] = None
    post_verification_until: Optional[datetime] = None
    min_publication_duration_days: int = 1
    refund_tx_hash: Optional[str] = None
    release_tx_hash: Optional[str] = None
    timeout_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Optional[Mapping[str, Any]]) -> Optional["Deal"]:
        """Build a Deal from an asyncpg Record or dict, None passes through."""
        if record is None:
            return None
        return cls(**dict(record))

    def participants(self) -> tuple:
        return (self.channel_owner_id, self.advertiser_id)

__all__ = [
    'DealStatus', 'DealType', 'Deal', 'TRANSITIONS', 'TERMINAL',
    'PUBLISHABLE', 'EXPIRABLE', 'UNFUNDED', 'can_transition', 'legal_sources',
    'Reason', 'BENIGN', 'DealError', 'DealNotFoundError', 'InvalidStatusError',
    'PermissionDeniedError', 'classify', 'is_benign',
]
