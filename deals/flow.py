"""Participant-driven deal operations.

These run when a channel owner or advertiser acts on a deal. Each one locks
the deal row, checks who is acting and what status the deal is in, then
applies a conditional transition and an audit message in one transaction.
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from locks import DistributedLock, LockAcquireError
from notifications import notify_safely

from . import Deal, DealStatus, DealType, EXPIRABLE, UNFUNDED
from .exceptions import (
    DealError, DealNotFoundError, InvalidStatusError, PermissionDeniedError, Reason
)

logger = logging.getLogger(__name__)

# Statuses with an escrow address a participant may still back out of before the post goes live
DECLINABLE = (
    DealStatus.PAYMENT_PENDING, DealStatus.PAID, DealStatus.CREATIVE_SUBMITTED,
    DealStatus.CREATIVE_APPROVED, DealStatus.SCHEDULED,
)

class DealFlow:
    """Deal operations initiated by participants

    Args:
        store: Deal store
        ledger: Ledger that hands out escrow addresses
        locks: Distributed lock service
        notifier: Best-effort notifier, optional
        deal_timeout_hours: How long a deal may stay unfunded
    """

    def __init__(self, store, ledger, locks: DistributedLock, notifier=None,
                 deal_timeout_hours: int = 72, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.ledger = ledger
        self.locks = locks
        self.notifier = notifier
        self.deal_timeout = timedelta(hours=deal_timeout_hours)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def _locked(self, deal_id: int, operation: str, fn: Callable[..., Awaitable[Deal]]) -> Deal:
        async def run():
            async with self.store.transaction() as conn:
                deal = await self.store.lock_deal(conn, deal_id)
                if deal is None:
                    raise DealNotFoundError(deal_id)
                return await fn(conn, deal)

        try:
            return await self.locks.with_lock(DistributedLock.key(deal_id, operation), run)
        except LockAcquireError as e:
            raise DealError(Reason.CONCURRENT_PROCESSING, str(e), deal_id) from e

    @staticmethod
    def _require_status(deal: Deal, *allowed: DealStatus) -> None:
        if deal.status not in allowed:
            raise InvalidStatusError(deal.id, deal.status.value, [s.value for s in allowed])

    @staticmethod
    def _require_participant(deal: Deal, user_id: int, owner_only: bool = False,
                             advertiser_only: bool = False) -> None:
        if owner_only:
            allowed = (deal.channel_owner_id,)
        elif advertiser_only:
            allowed = (deal.advertiser_id,)
        else:
            allowed = deal.participants()
        if user_id not in allowed:
            raise PermissionDeniedError(deal.id, user_id)

    async def create_deal(
        self,
        deal_type: DealType,
        channel_id: int,
        advertiser_id: int,
        price: Decimal,
        brief: str,
        ad_format: str = "post",
        scheduled_post_time: Optional[datetime] = None,
        min_publication_duration_days: int = 1
    ) -> Deal:
        """Open a pending deal; the brief becomes its first message.

        Raises:
            DealError: If the channel does not exist or the brief is empty
        """
        if not brief or not brief.strip():
            raise DealError(Reason.NO_BRIEF_FOUND, "brief must not be empty")
        if price <= 0:
            raise ValueError("price must be positive")

        async with self.store.transaction() as conn:
            channel = await self.store.get_channel(channel_id, conn=conn)
            if channel is None:
                raise DealError(Reason.DEAL_NOT_FOUND, f"channel {channel_id} not found")

            deal = await self.store.insert_deal(
                conn,
                deal_type=deal_type,
                channel_id=channel_id,
                channel_owner_id=channel['owner_id'],
                advertiser_id=advertiser_id,
                price=price,
                ad_format=ad_format,
                scheduled_post_time=scheduled_post_time,
                min_publication_duration_days=min_publication_duration_days,
                timeout_at=self.clock() + self.deal_timeout
            )
            await self.store.append_message(conn, deal.id, advertiser_id, brief)

        logger.info(f"Created deal {deal.id} for channel {channel_id} at {price}")
        return deal

    async def accept_deal(self, deal_id: int, owner_id: int) -> Deal:
        """Channel owner accepts; the deal gets its escrow address and awaits payment."""
        async def apply(conn, deal: Deal) -> Deal:
            self._require_participant(deal, owner_id, owner_only=True)
            self._require_status(deal, DealStatus.PENDING, DealStatus.NEGOTIATING)

            owner = await self.store.get_user(owner_id, conn=conn)
            wallet = owner.get('wallet_address') if owner else None
            if not wallet:
                raise DealError(Reason.MISSING_ADDRESSES, "channel owner has no wallet", deal.id)

            escrow_address = await self.ledger.generate_escrow_address(deal.id)
            updated = await self.store.transition(
                conn, deal.id, [DealStatus.PENDING, DealStatus.NEGOTIATING], DealStatus.PAYMENT_PENDING,
                require_null=('escrow_address',),
                escrow_address=escrow_address,
                channel_owner_wallet_address=wallet
            )
            if updated is None:
                raise DealError(Reason.CONCURRENT_PROCESSING, "deal already accepted", deal.id)
            await self.store.append_message(conn, deal.id, owner_id, "Deal accepted")
            return updated

        accepted = await self._locked(deal_id, 'accept_deal', apply)
        await notify_safely(
            self.notifier, accepted.id, [accepted.advertiser_id], 'deal_accepted',
            {'price': accepted.price, 'escrow_address': accepted.escrow_address}
        )
        return accepted

    async def send_to_draft(self, deal_id: int, owner_id: int, comment: str) -> Deal:
        """Channel owner asks for changes instead of accepting."""
        async def apply(conn, deal: Deal) -> Deal:
            self._require_participant(deal, owner_id, owner_only=True)
            self._require_status(deal, DealStatus.PENDING)
            updated = await self.store.transition(conn, deal.id, [DealStatus.PENDING], DealStatus.NEGOTIATING)
            if updated is None:
                raise DealError(Reason.CONCURRENT_PROCESSING, deal_id=deal.id)
            await self.store.append_message(conn, deal.id, owner_id, comment)
            return updated

        return await self._locked(deal_id, 'accept_deal', apply)

    async def decline_deal(self, deal_id: int, user_id: int, reason: Optional[str] = None) -> Deal:
        """Back out of a deal.

        Deals without an escrow address are cancelled outright. Deals with one
        that are not yet published become declined, and the refund sweep
        returns whatever reached the escrow.
        """
        async def apply(conn, deal: Deal) -> Deal:
            self._require_participant(deal, user_id)
            if deal.status in UNFUNDED:
                target = DealStatus.CANCELLED
                sources = UNFUNDED
            else:
                self._require_status(deal, *DECLINABLE)
                target = DealStatus.DECLINED
                sources = DECLINABLE

            updated = await self.store.transition(conn, deal.id, sources, target)
            if updated is None:
                raise DealError(Reason.CONCURRENT_PROCESSING, deal_id=deal.id)
            await self.store.append_message(
                conn, deal.id, user_id, f"Deal {target.value}" + (f": {reason}" if reason else "")
            )
            return updated

        declined = await self._locked(deal_id, 'cancel_deal', apply)
        event = 'deal_cancelled' if declined.status == DealStatus.CANCELLED else 'deal_declined'
        await notify_safely(self.notifier, declined.id, declined.participants(), event)
        return declined

    async def submit_creative(self, deal_id: int, owner_id: int, text: str) -> Deal:
        async def apply(conn, deal: Deal) -> Deal:
            self._require_participant(deal, owner_id, owner_only=True)
            self._require_status(deal, DealStatus.PAID)
            updated = await self.store.transition(conn, deal.id, [DealStatus.PAID], DealStatus.CREATIVE_SUBMITTED)
            if updated is None:
                raise DealError(Reason.CONCURRENT_PROCESSING, deal_id=deal.id)
            await self.store.append_message(conn, deal.id, owner_id, text)
            return updated

        return await self._locked(deal_id, 'creative', apply)

    async def approve_creative(self, deal_id: int, advertiser_id: int) -> Deal:
        async def apply(conn, deal: Deal) -> Deal:
            self._require_participant(deal, advertiser_id, advertiser_only=True)
            self._require_status(deal, DealStatus.CREATIVE_SUBMITTED)
            updated = await self.store.transition(
                conn, deal.id, [DealStatus.CREATIVE_SUBMITTED], DealStatus.CREATIVE_APPROVED
            )
            if updated is None:
                raise DealError(Reason.CONCURRENT_PROCESSING, deal_id=deal.id)
            await self.store.append_message(conn, deal.id, advertiser_id, "Creative approved")
            return updated

        return await self._locked(deal_id, 'creative', apply)

    async def schedule_post(self, deal_id: int, user_id: int, post_time: datetime) -> Deal:
        """Set when the ad goes out.

        Before payment only the time is recorded; payment confirmation then
        lands the deal in scheduled. After payment the deal moves to scheduled.
        """
        async def apply(conn, deal: Deal) -> Deal:
            self._require_participant(deal, user_id)
            if deal.status in (DealStatus.PAID, DealStatus.CREATIVE_APPROVED):
                updated = await self.store.transition(
                    conn, deal.id, [deal.status], DealStatus.SCHEDULED, scheduled_post_time=post_time
                )
            elif deal.status in EXPIRABLE or deal.status == DealStatus.SCHEDULED:
                updated = await self.store.update_fields(
                    conn, deal.id, [deal.status], scheduled_post_time=post_time
                )
            else:
                raise InvalidStatusError(deal.id, deal.status.value, ['pending', 'negotiating',
                                         'payment_pending', 'paid', 'creative_approved', 'scheduled'])
            if updated is None:
                raise DealError(Reason.CONCURRENT_PROCESSING, deal_id=deal.id)
            await self.store.append_message(conn, deal.id, user_id, f"Post scheduled for {post_time.isoformat()}")
            return updated

        return await self._locked(deal_id, 'publish_post', apply)

    async def add_message(self, deal_id: int, sender_id: int, text: str) -> None:
        async def apply(conn, deal: Deal) -> Deal:
            self._require_participant(deal, sender_id)
            await self.store.append_message(conn, deal.id, sender_id, text)
            return deal

        await self._locked(deal_id, 'message', apply)
