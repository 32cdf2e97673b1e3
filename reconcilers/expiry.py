"""Expired deal sweep.

Deals past their timeout that never had an escrow address are cancelled.
Deals that did are declined instead, so money that reaches the escrow after
the timeout is still returned by the refund sweep.
"""
import logging
from typing import List

from deals import Deal, DealStatus, EXPIRABLE
from deals.exceptions import DealError, Reason
from notifications import notify_safely

from .base import Outcome, Reconciler

logger = logging.getLogger(__name__)

class ExpiryReconciler(Reconciler):
    """Closes deals that timed out before payment

    Args:
        ledger: Ledger checked for a payment before an escrow deal is closed
    """

    name = "expiry"
    operation = "expire_deal"

    def __init__(self, store, locks, ledger, notifier=None, **kwargs):
        super().__init__(store, locks, notifier, **kwargs)
        self.ledger = ledger

    async def candidates(self) -> List[Deal]:
        return await self.store.find_expired(self.clock(), self.batch_size)

    async def process(self, deal: Deal) -> Outcome:
        async def apply(conn, locked: Deal) -> Deal:
            if locked.status not in EXPIRABLE or locked.payment_tx_hash:
                raise DealError(Reason.CONCURRENT_PROCESSING, f"status is {locked.status.value}", locked.id)
            if locked.timeout_at is None or locked.timeout_at >= self.clock():
                raise DealError(Reason.NOT_READY, "timeout not reached", locked.id)

            target = DealStatus.CANCELLED
            if locked.escrow_address:
                transfer = await self.ledger.find_inbound_transfer(locked.escrow_address, locked.price)
                if transfer is not None:
                    # Left for the payment sweep to confirm
                    raise DealError(Reason.NOT_READY, f"payment {transfer.tx_hash} already received", locked.id)
                target = DealStatus.DECLINED

            updated = await self.store.transition(conn, locked.id, [locked.status], target)
            if updated is None:
                raise DealError(Reason.CONCURRENT_PROCESSING, "deal moved during expiry", locked.id)
            await self.store.append_message(conn, locked.id, None, "Deal expired")
            return updated

        expired = await self.reconcile(deal.id, apply)
        logger.info(f"Deal {expired.id} expired as {expired.status.value}")
        await notify_safely(self.notifier, expired.id, expired.participants(), 'deal_expired')
        return Outcome(deal_id=deal.id)
