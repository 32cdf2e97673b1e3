"""Payment confirmation: payment_pending deals whose escrow received the price."""
import logging
from typing import List, Optional, Tuple

from deals import Deal, DealStatus
from deals.exceptions import DealError, InvalidStatusError, Reason
from notifications import notify_safely

from .base import Outcome, Reconciler

logger = logging.getLogger(__name__)

class PaymentReconciler(Reconciler):
    """Confirms escrow payments found on the ledger

    Args:
        ledger: Ledger used to look for the inbound transfer
    """

    name = "payments"
    operation = "confirm_payment"

    def __init__(self, store, locks, ledger, notifier=None, **kwargs):
        super().__init__(store, locks, notifier, **kwargs)
        self.ledger = ledger

    async def candidates(self) -> List[Deal]:
        return await self.store.find_payment_candidates(self.batch_size)

    async def process(self, deal: Deal) -> Outcome:
        if not deal.escrow_address:
            raise DealError(Reason.MISSING_ADDRESSES, "no escrow address", deal.id)

        transfer = await self.ledger.find_inbound_transfer(deal.escrow_address, deal.price)
        if transfer is None:
            return self.skip(deal.id, Reason.PAYMENT_NOT_RECEIVED)

        confirmed, changed = await self._confirm(deal.id, transfer.tx_hash)
        if not changed:
            return self.skip(deal.id, Reason.ALREADY_CONFIRMED, confirmed.payment_tx_hash)

        await notify_safely(
            self.notifier, deal.id, confirmed.participants(), 'payment_confirmed',
            {'price': confirmed.price, 'tx_hash': confirmed.payment_tx_hash}
        )
        return Outcome(deal_id=deal.id, tx_hash=confirmed.payment_tx_hash)

    async def confirm_payment(self, deal_id: int, tx_hash: str) -> str:
        """Record a payment for a deal and return the recorded hash.

        Calling it again for a deal that already has a payment returns the
        hash recorded the first time and changes nothing.
        """
        confirmed, _ = await self._confirm(deal_id, tx_hash)
        return confirmed.payment_tx_hash

    async def _confirm(self, deal_id: int, tx_hash: str) -> Tuple[Deal, bool]:
        async def apply(conn, deal: Deal) -> Tuple[Deal, bool]:
            if deal.payment_tx_hash:
                return deal, False
            if deal.status != DealStatus.PAYMENT_PENDING:
                raise InvalidStatusError(deal.id, deal.status.value, [DealStatus.PAYMENT_PENDING.value])
            if not deal.escrow_address:
                raise DealError(Reason.MISSING_ADDRESSES, "no escrow address", deal.id)

            target = DealStatus.SCHEDULED if deal.scheduled_post_time else DealStatus.PAID
            updated: Optional[Deal] = await self.store.transition(
                conn, deal.id, [DealStatus.PAYMENT_PENDING], target,
                require_null=('payment_tx_hash',),
                payment_tx_hash=tx_hash,
                payment_confirmed_at=self.clock()
            )
            if updated is None:
                raise DealError(Reason.CONCURRENT_PROCESSING, "payment already being confirmed", deal.id)

            await self.store.append_message(conn, deal.id, None, f"Payment confirmed: {tx_hash}")
            return updated, True

        return await self.reconcile(deal_id, apply)
