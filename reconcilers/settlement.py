"""Escrow settlement: releasing funds to channel owners and refunding advertisers."""
import logging
from datetime import timedelta
from typing import List, Optional

import backoff

from deals import Deal, DealStatus
from deals.exceptions import DealError, PermissionDeniedError, Reason
from ledger import TransactionNotFoundError
from notifications import notify_safely

from .base import Outcome, Reconciler

logger = logging.getLogger(__name__)

class EscrowSettlement:
    """Moves a deal's escrowed price out of escrow inside a locked transaction

    Args:
        store: Deal store
        ledger: Ledger used for the transfer
        confirm_tries: How many times to look for a refund on the ledger
        confirm_interval: Seconds between those lookups
    """

    def __init__(self, store, ledger, confirm_tries: int = 5, confirm_interval: float = 2.0):
        self.store = store
        self.ledger = ledger
        self.confirm_tries = confirm_tries
        self.confirm_interval = confirm_interval

    async def release(self, conn, deal: Deal) -> Deal:
        """Pay the channel owner and move verified to completed."""
        wallet = deal.channel_owner_wallet_address
        if not wallet:
            owner = await self.store.get_user(deal.channel_owner_id, conn=conn)
            wallet = owner.get('wallet_address') if owner else None
        if not deal.escrow_address or not wallet:
            raise DealError(Reason.MISSING_ADDRESSES, "escrow or owner wallet missing", deal.id)

        tx_hash = await self.ledger.submit_transfer(
            deal.escrow_address, wallet, deal.price, f"Deal #{deal.id} payout"
        )
        updated = await self.store.transition(
            conn, deal.id, [DealStatus.VERIFIED], DealStatus.COMPLETED,
            require_null=('release_tx_hash', 'refund_tx_hash'),
            release_tx_hash=tx_hash
        )
        if updated is None:
            # Row is locked, so this means the row changed under a lease we no longer hold
            raise DealError(Reason.CONCURRENT_PROCESSING, f"release {tx_hash} sent but deal moved", deal.id)

        await self.store.append_message(conn, deal.id, None, f"Funds released: {tx_hash}")
        return updated

    async def refund(self, conn, deal: Deal, source: DealStatus, **fields) -> Deal:
        """Return the price to the advertiser and move source to refunded.

        The status only changes once the refund transaction is found on the
        ledger. Until then the deal stays in source and is retried later.
        Extra fields are written together with the status.

        Raises:
            TransactionNotFoundError: If the submitted refund never shows up
        """
        advertiser = await self.store.get_user(deal.advertiser_id, conn=conn)
        wallet = advertiser.get('wallet_address') if advertiser else None
        if not deal.escrow_address or not wallet:
            raise DealError(Reason.MISSING_ADDRESSES, "escrow or advertiser wallet missing", deal.id)

        tx_hash = await self.ledger.submit_transfer(
            deal.escrow_address, wallet, deal.price, f"Deal #{deal.id} refund"
        )
        if not await self.wait_for_transaction(tx_hash, wallet):
            raise TransactionNotFoundError(tx_hash, f"Refund {tx_hash} for deal {deal.id} not found on ledger")

        updated = await self.store.transition(
            conn, deal.id, [source], DealStatus.REFUNDED,
            require_null=('refund_tx_hash', 'release_tx_hash'),
            refund_tx_hash=tx_hash, **fields
        )
        if updated is None:
            raise DealError(Reason.CONCURRENT_PROCESSING, f"refund {tx_hash} sent but deal moved", deal.id)

        await self.store.append_message(conn, deal.id, None, f"Refund sent: {tx_hash}")
        return updated

    async def wait_for_transaction(self, tx_hash: str, address: str) -> bool:
        poll = backoff.on_predicate(
            backoff.constant,
            interval=self.confirm_interval,
            max_tries=self.confirm_tries,
            jitter=None,
            logger=None
        )(self.ledger.transaction_exists)
        return await poll(tx_hash, address)

class AutoReleaseReconciler(Reconciler):
    """Releases escrow for verified deals once the cooling-off window has passed

    Args:
        settlement: Shared escrow settlement routines
        auto_release_hours: Cooling-off after post_verification_until
    """

    name = "auto_release"
    operation = "release_funds"

    def __init__(self, store, locks, settlement: EscrowSettlement, notifier=None,
                 auto_release_hours: int = 168, **kwargs):
        kwargs.setdefault('lock_ttl_ms', 60000)
        super().__init__(store, locks, notifier, **kwargs)
        self.settlement = settlement
        self.cooling_off = timedelta(hours=auto_release_hours)

    async def candidates(self) -> List[Deal]:
        return await self.store.find_auto_release_candidates(self.clock() - self.cooling_off, self.batch_size)

    async def process(self, deal: Deal) -> Outcome:
        released = await self.release_funds(deal.id, enforce_cooling_off=True)
        return Outcome(deal_id=deal.id, tx_hash=released.release_tx_hash)

    async def confirm_publication(self, deal_id: int, advertiser_id: int) -> Deal:
        """Advertiser confirms the post, releasing funds without waiting."""
        return await self.release_funds(deal_id, advertiser_id=advertiser_id)

    async def release_funds(
        self,
        deal_id: int,
        enforce_cooling_off: bool = False,
        advertiser_id: Optional[int] = None
    ) -> Deal:
        async def apply(conn, deal: Deal) -> Deal:
            if advertiser_id is not None and deal.advertiser_id != advertiser_id:
                raise PermissionDeniedError(deal.id, advertiser_id)
            if deal.status == DealStatus.COMPLETED or deal.release_tx_hash:
                raise DealError(Reason.ALREADY_RELEASED, deal_id=deal.id)
            if deal.status != DealStatus.VERIFIED:
                raise DealError(Reason.NO_RELEASE_NEEDED, f"status is {deal.status.value}", deal.id)
            if enforce_cooling_off and (
                deal.post_verification_until is None
                or deal.post_verification_until >= self.clock() - self.cooling_off
            ):
                raise DealError(Reason.NOT_READY, "cooling-off period not over", deal.id)
            return await self.settlement.release(conn, deal)

        released = await self.reconcile(deal_id, apply)
        await notify_safely(
            self.notifier, released.id, released.participants(), 'funds_released',
            {'price': released.price, 'tx_hash': released.release_tx_hash}
        )
        return released

class RefundReconciler(Reconciler):
    """Refunds declined deals to the advertiser

    Deals declined before their payment was confirmed are refunded only once
    a transfer of the full price is found at the escrow address.
    """

    name = "refunds"
    operation = "refund"

    def __init__(self, store, locks, settlement: EscrowSettlement, notifier=None, **kwargs):
        kwargs.setdefault('lock_ttl_ms', 60000)
        super().__init__(store, locks, notifier, **kwargs)
        self.settlement = settlement

    async def candidates(self) -> List[Deal]:
        return await self.store.find_refund_candidates(self.batch_size)

    async def process(self, deal: Deal) -> Outcome:
        refunded = await self.refund_deal(deal.id)
        return Outcome(deal_id=deal.id, tx_hash=refunded.refund_tx_hash)

    async def refund_deal(self, deal_id: int) -> Deal:
        async def apply(conn, deal: Deal) -> Deal:
            if deal.status == DealStatus.REFUNDED or deal.refund_tx_hash:
                raise DealError(Reason.ALREADY_REFUNDED, deal_id=deal.id)
            if deal.status != DealStatus.DECLINED:
                raise DealError(Reason.NO_REFUND_NEEDED, f"status is {deal.status.value}", deal.id)
            if deal.payment_tx_hash:
                return await self.settlement.refund(conn, deal, DealStatus.DECLINED)

            # Declined before payment was confirmed: refund only what actually arrived
            if not deal.escrow_address:
                raise DealError(Reason.NO_REFUND_NEEDED, "no escrow address", deal.id)
            transfer = await self.settlement.ledger.find_inbound_transfer(deal.escrow_address, deal.price)
            if transfer is None:
                raise DealError(Reason.PAYMENT_NOT_RECEIVED, "nothing to refund yet", deal.id)
            return await self.settlement.refund(
                conn, deal, DealStatus.DECLINED, payment_tx_hash=transfer.tx_hash
            )

        refunded = await self.reconcile(deal_id, apply)
        await notify_safely(
            self.notifier, refunded.id, refunded.participants(), 'funds_refunded',
            {'price': refunded.price, 'tx_hash': refunded.refund_tx_hash}
        )
        return refunded
