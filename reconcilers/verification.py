"""Content verification of posted deals once their minimum duration has passed."""
import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from deals import Deal, DealStatus
from deals.exceptions import DealError, Reason
from notifications import notify_safely

from .base import Outcome, Reconciler
from .settlement import EscrowSettlement

logger = logging.getLogger(__name__)

def normalize(text: Optional[str]) -> str:
    """Collapse runs of whitespace and trim."""
    return " ".join((text or "").split())

def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    dp = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        prev = dp[0]
        dp[0] = i
        for j, cb in enumerate(b, 1):
            cur = dp[j]
            cost = 0 if ca == cb else 1
            dp[j] = min(dp[j] + 1, dp[j - 1] + 1, prev + cost)
            prev = cur
    return dp[-1]

def content_difference(expected: Optional[str], actual: Optional[str]) -> float:
    """Edit distance between two texts as a percentage of the longer one.

    Identical texts give 0.0 and equal-length texts with nothing in common
    give 100.0.
    """
    a, b = normalize(expected), normalize(actual)
    longest = max(len(a), len(b))
    if longest == 0:
        return 0.0
    return levenshtein(a, b) * 100 / longest

class VerificationReconciler(Reconciler):
    """Verifies posted ads stayed up unchanged, refunding the advertiser when not

    Args:
        publisher: Channel publisher used to read the live post
        settlement: Shared escrow settlement routines
        threshold: Largest content difference in percent that still passes
    """

    name = "verification"
    operation = "verify_post"

    def __init__(self, store, locks, publisher, settlement: EscrowSettlement,
                 notifier=None, threshold: float = 10.0, **kwargs):
        kwargs.setdefault('lock_ttl_ms', 60000)
        super().__init__(store, locks, notifier, **kwargs)
        self.publisher = publisher
        self.settlement = settlement
        self.threshold = threshold

    async def candidates(self) -> List[Deal]:
        return await self.store.find_verification_candidates(self.clock(), self.batch_size)

    async def process(self, deal: Deal) -> Outcome:
        verified, failure = await self.verify_post(deal.id)
        if failure is None:
            await notify_safely(self.notifier, deal.id, verified.participants(), 'post_verified')
            return Outcome(deal_id=deal.id)

        await notify_safely(
            self.notifier, deal.id, verified.participants(), 'verification_failed', {'detail': failure}
        )
        return Outcome(deal_id=deal.id, tx_hash=verified.refund_tx_hash, detail=failure)

    async def verify_post(self, deal_id: int) -> Tuple[Deal, Optional[str]]:
        """Check a posted deal and settle the check's result.

        Returns:
            The updated deal and None when verified, or the failure detail
            when the post was refunded
        """
        async def apply(conn, deal: Deal) -> Tuple[Deal, Optional[str]]:
            if deal.status != DealStatus.POSTED:
                raise DealError(Reason.CONCURRENT_PROCESSING, f"status is {deal.status.value}", deal.id)

            now = self.clock()
            if deal.post_verification_until and deal.post_verification_until > now:
                raise DealError(Reason.NOT_READY, "verification window still open", deal.id)
            if deal.actual_post_time and \
                    now - deal.actual_post_time < timedelta(days=deal.min_publication_duration_days):
                raise DealError(Reason.NOT_READY, "minimum publication duration not met", deal.id)

            failure = await self._check(conn, deal)
            if failure is None:
                updated = await self.store.transition(conn, deal.id, [DealStatus.POSTED], DealStatus.VERIFIED)
                if updated is None:
                    raise DealError(Reason.CONCURRENT_PROCESSING, "deal moved during verification", deal.id)
                await self.store.append_message(conn, deal.id, None, "Post verified")
                return updated, None

            logger.warning(f"Deal {deal.id} failed verification: {failure}")
            await self.store.append_message(conn, deal.id, None, f"Verification failed: {failure}")
            refunded = await self.settlement.refund(conn, deal, DealStatus.POSTED)
            return refunded, failure

        return await self.reconcile(deal_id, apply)

    async def _check(self, conn, deal: Deal) -> Optional[str]:
        """Return why the post fails verification, None if it passes."""
        channel = await self.store.require_channel(conn, deal)
        destination = channel['telegram_channel_id']

        if not await self.publisher.has_access(destination):
            return "bot no longer administers the channel"

        live = await self.publisher.fetch_live_text(destination, deal.post_message_id)
        if live is None:
            return "post was deleted"

        brief = await self.store.get_brief(conn, deal.id)
        if brief is None:
            raise DealError(Reason.NO_BRIEF_FOUND, "deal has no brief", deal.id)

        difference = content_difference(brief, live)
        if difference > self.threshold:
            return f"content differs by {difference:.1f}%"
        return None
