"""Post publication: funded deals whose scheduled time has come."""
import logging
from datetime import timedelta
from typing import List, Tuple

from deals import Deal, DealStatus, PUBLISHABLE
from deals.exceptions import DealError, InvalidStatusError, Reason
from notifications import notify_safely
from publisher import build_post_link

from .base import Outcome, Reconciler

logger = logging.getLogger(__name__)

class PostReconciler(Reconciler):
    """Publishes the deal brief into the channel

    Args:
        publisher: Channel publisher
    """

    name = "posts"
    operation = "publish_post"

    def __init__(self, store, locks, publisher, notifier=None, **kwargs):
        super().__init__(store, locks, notifier, **kwargs)
        self.publisher = publisher

    async def candidates(self) -> List[Deal]:
        return await self.store.find_due_posts(self.clock(), self.batch_size)

    async def process(self, deal: Deal) -> Outcome:
        posted, link, changed = await self._publish(deal.id)
        if not changed:
            return self.skip(deal.id, Reason.ALREADY_PUBLISHED)

        await notify_safely(
            self.notifier, deal.id, posted.participants(), 'post_published', {'post_link': link}
        )
        return Outcome(deal_id=deal.id, detail=link)

    async def publish_post(self, deal_id: int) -> str:
        """Publish a deal's brief and return the post link.

        A deal that is already posted returns its existing link.
        """
        _, link, _ = await self._publish(deal_id)
        return link

    async def _publish(self, deal_id: int) -> Tuple[Deal, str, bool]:
        async def apply(conn, deal: Deal) -> Tuple[Deal, str, bool]:
            channel = await self.store.require_channel(conn, deal)

            if deal.status == DealStatus.POSTED and deal.post_message_id:
                return deal, build_post_link(channel, deal.post_message_id), False
            if deal.status not in PUBLISHABLE:
                raise InvalidStatusError(deal.id, deal.status.value, [s.value for s in PUBLISHABLE])
            if deal.post_message_id:
                raise DealError(Reason.ALREADY_PUBLISHED, deal_id=deal.id)
            if deal.scheduled_post_time and deal.scheduled_post_time > self.clock():
                raise DealError(Reason.NOT_READY, "scheduled time not reached", deal.id)

            brief = await self.store.get_brief(conn, deal.id)
            if not brief:
                raise DealError(Reason.NO_BRIEF_FOUND, "deal has no brief", deal.id)

            message_id = await self.publisher.publish(channel['telegram_channel_id'], brief)
            posted_at = self.clock()
            updated = await self.store.transition(
                conn, deal.id, PUBLISHABLE, DealStatus.POSTED,
                require_null=('post_message_id',),
                actual_post_time=posted_at,
                post_message_id=message_id,
                post_verification_until=posted_at + timedelta(days=deal.min_publication_duration_days)
            )
            if updated is None:
                raise DealError(Reason.CONCURRENT_PROCESSING, f"message {message_id} sent but deal moved", deal.id)

            link = build_post_link(channel, message_id)
            await self.store.append_message(conn, deal.id, None, f"Post published: {link}")
            return updated, link, True

        return await self.reconcile(deal_id, apply)
