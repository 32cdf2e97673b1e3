"""Deal event notifications.

Notifications are best effort. They are sent after the deal change has
committed, and a failure to deliver one is logged and dropped.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from publisher import TelegramBotAPI, PublisherError

logger = logging.getLogger(__name__)

TEMPLATES = {
    'deal_accepted': (
        "Deal #{deal_id} accepted.\n"
        "Send exactly {price} to the escrow address:\n{escrow_address}"
    ),
    'deal_declined': "Deal #{deal_id} was declined.",
    'deal_cancelled': "Deal #{deal_id} was cancelled.",
    'deal_expired': "Deal #{deal_id} expired before payment was confirmed. Anything sent to its escrow will be refunded.",
    'payment_confirmed': (
        "Payment of {price} for deal #{deal_id} is confirmed.\n"
        "Transaction: {tx_hash}"
    ),
    'post_published': "The ad for deal #{deal_id} is live: {post_link}",
    'post_verified': "The ad for deal #{deal_id} passed verification.",
    'verification_failed': (
        "The ad for deal #{deal_id} failed verification ({detail}).\n"
        "The advertiser has been refunded."
    ),
    'funds_released': (
        "Escrow for deal #{deal_id} released: {price} sent to the channel owner.\n"
        "Transaction: {tx_hash}"
    ),
    'funds_refunded': (
        "Escrow for deal #{deal_id} refunded: {price} returned to the advertiser.\n"
        "Transaction: {tx_hash}"
    ),
}

def render(event: str, payload: Dict[str, Any]) -> str:
    template = TEMPLATES.get(event)
    if template is None:
        return f"Deal #{payload.get('deal_id')}: {event}"
    try:
        return template.format(**payload)
    except KeyError as e:
        logger.warning(f"Template {event} missing field {e}")
        return f"Deal #{payload.get('deal_id')}: {event}"

class Notifier:
    """Notification interface"""

    async def notify(self, deal_id: int, recipient_id: int, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

class LogNotifier(Notifier):
    """Notifier that only logs, used when no bot token is configured."""

    async def notify(self, deal_id: int, recipient_id: int, event: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Notify user {recipient_id} about deal {deal_id}: {render(event, {'deal_id': deal_id, **payload})}")

class TelegramNotifier(Notifier):
    """Sends rendered templates to the recipient's Telegram chat

    Args:
        api: Bot API client
        store: Deal store used to look up the recipient's telegram_id
    """

    def __init__(self, api: TelegramBotAPI, store):
        self.api = api
        self.store = store

    async def notify(self, deal_id: int, recipient_id: int, event: str, payload: Dict[str, Any]) -> None:
        user = await self.store.get_user(recipient_id)
        if not user or not user.get('telegram_id'):
            logger.debug(f"User {recipient_id} has no telegram_id, skipping {event}")
            return
        text = render(event, {'deal_id': deal_id, **payload})
        await asyncio.to_thread(self.api.call, 'sendMessage', chat_id=user['telegram_id'], text=text)

async def notify_safely(
    notifier: Optional[Notifier],
    deal_id: int,
    recipients,
    event: str,
    payload: Optional[Dict[str, Any]] = None
) -> None:
    """Send a notification to each recipient, logging and dropping failures."""
    if notifier is None:
        return
    for recipient_id in recipients:
        try:
            await notifier.notify(deal_id, recipient_id, event, payload or {})
        except (PublisherError, OSError) as e:
            logger.warning(f"Failed to notify user {recipient_id} about {event} for deal {deal_id}: {e}")
        except Exception as e:
            logger.warning(f"Unexpected error notifying user {recipient_id} about {event}: {e}")

__all__ = ['Notifier', 'LogNotifier', 'TelegramNotifier', 'notify_safely', 'render', 'TEMPLATES']
