"""Channel publishing adapters.

``Publisher`` is the interface the post and verification reconcilers use.
``TelegramPublisher`` implements it with the Bot API: posts go out with
sendMessage, live content is read back by forwarding the post into a
private verification chat, and access is the bot's membership status.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from deals.exceptions import Reason

logger = logging.getLogger(__name__)

class PublisherError(Exception):
    """Base exception for publishing errors"""
    def __init__(self, message: str, reason: Reason = Reason.UNKNOWN_ERROR, code: Optional[int] = None):
        self.reason = reason
        self.code = code
        super().__init__(message)

class TelegramBotAPI:
    """Minimal Telegram Bot API client

    Args:
        token: Bot token
        base_url: API root, overridable for a local Bot API server
        timeout: Seconds before a call is abandoned
    """

    def __init__(self, token: str, base_url: str = "https://api.telegram.org", timeout: float = 15.0):
        self.url = f"{base_url.rstrip('/')}/bot{token}"
        self.timeout = timeout
        self.session = requests.Session()

    def call(self, method: str, **params) -> Any:
        """Call a Bot API method and return its result.

        Raises:
            PublisherError: With NetworkError, RateLimitExceeded or the
                            API description for rejected calls
        """
        try:
            response = self.session.post(f"{self.url}/{method}", json=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise PublisherError(f"Bot API {method} failed: {e}", Reason.NETWORK_ERROR) from e

        try:
            body = response.json()
        except ValueError as e:
            raise PublisherError(
                f"Bot API {method} returned invalid JSON (HTTP {response.status_code})",
                Reason.NETWORK_ERROR, response.status_code
            ) from e

        if body.get('ok'):
            return body.get('result')

        code = body.get('error_code', response.status_code)
        description = body.get('description', 'Unknown error')
        if code == 429:
            retry_after = (body.get('parameters') or {}).get('retry_after')
            raise PublisherError(
                f"Bot API {method} rate limited, retry after {retry_after}s",
                Reason.RATE_LIMIT_EXCEEDED, code
            )
        if code and code >= 500:
            raise PublisherError(f"Bot API {method}: {description}", Reason.NETWORK_ERROR, code)
        raise PublisherError(f"Bot API {method}: {description}", Reason.UNKNOWN_ERROR, code)

class Publisher:
    """Publishing interface used by the reconcilers"""

    async def publish(self, destination: int, content: str) -> int:
        """Post content and return the message id."""
        raise NotImplementedError

    async def fetch_live_text(self, destination: int, message_id: int) -> Optional[str]:
        """Return the text currently shown for a post, None if it is gone."""
        raise NotImplementedError

    async def has_access(self, destination: int) -> bool:
        """Check the bot can still administer the destination."""
        raise NotImplementedError

class TelegramPublisher(Publisher):
    """Publisher backed by the Telegram Bot API

    Args:
        api: Bot API client
        verification_chat_id: Private chat the bot forwards posts into to read them back
    """

    ADMIN_STATUSES = ('administrator', 'creator')

    def __init__(self, api: TelegramBotAPI, verification_chat_id: Optional[int] = None):
        self.api = api
        self.verification_chat_id = verification_chat_id
        self._bot_id: Optional[int] = None

    async def _call(self, method: str, **params) -> Any:
        return await asyncio.to_thread(self.api.call, method, **params)

    async def publish(self, destination: int, content: str) -> int:
        message = await self._call('sendMessage', chat_id=destination, text=content)
        logger.info(f"Published message {message['message_id']} to {destination}")
        return message['message_id']

    async def fetch_live_text(self, destination: int, message_id: int) -> Optional[str]:
        if self.verification_chat_id is None:
            raise PublisherError("verification_chat_id is not configured")

        try:
            forwarded: Dict[str, Any] = await self._call(
                'forwardMessage',
                chat_id=self.verification_chat_id,
                from_chat_id=destination,
                message_id=message_id,
                disable_notification=True
            )
        except PublisherError as e:
            if e.code == 400 and 'not found' in str(e).lower():
                logger.info(f"Message {message_id} no longer exists in {destination}")
                return None
            raise

        try:
            return forwarded.get('text') or forwarded.get('caption') or ""
        finally:
            try:
                await self._call('deleteMessage', chat_id=self.verification_chat_id,
                                 message_id=forwarded['message_id'])
            except PublisherError as e:
                logger.warning(f"Could not delete verification copy of {message_id}: {e}")

    async def has_access(self, destination: int) -> bool:
        if self._bot_id is None:
            me = await self._call('getMe')
            self._bot_id = me['id']

        try:
            member = await self._call('getChatMember', chat_id=destination, user_id=self._bot_id)
        except PublisherError as e:
            if e.code in (400, 403):
                logger.info(f"Bot lost access to {destination}: {e}")
                return False
            raise
        return member.get('status') in self.ADMIN_STATUSES

def build_post_link(channel: Dict[str, Any], message_id: int) -> str:
    """Public link to a post, using the channel username when it has one."""
    username = channel.get('username')
    if username:
        return f"https://t.me/{username.lstrip('@')}/{message_id}"
    # Private channels: -100 prefixed ids map to t.me/c/<internal id>
    internal_id = str(channel['telegram_channel_id'])
    if internal_id.startswith('-100'):
        internal_id = internal_id[4:]
    return f"https://t.me/c/{internal_id.lstrip('-')}/{message_id}"

__all__ = ['Publisher', 'TelegramPublisher', 'TelegramBotAPI', 'PublisherError', 'build_post_link']
