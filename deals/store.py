"""PostgreSQL backed deal store.

Reads outside a transaction are candidate scans only; every decision is
taken on a row returned by ``lock_deal`` inside ``transaction()``.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

from database import get_pool

from . import Deal, DealStatus, DealType, legal_sources, PUBLISHABLE, EXPIRABLE
from .exceptions import DealError, Reason

logger = logging.getLogger(__name__)

# Columns a transition may write besides status
UPDATABLE_COLUMNS = frozenset({
    'escrow_address', 'channel_owner_wallet_address', 'payment_tx_hash',
    'payment_confirmed_at', 'scheduled_post_time', 'actual_post_time',
    'post_message_id', 'post_verification_until', 'refund_tx_hash',
    'release_tx_hash', 'timeout_at',
})

class DealStore:
    """Deal persistence and conditional status updates."""

    def __init__(self, pool=None):
        self.pool = pool

    async def ensure_pool(self):
        if self.pool is None:
            self.pool = await get_pool()
        return self.pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        """Yield a connection with an open transaction.

        Commits when the block exits normally and rolls back on any exception.
        """
        pool = await self.ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def lock_deal(self, conn, deal_id: int) -> Optional[Deal]:
        """Take the row lock on a deal and return its current state."""
        record = await conn.fetchrow('SELECT * FROM deals WHERE id = $1 FOR UPDATE', deal_id)
        return Deal.from_record(record)

    async def get_deal(self, deal_id: int) -> Optional[Deal]:
        pool = await self.ensure_pool()
        async with pool.acquire() as conn:
            record = await conn.fetchrow('SELECT * FROM deals WHERE id = $1', deal_id)
        return Deal.from_record(record)

    async def transition(
        self,
        conn,
        deal_id: int,
        expected: Iterable,
        target: DealStatus,
        require_null: Sequence[str] = (),
        **fields
    ) -> Optional[Deal]:
        """Move a deal to target if it is still in one of the expected statuses.

        Expected statuses without an edge to target are dropped first, so an
        illegal move runs no update at all. Returns the updated deal, or None
        when no row matched. A None result is a normal outcome: another worker
        got there first or the deal moved on.

        Args:
            conn: Connection inside the caller's transaction
            deal_id: Deal to move
            expected: Statuses the caller believes the deal is in
            target: Status to move to
            require_null: Columns that must still be NULL for the update to apply
            **fields: Extra columns to write alongside the status
        """
        expected = list(expected)
        unknown = (set(fields) | set(require_null)) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update deal columns: {', '.join(sorted(unknown))}")

        sources = legal_sources(expected, target)
        if not sources:
            names = [DealStatus(s).value for s in expected]
            logger.debug(f"Deal {deal_id}: no legal move from {names} to {target.value}")
            return None

        deal = await self._conditional_update(conn, deal_id, sources, target, tuple(require_null), fields)
        if deal is None:
            logger.debug(f"Deal {deal_id}: conditional update to {target.value} matched no row")
        else:
            logger.info(f"Deal {deal_id} moved to {target.value}")
        return deal

    async def _conditional_update(
        self,
        conn,
        deal_id: int,
        sources: List[DealStatus],
        target: DealStatus,
        require_null: tuple,
        fields: Dict[str, Any]
    ) -> Optional[Deal]:
        assignments = ['status = $3']
        args: List[Any] = [deal_id, [s.value for s in sources], target.value]
        for column, value in fields.items():
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")

        conditions = ['id = $1', 'status = ANY($2::text[])']
        conditions.extend(f"{column} IS NULL" for column in require_null)

        record = await conn.fetchrow(
            f"UPDATE deals SET {', '.join(assignments)} "
            f"WHERE {' AND '.join(conditions)} RETURNING *",
            *args
        )
        return Deal.from_record(record)

    async def update_fields(self, conn, deal_id: int, expected: Iterable, **fields) -> Optional[Deal]:
        """Write columns on a deal without moving its status."""
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown or not fields:
            raise ValueError(f"Cannot update deal columns: {', '.join(sorted(unknown)) or '(none)'}")

        args: List[Any] = [deal_id, [DealStatus(s).value for s in expected]]
        assignments = []
        for column, value in fields.items():
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")

        record = await conn.fetchrow(
            f"UPDATE deals SET {', '.join(assignments)} "
            "WHERE id = $1 AND status = ANY($2::text[]) RETURNING *",
            *args
        )
        return Deal.from_record(record)

    async def insert_deal(
        self,
        conn,
        deal_type: DealType,
        channel_id: int,
        channel_owner_id: int,
        advertiser_id: int,
        price: Decimal,
        ad_format: str = "post",
        scheduled_post_time: Optional[datetime] = None,
        min_publication_duration_days: int = 1,
        timeout_at: Optional[datetime] = None
    ) -> Deal:
        record = await conn.fetchrow(
            '''
            INSERT INTO deals (
                deal_type, channel_id, channel_owner_id, advertiser_id, price,
                ad_format, scheduled_post_time, min_publication_duration_days,
                timeout_at, status
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, 'pending')
            RETURNING *
            ''',
            DealType(deal_type).value, channel_id, channel_owner_id, advertiser_id,
            price, ad_format, scheduled_post_time, min_publication_duration_days, timeout_at
        )
        return Deal.from_record(record)

    async def append_message(self, conn, deal_id: int, sender_id: Optional[int], text: str) -> None:
        await conn.execute(
            'INSERT INTO deal_messages (deal_id, sender_id, message_text) VALUES ($1, $2, $3)',
            deal_id, sender_id, text
        )

    async def get_messages(self, deal_id: int) -> List[Dict[str, Any]]:
        pool = await self.ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                'SELECT * FROM deal_messages WHERE deal_id = $1 ORDER BY created_at, id',
                deal_id
            )
        return [dict(row) for row in rows]

    async def get_brief(self, conn, deal_id: int) -> Optional[str]:
        """Return the first message of a deal, which holds the ad content."""
        return await conn.fetchval(
            '''
            SELECT message_text FROM deal_messages
            WHERE deal_id = $1
            ORDER BY created_at, id
            LIMIT 1
            ''',
            deal_id
        )

    async def get_user(self, user_id: int, conn=None) -> Optional[Dict[str, Any]]:
        return await self._fetch_one('SELECT * FROM users WHERE id = $1', user_id, conn=conn)

    async def get_channel(self, channel_id: int, conn=None) -> Optional[Dict[str, Any]]:
        return await self._fetch_one('SELECT * FROM channels WHERE id = $1', channel_id, conn=conn)

    async def _fetch_one(self, query: str, *args, conn=None) -> Optional[Dict[str, Any]]:
        if conn is not None:
            record = await conn.fetchrow(query, *args)
        else:
            pool = await self.ensure_pool()
            async with pool.acquire() as c:
                record = await c.fetchrow(query, *args)
        return dict(record) if record else None

    async def require_channel(self, conn, deal: Deal) -> Dict[str, Any]:
        channel = await self.get_channel(deal.channel_id, conn=conn)
        if channel is None:
            raise DealError(Reason.MISSING_ADDRESSES, "channel not found", deal.id)
        return channel

    async def _candidates(self, query: str, *args) -> List[Deal]:
        pool = await self.ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [Deal.from_record(row) for row in rows]

    async def find_payment_candidates(self, limit: int) -> List[Deal]:
        return await self._candidates(
            '''
            SELECT * FROM deals
            WHERE status = 'payment_pending'
            AND escrow_address IS NOT NULL
            AND payment_tx_hash IS NULL
            ORDER BY created_at ASC
            LIMIT $1
            ''',
            limit
        )

    async def find_due_posts(self, now: datetime, limit: int) -> List[Deal]:
        return await self._candidates(
            '''
            SELECT * FROM deals
            WHERE status = ANY($1::text[])
            AND scheduled_post_time <= $2
            AND post_message_id IS NULL
            ORDER BY scheduled_post_time ASC
            LIMIT $3
            ''',
            [s.value for s in PUBLISHABLE], now, limit
        )

    async def find_verification_candidates(self, now: datetime, limit: int) -> List[Deal]:
        return await self._candidates(
            '''
            SELECT * FROM deals
            WHERE status = 'posted'
            AND post_verification_until < $1
            ORDER BY post_verification_until ASC
            LIMIT $2
            ''',
            now, limit
        )

    async def find_auto_release_candidates(self, cutoff: datetime, limit: int) -> List[Deal]:
        """Verified deals whose verification window closed before cutoff."""
        return await self._candidates(
            '''
            SELECT * FROM deals
            WHERE status = 'verified'
            AND post_verification_until < $1
            ORDER BY post_verification_until ASC
            LIMIT $2
            ''',
            cutoff, limit
        )

    async def find_refund_candidates(self, limit: int) -> List[Deal]:
        return await self._candidates(
            '''
            SELECT * FROM deals
            WHERE status = 'declined'
            AND escrow_address IS NOT NULL
            AND refund_tx_hash IS NULL
            ORDER BY payment_tx_hash IS NULL, updated_at ASC
            LIMIT $1
            ''',
            limit
        )

    async def find_expired(self, now: datetime, limit: int) -> List[Deal]:
        return await self._candidates(
            '''
            SELECT * FROM deals
            WHERE status = ANY($1::text[])
            AND timeout_at < $2
            AND payment_tx_hash IS NULL
            ORDER BY timeout_at ASC
            LIMIT $3
            ''',
            [s.value for s in EXPIRABLE], now, limit
        )
