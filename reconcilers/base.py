"""Shared reconciliation loop.

Each reconciler scans for candidates without locks, then settles every
candidate through ``reconcile``:

1. take the distributed lock for ``(deal id, operation)``
2. open a transaction and lock the deal row
3. hand the locked row to the operation, which re-validates it, performs
   its external call and writes a conditional update plus an audit message
4. commit, then release the lock

Notifications go out after ``reconcile`` returns, outside the transaction.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import BaseModel

from deals import Deal
from deals.exceptions import (
    Reason, BENIGN, DealError, DealNotFoundError, classify
)
from locks import DistributedLock, LockAcquireError

logger = logging.getLogger(__name__)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Outcome(BaseModel):
    """Result of settling one candidate"""
    deal_id: int
    reason: Optional[Reason] = None
    tx_hash: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    @property
    def benign(self) -> bool:
        return self.reason in BENIGN

class Reconciler:
    """Base class for the periodic settlement loops

    Args:
        store: Deal store
        locks: Distributed lock service
        notifier: Best-effort notifier, optional
        batch_size: Most candidates handled per run
        lock_ttl_ms: Lease length for this reconciler's operation
        clock: Callable returning the current aware datetime
    """

    name = "reconciler"
    operation = "reconcile"

    def __init__(
        self,
        store,
        locks: DistributedLock,
        notifier=None,
        batch_size: int = 100,
        lock_ttl_ms: int = 30000,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.locks = locks
        self.notifier = notifier
        self.batch_size = batch_size
        self.lock_ttl_ms = lock_ttl_ms
        self.clock = clock
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def candidates(self) -> List[Deal]:
        raise NotImplementedError

    async def process(self, deal: Deal) -> Outcome:
        """Settle one candidate."""
        raise NotImplementedError

    async def run_once(self) -> List[Outcome]:
        """Scan for candidates and settle each of them.

        A run that starts while the previous one is still going is skipped.
        One candidate failing never stops the rest of the batch.
        """
        if self._running:
            logger.debug(f"{self.name}: previous run still in progress, skipping")
            return []

        self._running = True
        try:
            try:
                deals = await self.candidates()
            except Exception as e:
                logger.error(f"{self.name}: candidate scan failed: {e}")
                return []

            if deals:
                logger.info(f"{self.name}: found {len(deals)} candidate(s)")

            outcomes = [await self._process_safely(deal) for deal in deals]

            settled = sum(1 for o in outcomes if o.ok)
            failed = sum(1 for o in outcomes if not o.ok and not o.benign)
            if outcomes:
                logger.info(
                    f"{self.name}: {settled} settled, {failed} failed, "
                    f"{len(outcomes) - settled - failed} skipped"
                )
            return outcomes
        finally:
            self._running = False

    async def _process_safely(self, deal: Deal) -> Outcome:
        try:
            outcome = await self.process(deal)
        except Exception as e:
            outcome = Outcome(
                deal_id=deal.id,
                reason=classify(e),
                tx_hash=getattr(e, 'tx_hash', None),
                detail=str(e)
            )
        self.log_outcome(outcome)
        return outcome

    def log_outcome(self, outcome: Outcome) -> None:
        if outcome.ok:
            logger.info(f"{self.name}: deal {outcome.deal_id} settled" +
                        (f" (tx {outcome.tx_hash})" if outcome.tx_hash else ""))
        elif outcome.benign:
            logger.debug(f"{self.name}: deal {outcome.deal_id} skipped: {outcome.reason.value}")
        else:
            logger.error(
                f"{self.name}: deal {outcome.deal_id} failed "
                f"[{outcome.reason.value}]: {outcome.detail}"
            )

    def skip(self, deal_id: int, reason: Reason, tx_hash: Optional[str] = None) -> Outcome:
        return Outcome(deal_id=deal_id, reason=reason, tx_hash=tx_hash)

    async def reconcile(
        self,
        deal_id: int,
        fn: Callable[[Any, Deal], Awaitable[Any]],
        ttl_ms: Optional[int] = None,
        operation: Optional[str] = None
    ) -> Any:
        """Run fn(conn, deal) under the distributed lock and the row lock.

        Raises:
            DealError: ConcurrentProcessing when the lock is held elsewhere,
                       DealNotFound when the row is gone
        """
        key = DistributedLock.key(deal_id, operation or self.operation)

        async def locked():
            async with self.store.transaction() as conn:
                deal = await self.store.lock_deal(conn, deal_id)
                if deal is None:
                    raise DealNotFoundError(deal_id)
                return await fn(conn, deal)

        try:
            return await self.locks.with_lock(key, locked, ttl_ms or self.lock_ttl_ms)
        except LockAcquireError as e:
            raise DealError(Reason.CONCURRENT_PROCESSING, str(e), deal_id) from e
