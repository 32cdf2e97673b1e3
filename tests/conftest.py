"""Shared fixtures: in-memory stand-ins for the store, Redis, ledger and Telegram."""

import asyncio
import itertools
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from redis import exceptions as redis_exceptions

from deals import Deal, DealStatus, DealType, PUBLISHABLE, EXPIRABLE
from deals.store import DealStore
from ledger import Ledger, Transfer, quantize
from locks import DistributedLock
from notifications import Notifier
from publisher import Publisher, PublisherError
from deals.exceptions import Reason

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

class FrozenClock:
    """Clock the tests move by hand."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

class MemoryConnection:
    """Changes staged by one open transaction."""

    def __init__(self):
        self.rows: Dict[int, Dict[str, Any]] = {}
        self.messages: List[Dict[str, Any]] = []
        self.held: List[int] = []

class MemoryDealStore(DealStore):
    """DealStore keeping rows in dicts.

    Row locks are per-deal asyncio locks held until the transaction ends.
    Staged rows become visible to others only on commit.
    """

    def __init__(self, clock: FrozenClock):
        super().__init__(pool=None)
        self.clock = clock
        self.deals: Dict[int, Dict[str, Any]] = {}
        self.messages: List[Dict[str, Any]] = []
        self.users: Dict[int, Dict[str, Any]] = {}
        self.channels: Dict[int, Dict[str, Any]] = {}
        self.row_locks = defaultdict(asyncio.Lock)
        self.commits = 0
        self.rollbacks = 0
        self._deal_ids = itertools.count(1)
        self._message_ids = itertools.count(1)
        self._user_ids = itertools.count(1)
        self._channel_ids = itertools.count(1)

    @asynccontextmanager
    async def transaction(self):
        conn = MemoryConnection()
        try:
            yield conn
        except BaseException:
            self.rollbacks += 1
            raise
        else:
            self.deals.update(conn.rows)
            self.messages.extend(conn.messages)
            self.commits += 1
        finally:
            for deal_id in conn.held:
                self.row_locks[deal_id].release()

    def _read(self, conn: Optional[MemoryConnection], deal_id: int) -> Optional[Dict[str, Any]]:
        if conn is not None and deal_id in conn.rows:
            return conn.rows[deal_id]
        return self.deals.get(deal_id)

    async def lock_deal(self, conn, deal_id: int) -> Optional[Deal]:
        if deal_id not in conn.held:
            await self.row_locks[deal_id].acquire()
            conn.held.append(deal_id)
        return Deal.from_record(self._read(conn, deal_id))

    async def get_deal(self, deal_id: int) -> Optional[Deal]:
        return Deal.from_record(self.deals.get(deal_id))

    async def _conditional_update(self, conn, deal_id, sources, target, require_null, fields):
        row = self._read(conn, deal_id)
        if row is None or row['status'] not in [s.value for s in sources]:
            return None
        if any(row.get(column) is not None for column in require_null):
            return None
        updated = {**row, **fields, 'status': target.value, 'updated_at': self.clock()}
        conn.rows[deal_id] = updated
        return Deal.from_record(updated)

    async def update_fields(self, conn, deal_id, expected, **fields):
        row = self._read(conn, deal_id)
        if row is None or row['status'] not in [DealStatus(s).value for s in expected]:
            return None
        updated = {**row, **fields, 'updated_at': self.clock()}
        conn.rows[deal_id] = updated
        return Deal.from_record(updated)

    async def insert_deal(self, conn, deal_type, channel_id, channel_owner_id, advertiser_id, price,
                          ad_format="post", scheduled_post_time=None, min_publication_duration_days=1,
                          timeout_at=None) -> Deal:
        row = self._new_row(
            deal_type=DealType(deal_type).value, channel_id=channel_id,
            channel_owner_id=channel_owner_id, advertiser_id=advertiser_id, price=price,
            ad_format=ad_format, scheduled_post_time=scheduled_post_time,
            min_publication_duration_days=min_publication_duration_days, timeout_at=timeout_at
        )
        conn.rows[row['id']] = row
        return Deal.from_record(row)

    def _new_row(self, **values) -> Dict[str, Any]:
        row = {field: None for field in Deal.model_fields}
        row.update({
            'id': next(self._deal_ids),
            'ad_format': 'post',
            'status': DealStatus.PENDING.value,
            'min_publication_duration_days': 1,
            'created_at': self.clock(),
            'updated_at': self.clock(),
        })
        row.update(values)
        return row

    async def append_message(self, conn, deal_id, sender_id, text) -> None:
        conn.messages.append({
            'id': next(self._message_ids), 'deal_id': deal_id,
            'sender_id': sender_id, 'message_text': text, 'created_at': self.clock(),
        })

    async def get_messages(self, deal_id: int) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m['deal_id'] == deal_id]

    async def get_brief(self, conn, deal_id: int) -> Optional[str]:
        pending = conn.messages if conn is not None else []
        for message in self.messages + pending:
            if message['deal_id'] == deal_id:
                return message['message_text']
        return None

    async def get_user(self, user_id: int, conn=None):
        return self.users.get(user_id)

    async def get_channel(self, channel_id: int, conn=None):
        return self.channels.get(channel_id)

    def _select(self, predicate, key, limit) -> List[Deal]:
        rows = sorted((r for r in self.deals.values() if predicate(r)), key=key)
        return [Deal.from_record(r) for r in rows[:limit]]

    async def find_payment_candidates(self, limit):
        return self._select(
            lambda r: r['status'] == 'payment_pending' and r['escrow_address'] and not r['payment_tx_hash'],
            lambda r: r['created_at'], limit
        )

    async def find_due_posts(self, now, limit):
        return self._select(
            lambda r: r['status'] in [s.value for s in PUBLISHABLE]
            and r['scheduled_post_time'] is not None and r['scheduled_post_time'] <= now
            and r['post_message_id'] is None,
            lambda r: r['scheduled_post_time'], limit
        )

    async def find_verification_candidates(self, now, limit):
        return self._select(
            lambda r: r['status'] == 'posted' and r['post_verification_until'] < now,
            lambda r: r['post_verification_until'], limit
        )

    async def find_auto_release_candidates(self, cutoff, limit):
        return self._select(
            lambda r: r['status'] == 'verified' and r['post_verification_until'] < cutoff,
            lambda r: r['post_verification_until'], limit
        )

    async def find_refund_candidates(self, limit):
        return self._select(
            lambda r: r['status'] == 'declined' and r['escrow_address'] and r['refund_tx_hash'] is None,
            lambda r: (r['payment_tx_hash'] is None, r['updated_at']), limit
        )

    async def find_expired(self, now, limit):
        return self._select(
            lambda r: r['status'] in [s.value for s in EXPIRABLE]
            and r['timeout_at'] is not None and r['timeout_at'] < now
            and r['payment_tx_hash'] is None,
            lambda r: r['timeout_at'], limit
        )

    # Seeding helpers

    def add_user(self, wallet_address: Optional[str] = None, telegram_id: Optional[int] = None) -> int:
        user_id = next(self._user_ids)
        self.users[user_id] = {'id': user_id, 'telegram_id': telegram_id, 'wallet_address': wallet_address}
        return user_id

    def add_channel(self, owner_id: int, telegram_channel_id: int = -1001234567890,
                    username: Optional[str] = "adchannel") -> int:
        channel_id = next(self._channel_ids)
        self.channels[channel_id] = {
            'id': channel_id, 'owner_id': owner_id,
            'telegram_channel_id': telegram_channel_id, 'username': username,
        }
        return channel_id

    def add_deal(self, brief: Optional[str] = "Try our app today", **values) -> int:
        status = values.get('status', DealStatus.PENDING)
        values['status'] = DealStatus(status).value
        values.setdefault('deal_type', DealType.LISTING.value)
        values.setdefault('price', Decimal('10.5'))
        row = self._new_row(**values)
        self.deals[row['id']] = row
        if brief is not None:
            self.messages.append({
                'id': next(self._message_ids), 'deal_id': row['id'],
                'sender_id': row['advertiser_id'], 'message_text': brief, 'created_at': self.clock(),
            })
        return row['id']

    def status_of(self, deal_id: int) -> DealStatus:
        return DealStatus(self.deals[deal_id]['status'])

class FakeRedis:
    """Just enough of redis.asyncio.Redis for the lock service."""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.expiry: Dict[str, float] = {}
        self.down = False

    def _check(self):
        if self.down:
            raise redis_exceptions.ConnectionError("Error connecting to redis")

    def _get(self, key):
        expires = self.expiry.get(key)
        if expires is not None and expires <= time.monotonic():
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return self.data.get(key)

    async def set(self, key, value, nx=False, px=None):
        self._check()
        if nx and self._get(key) is not None:
            return None
        self.data[key] = value
        if px:
            self.expiry[key] = time.monotonic() + px / 1000
        return True

    async def eval(self, script, numkeys, *args):
        self._check()
        key, token = args[0], args[numkeys]
        if self._get(key) != token:
            return 0
        if 'PEXPIRE' in script:
            self.expiry[key] = time.monotonic() + int(args[numkeys + 1]) / 1000
            return 1
        self.data.pop(key, None)
        self.expiry.pop(key, None)
        return 1

    async def exists(self, key):
        self._check()
        return 1 if self._get(key) is not None else 0

    async def ping(self):
        self._check()
        return True

class FakeLedger(Ledger):
    """Ledger that records every transfer it is asked to make."""

    def __init__(self, delay: float = 0.01):
        self.delay = delay
        self.inbound: Dict[str, Transfer] = {}
        self.transfers: List[Dict[str, Any]] = []
        self.visible = True
        self.fail_with: Optional[Exception] = None
        self._addresses = itertools.count(1)
        self._tx = itertools.count(1)

    def pay(self, address: str, amount, tx_hash: str = "inbound-tx-1") -> None:
        self.inbound[address] = Transfer(tx_hash=tx_hash, address=address, amount=quantize(amount), confirmations=3)

    async def generate_escrow_address(self, deal_id):
        return f"ESCROW{deal_id}x{next(self._addresses)}"

    async def find_inbound_transfer(self, address, amount):
        if self.fail_with:
            raise self.fail_with
        transfer = self.inbound.get(address)
        if transfer and transfer.amount == quantize(amount):
            return transfer
        return None

    async def submit_transfer(self, from_address, to_address, amount, memo):
        if self.fail_with:
            raise self.fail_with
        await asyncio.sleep(self.delay)
        tx_hash = f"out-tx-{next(self._tx)}"
        self.transfers.append({'tx_hash': tx_hash, 'from': from_address, 'to': to_address,
                               'amount': amount, 'memo': memo})
        return tx_hash

    async def transaction_exists(self, tx_hash, address):
        return self.visible and any(t['tx_hash'] == tx_hash for t in self.transfers)

class FakePublisher(Publisher):
    def __init__(self):
        self.posts: Dict[tuple, str] = {}
        self.access = True
        self.published: List[tuple] = []
        self._ids = itertools.count(100)

    async def publish(self, destination, content):
        await asyncio.sleep(0)
        message_id = next(self._ids)
        self.posts[(destination, message_id)] = content
        self.published.append((destination, message_id, content))
        return message_id

    async def fetch_live_text(self, destination, message_id):
        return self.posts.get((destination, message_id))

    async def has_access(self, destination):
        return self.access

class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: List[tuple] = []
        self.fail = False

    async def notify(self, deal_id, recipient_id, event, payload):
        if self.fail:
            raise PublisherError("chat not found", Reason.UNKNOWN_ERROR, 400)
        self.sent.append((deal_id, recipient_id, event))

    def events(self, deal_id: int) -> List[str]:
        return [event for d, _, event in self.sent if d == deal_id]

@pytest.fixture
def clock():
    return FrozenClock()

@pytest.fixture
def store(clock):
    return MemoryDealStore(clock)

@pytest.fixture
def redis():
    return FakeRedis()

@pytest.fixture
def locks(redis):
    return DistributedLock(redis, default_ttl_ms=30000)

@pytest.fixture
def ledger():
    return FakeLedger()

@pytest.fixture
def publisher():
    return FakePublisher()

@pytest.fixture
def notifier():
    return RecordingNotifier()

@pytest.fixture
def parties(store):
    """Channel owner, advertiser and the owner's channel."""
    owner = store.add_user(wallet_address="OWNERWALLET", telegram_id=111)
    advertiser = store.add_user(wallet_address="ADVWALLET", telegram_id=222)
    channel = store.add_channel(owner)
    return {'owner': owner, 'advertiser': advertiser, 'channel': channel}

@pytest.fixture
def make_deal(store, parties):
    """Insert a deal between the standard parties."""
    def _make(**values) -> int:
        values.setdefault('channel_id', parties['channel'])
        values.setdefault('channel_owner_id', parties['owner'])
        values.setdefault('advertiser_id', parties['advertiser'])
        return store.add_deal(**values)
    return _make
