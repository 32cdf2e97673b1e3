"""Tests for releasing and refunding escrow, including racing workers."""

import asyncio
from datetime import timedelta

import pytest

from deals import DealStatus
from deals.exceptions import DealError, PermissionDeniedError, Reason
from locks import DistributedLock
from reconcilers import AutoReleaseReconciler, EscrowSettlement, RefundReconciler

S = DealStatus

@pytest.fixture
def settlement(store, ledger):
    return EscrowSettlement(store, ledger, confirm_tries=2, confirm_interval=0)

@pytest.fixture
def releaser(store, locks, settlement, notifier, clock):
    return AutoReleaseReconciler(store, locks, settlement, notifier, auto_release_hours=168, clock=clock)

@pytest.fixture
def refunder(store, locks, settlement, notifier, clock):
    return RefundReconciler(store, locks, settlement, notifier, clock=clock)

@pytest.fixture
def verified_deal(make_deal, clock):
    def _make(**values):
        values.setdefault('post_verification_until', clock() - timedelta(hours=169))
        return make_deal(status=S.VERIFIED, escrow_address="E1", payment_tx_hash="pay-1",
                         post_message_id=100, **values)
    return _make

@pytest.mark.asyncio
async def test_auto_release_pays_channel_owner(releaser, store, ledger, verified_deal, notifier):
    deal_id = verified_deal()

    [outcome] = await releaser.run_once()

    assert outcome.ok and outcome.tx_hash == "out-tx-1"
    row = store.deals[deal_id]
    assert row['status'] == 'completed'
    assert row['release_tx_hash'] == "out-tx-1"
    assert row['refund_tx_hash'] is None
    assert ledger.transfers == [{
        'tx_hash': "out-tx-1", 'from': "E1", 'to': "OWNERWALLET",
        'amount': row['price'], 'memo': f"Deal #{deal_id} payout",
    }]
    messages = await store.get_messages(deal_id)
    assert messages[-1]['message_text'] == "Funds released: out-tx-1"
    assert notifier.events(deal_id) == ['funds_released', 'funds_released']

@pytest.mark.asyncio
async def test_release_prefers_recorded_owner_wallet(releaser, store, ledger, verified_deal):
    verified_deal(channel_owner_wallet_address="RECORDEDWALLET")

    await releaser.run_once()

    assert ledger.transfers[0]['to'] == "RECORDEDWALLET"

@pytest.mark.asyncio
async def test_cooling_off_holds_release(releaser, store, ledger, verified_deal, clock):
    deal_id = verified_deal(post_verification_until=clock() - timedelta(hours=10))

    assert await releaser.run_once() == []
    with pytest.raises(DealError) as exc:
        await releaser.release_funds(deal_id, enforce_cooling_off=True)

    assert exc.value.reason is Reason.NOT_READY
    assert ledger.transfers == []

    clock.advance(hours=159)
    [outcome] = await releaser.run_once()
    assert outcome.ok

@pytest.mark.asyncio
async def test_advertiser_confirmation_skips_cooling_off(releaser, store, parties, verified_deal, clock):
    deal_id = verified_deal(post_verification_until=clock() - timedelta(hours=1))

    with pytest.raises(PermissionDeniedError):
        await releaser.confirm_publication(deal_id, parties['owner'])

    released = await releaser.confirm_publication(deal_id, parties['advertiser'])

    assert released.status is S.COMPLETED

@pytest.mark.asyncio
async def test_release_is_not_repeated(releaser, ledger, verified_deal):
    deal_id = verified_deal()
    await releaser.release_funds(deal_id)

    with pytest.raises(DealError) as exc:
        await releaser.release_funds(deal_id)

    assert exc.value.reason is Reason.ALREADY_RELEASED
    assert len(ledger.transfers) == 1

@pytest.mark.asyncio
async def test_release_needs_verified_deal(releaser, make_deal, ledger):
    deal_id = make_deal(status=S.POSTED, escrow_address="E1", payment_tx_hash="pay-1")

    with pytest.raises(DealError) as exc:
        await releaser.release_funds(deal_id)

    assert exc.value.reason is Reason.NO_RELEASE_NEEDED
    assert ledger.transfers == []

@pytest.mark.asyncio
async def test_release_without_owner_wallet_fails(releaser, store, parties, verified_deal, ledger):
    store.users[parties['owner']]['wallet_address'] = None
    deal_id = verified_deal()

    [outcome] = await releaser.run_once()

    assert outcome.reason is Reason.MISSING_ADDRESSES
    assert not outcome.benign
    assert store.status_of(deal_id) is S.VERIFIED
    assert ledger.transfers == []

@pytest.mark.asyncio
async def test_refund_declined_deal(refunder, store, ledger, make_deal, notifier):
    deal_id = make_deal(status=S.DECLINED, escrow_address="E1", payment_tx_hash="pay-1")

    [outcome] = await refunder.run_once()

    assert outcome.ok
    row = store.deals[deal_id]
    assert row['status'] == 'refunded'
    assert row['refund_tx_hash'] == "out-tx-1"
    assert row['payment_tx_hash'] == "pay-1"
    assert ledger.transfers[0]['to'] == "ADVWALLET"
    assert ledger.transfers[0]['memo'] == f"Deal #{deal_id} refund"
    messages = await store.get_messages(deal_id)
    assert messages[-1]['message_text'] == "Refund sent: out-tx-1"
    assert notifier.events(deal_id) == ['funds_refunded', 'funds_refunded']

@pytest.mark.asyncio
async def test_unconfirmed_refund_stays_declined(refunder, store, ledger, make_deal):
    deal_id = make_deal(status=S.DECLINED, escrow_address="E1", payment_tx_hash="pay-1")
    ledger.visible = False

    [outcome] = await refunder.run_once()

    assert outcome.reason is Reason.TRANSACTION_NOT_FOUND
    assert not outcome.benign
    assert store.status_of(deal_id) is S.DECLINED
    assert store.deals[deal_id]['refund_tx_hash'] is None
    assert store.rollbacks == 1

@pytest.mark.asyncio
async def test_unpaid_declined_deal_waits_for_money(refunder, store, ledger, make_deal):
    deal_id = make_deal(status=S.DECLINED, escrow_address="E1")

    [outcome] = await refunder.run_once()

    assert outcome.reason is Reason.PAYMENT_NOT_RECEIVED
    assert outcome.benign
    assert store.status_of(deal_id) is S.DECLINED
    assert ledger.transfers == []

@pytest.mark.asyncio
async def test_late_payment_on_declined_deal_is_refunded(refunder, store, ledger, make_deal):
    deal_id = make_deal(status=S.DECLINED, escrow_address="E1")
    ledger.pay("E1", "10.5", tx_hash="late-pay")

    [outcome] = await refunder.run_once()

    assert outcome.ok
    row = store.deals[deal_id]
    assert row['status'] == 'refunded'
    assert row['payment_tx_hash'] == "late-pay"
    assert row['refund_tx_hash'] == "out-tx-1"
    assert ledger.transfers[0]['to'] == "ADVWALLET"

@pytest.mark.asyncio
async def test_paid_refunds_come_first(refunder, store, make_deal, clock):
    unpaid = make_deal(status=S.DECLINED, escrow_address="E1")
    clock.advance(minutes=5)
    paid = make_deal(status=S.DECLINED, escrow_address="E2", payment_tx_hash="pay-2")

    assert [d.id for d in await store.find_refund_candidates(10)] == [paid, unpaid]

@pytest.mark.asyncio
async def test_refund_checks(refunder, make_deal):
    refunded = make_deal(status=S.REFUNDED, escrow_address="E1", refund_tx_hash="r-1")
    live = make_deal(status=S.SCHEDULED, escrow_address="E2", payment_tx_hash="pay-2")

    with pytest.raises(DealError) as already:
        await refunder.refund_deal(refunded)
    with pytest.raises(DealError) as not_needed:
        await refunder.refund_deal(live)

    assert already.value.reason is Reason.ALREADY_REFUNDED
    assert not_needed.value.reason is Reason.NO_REFUND_NEEDED

@pytest.mark.asyncio
async def test_racing_releases_transfer_once(store, locks, settlement, verified_deal, ledger, clock):
    deal_id = verified_deal()
    workers = [AutoReleaseReconciler(store, locks, settlement, clock=clock) for _ in range(2)]

    results = await asyncio.gather(
        *(w.release_funds(deal_id) for w in workers), return_exceptions=True
    )

    released = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(released) == 1
    assert errors[0].reason is Reason.CONCURRENT_PROCESSING
    assert len(ledger.transfers) == 1
    assert store.deals[deal_id]['release_tx_hash'] == ledger.transfers[0]['tx_hash']

@pytest.mark.asyncio
async def test_racing_releases_without_lock_backend(store, redis, settlement, verified_deal, ledger, clock):
    deal_id = verified_deal()
    redis.down = True
    workers = [
        AutoReleaseReconciler(store, DistributedLock(redis), settlement, clock=clock)
        for _ in range(2)
    ]

    results = await asyncio.gather(
        *(w.release_funds(deal_id) for w in workers), return_exceptions=True
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert errors[0].reason is Reason.ALREADY_RELEASED
    assert len(ledger.transfers) == 1
    assert store.status_of(deal_id) is S.COMPLETED

@pytest.mark.asyncio
async def test_racing_refund_sweeps_refund_once(store, locks, settlement, make_deal, ledger, clock):
    deal_ids = [make_deal(status=S.DECLINED, escrow_address=f"E{n}", payment_tx_hash=f"pay-{n}")
                for n in range(3)]
    sweeps = [RefundReconciler(store, locks, settlement, clock=clock) for _ in range(2)]

    await asyncio.gather(*(s.run_once() for s in sweeps))
    # Deals skipped as concurrently processed are picked up by the next run
    await sweeps[0].run_once()

    assert len(ledger.transfers) == 3
    assert sorted(t['from'] for t in ledger.transfers) == ["E0", "E1", "E2"]
    assert all(store.status_of(d) is S.REFUNDED for d in deal_ids)

@pytest.mark.asyncio
async def test_release_and_refund_exclude_each_other(store, locks, settlement, verified_deal, ledger, clock):
    deal_id = verified_deal()
    releaser = AutoReleaseReconciler(store, locks, settlement, clock=clock)
    refunder = RefundReconciler(store, locks, settlement, clock=clock)

    results = await asyncio.gather(
        releaser.release_funds(deal_id), refunder.refund_deal(deal_id), return_exceptions=True
    )

    assert not isinstance(results[0], Exception)
    assert results[1].reason is Reason.NO_REFUND_NEEDED
    assert len(ledger.transfers) == 1
    row = store.deals[deal_id]
    assert row['release_tx_hash'] and row['refund_tx_hash'] is None
