"""Tests for payment confirmation."""

from datetime import timedelta
from decimal import Decimal

import pytest

from deals import DealStatus
from deals.exceptions import DealError, Reason
from ledger import LedgerNetworkError
from reconcilers import PaymentReconciler

S = DealStatus

@pytest.fixture
def payments(store, locks, ledger, notifier, clock):
    return PaymentReconciler(store, locks, ledger, notifier, clock=clock)

@pytest.mark.asyncio
async def test_confirms_exact_payment(payments, store, ledger, make_deal, notifier, clock):
    deal_id = make_deal(status=S.PAYMENT_PENDING, escrow_address="E1", price=Decimal('10.5'))
    ledger.pay("E1", "10.500000000", tx_hash="pay-1")

    [outcome] = await payments.run_once()

    assert outcome.ok and outcome.tx_hash == "pay-1"
    row = store.deals[deal_id]
    assert row['status'] == 'paid'
    assert row['payment_tx_hash'] == "pay-1"
    assert row['payment_confirmed_at'] == clock()
    messages = await store.get_messages(deal_id)
    assert messages[-1]['message_text'] == "Payment confirmed: pay-1"
    assert notifier.events(deal_id) == ['payment_confirmed', 'payment_confirmed']

@pytest.mark.asyncio
async def test_scheduled_deal_lands_in_scheduled(payments, store, ledger, make_deal, clock):
    deal_id = make_deal(status=S.PAYMENT_PENDING, escrow_address="E1",
                        scheduled_post_time=clock() + timedelta(days=1))
    ledger.pay("E1", Decimal('10.5'))

    await payments.run_once()

    assert store.status_of(deal_id) is S.SCHEDULED

@pytest.mark.asyncio
async def test_wrong_amount_is_not_payment(payments, store, ledger, make_deal):
    deal_id = make_deal(status=S.PAYMENT_PENDING, escrow_address="E1", price=Decimal('10.5'))
    ledger.pay("E1", Decimal('10.4'))

    [outcome] = await payments.run_once()

    assert outcome.reason is Reason.PAYMENT_NOT_RECEIVED
    assert outcome.benign
    assert store.status_of(deal_id) is S.PAYMENT_PENDING

@pytest.mark.asyncio
async def test_candidates_skip_deals_without_escrow(payments, make_deal):
    make_deal(status=S.PAYMENT_PENDING, escrow_address=None)
    assert await payments.run_once() == []

@pytest.mark.asyncio
async def test_confirm_payment_is_idempotent(payments, store, make_deal):
    deal_id = make_deal(status=S.PAYMENT_PENDING, escrow_address="E1")

    first = await payments.confirm_payment(deal_id, "pay-1")
    second = await payments.confirm_payment(deal_id, "pay-2")

    assert first == second == "pay-1"
    assert store.deals[deal_id]['payment_tx_hash'] == "pay-1"
    confirmations = [m for m in await store.get_messages(deal_id)
                     if m['message_text'].startswith("Payment confirmed")]
    assert len(confirmations) == 1

@pytest.mark.asyncio
async def test_cancelled_deal_is_not_confirmed(payments, store, make_deal):
    deal_id = make_deal(status=S.CANCELLED, escrow_address="E1")

    with pytest.raises(DealError) as exc:
        await payments.confirm_payment(deal_id, "late-pay")

    assert exc.value.reason is Reason.INVALID_STATUS
    assert store.deals[deal_id]['payment_tx_hash'] is None

@pytest.mark.asyncio
async def test_ledger_outage_is_a_failure_not_a_skip(payments, store, ledger, make_deal):
    deal_id = make_deal(status=S.PAYMENT_PENDING, escrow_address="E1")
    ledger.fail_with = LedgerNetworkError("node unreachable")

    [outcome] = await payments.run_once()

    assert outcome.reason is Reason.NETWORK_ERROR
    assert not outcome.benign
    assert store.status_of(deal_id) is S.PAYMENT_PENDING

@pytest.mark.asyncio
async def test_concurrent_confirmation_is_benign(payments, store, ledger, locks, make_deal):
    deal_id = make_deal(status=S.PAYMENT_PENDING, escrow_address="E1")
    ledger.pay("E1", Decimal('10.5'))
    await locks.acquire(locks.key(deal_id, "confirm_payment"))

    [outcome] = await payments.run_once()

    assert outcome.reason is Reason.CONCURRENT_PROCESSING
    assert store.status_of(deal_id) is S.PAYMENT_PENDING

@pytest.mark.asyncio
async def test_notification_failure_keeps_confirmation(payments, store, ledger, make_deal, notifier):
    deal_id = make_deal(status=S.PAYMENT_PENDING, escrow_address="E1")
    ledger.pay("E1", Decimal('10.5'))
    notifier.fail = True

    [outcome] = await payments.run_once()

    assert outcome.ok
    assert store.status_of(deal_id) is S.PAID
