import asyncio
from datetime import datetime, timedelta, timezone
import itertools
import pytest

from escrow_service.errors import (
    AlreadyCompleted,
    DuplicateOrder,
    InsufficientFunds,
    InvalidAmount,
    NotExpired,
    NotFound,
    Unauthorized,
)
from escrow_service.ledger import EscrowLedger, Receipt
from escrow_service.models import EventType, PaymentStatus
from escrow_service.orders import derive_order_id
from conftest import CONFIRMER, MERCHANT, PAYER, RECONCILER, TIMEOUT, open_payment


@pytest.mark.asyncio
async def test_create_locks_funds_and_opens_record(ledger, clock):
    order_id = derive_order_id("pay-1")
    await ledger.credit(PAYER, 25)

    receipt = await ledger.create(order_id, PAYER, 10)

    assert receipt.event_type == EventType.PAYMENT_CREATED
    assert receipt.block == 1
    record = await ledger.get(order_id)
    assert record.status == PaymentStatus.OPEN
    assert record.payer == PAYER
    assert record.amount == 10
    assert record.created_at == clock.now
    assert await ledger.balance(PAYER) == 15


@pytest.mark.asyncio
async def test_duplicate_create_is_rejected_not_merged(ledger):
    order_id = await open_payment(ledger, "pay-dup", amount=10)
    await ledger.credit(PAYER, 10)

    with pytest.raises(DuplicateOrder):
        await ledger.create(order_id, PAYER, 10)

    record = await ledger.get(order_id)
    assert record.amount == 10
    assert await ledger.balance(PAYER) == 10


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, True])
async def test_create_requires_positive_integer_amount(ledger, amount):
    with pytest.raises(InvalidAmount):
        await ledger.create(derive_order_id("pay-zero"), PAYER, amount)


@pytest.mark.asyncio
async def test_create_without_funds_fails_and_leaves_no_record(ledger):
    order_id = derive_order_id("pay-broke")
    await ledger.credit(PAYER, 3)

    with pytest.raises(InsufficientFunds):
        await ledger.create(order_id, PAYER, 10)

    assert not (await ledger.get(order_id)).exists
    assert await ledger.balance(PAYER) == 3


@pytest.mark.asyncio
async def test_get_absent_record_is_zero_valued(ledger):
    record = await ledger.get(derive_order_id("never-created"))

    assert record.amount == 0
    assert not record.exists
    assert not await ledger.is_expired(record.order_id)


@pytest.mark.asyncio
async def test_confirm_and_refund_of_absent_record_raise_not_found(ledger):
    order_id = derive_order_id("ghost")

    with pytest.raises(NotFound):
        await ledger.confirm(order_id, CONFIRMER)
    with pytest.raises(NotFound):
        await ledger.refund(order_id, RECONCILER)


@pytest.mark.asyncio
async def test_confirm_requires_authorized_caller(ledger):
    order_id = await open_payment(ledger, "pay-auth")

    with pytest.raises(Unauthorized):
        await ledger.confirm(order_id, PAYER)

    assert (await ledger.get(order_id)).status == PaymentStatus.OPEN
    assert await ledger.balance(MERCHANT) == 0


@pytest.mark.asyncio
async def test_scenario_success_confirm_pays_merchant(ledger):
    order_id = await open_payment(ledger, "X", amount=10)
    payer_before = await ledger.balance(PAYER)

    receipt = await ledger.confirm(order_id, CONFIRMER)

    assert receipt.event_type == EventType.PAYMENT_CONFIRMED
    assert receipt.actor == CONFIRMER
    assert (await ledger.get(order_id)).status == PaymentStatus.CONFIRMED
    assert await ledger.balance(MERCHANT) == 10
    assert await ledger.balance(PAYER) == payer_before


@pytest.mark.asyncio
async def test_scenario_timeout_refund_only_after_deadline(ledger, clock):
    order_id = await open_payment(ledger, "Y", amount=5)
    payer_before = await ledger.balance(PAYER)

    clock.advance(TIMEOUT - 1)
    assert not await ledger.is_expired(order_id)
    with pytest.raises(NotExpired):
        await ledger.refund(order_id, RECONCILER)

    clock.advance(1)
    assert await ledger.is_expired(order_id)
    receipt = await ledger.refund(order_id, RECONCILER)

    assert receipt.event_type == EventType.PAYMENT_REFUNDED
    assert (await ledger.get(order_id)).status == PaymentStatus.REFUNDED
    assert await ledger.balance(PAYER) == payer_before + 5
    assert await ledger.balance(MERCHANT) == 0
    assert not await ledger.is_expired(order_id)


@pytest.mark.asyncio
async def test_terminal_records_answer_already_completed_without_double_paying(ledger, clock):
    confirmed = await open_payment(ledger, "twice-confirmed", amount=4)
    refunded = await open_payment(ledger, "twice-refunded", amount=6)
    await ledger.confirm(confirmed, CONFIRMER)
    clock.advance(TIMEOUT)
    await ledger.refund(refunded, RECONCILER)

    for order_id in (confirmed, refunded):
        with pytest.raises(AlreadyCompleted):
            await ledger.confirm(order_id, CONFIRMER)
        with pytest.raises(AlreadyCompleted):
            await ledger.refund(order_id, RECONCILER)

    assert await ledger.balance(MERCHANT) == 4
    assert await ledger.balance(PAYER) == 6


ACTIONS = ["confirm", "refund_early", "refund_late"]


@pytest.mark.asyncio
@pytest.mark.parametrize("sequence", list(itertools.product(ACTIONS, repeat=3)))
async def test_status_transitions_at_most_once(ledger, clock, sequence):
    order_id = await open_payment(ledger, "seq-" + "-".join(sequence), amount=9)
    successes = []

    for action in sequence:
        before = await ledger.get(order_id)
        try:
            if action == "confirm":
                receipt = await ledger.confirm(order_id, CONFIRMER)
            else:
                if action == "refund_late":
                    clock.advance(TIMEOUT)
                receipt = await ledger.refund(order_id, RECONCILER)
            successes.append(receipt)
        except AlreadyCompleted:
            assert before.status != PaymentStatus.OPEN
        except NotExpired:
            assert action == "refund_early"
            assert not ledger.record_expired(before)
        after = await ledger.get(order_id)
        if before.status != PaymentStatus.OPEN:
            assert after.status == before.status

    assert len(successes) <= 1
    merchant, payer = await ledger.balance(MERCHANT), await ledger.balance(PAYER)
    assert merchant + payer <= 9
    if successes and successes[0].event_type == EventType.PAYMENT_CONFIRMED:
        assert (merchant, payer) == (9, 0)
    elif successes:
        assert (merchant, payer) == (0, 9)
    else:
        assert (await ledger.get(order_id)).status == PaymentStatus.OPEN


@pytest.mark.asyncio
async def test_concurrent_confirm_and_refund_have_exactly_one_winner(ledger, clock):
    order_id = await open_payment(ledger, "Z", amount=7)
    clock.advance(TIMEOUT)

    results = await asyncio.gather(
        ledger.confirm(order_id, CONFIRMER),
        ledger.refund(order_id, RECONCILER),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, Receipt)]
    losers = [r for r in results if isinstance(r, AlreadyCompleted)]
    assert len(winners) == 1
    assert len(losers) == 1

    record = await ledger.get(order_id)
    if winners[0].event_type == EventType.PAYMENT_CONFIRMED:
        assert record.status == PaymentStatus.CONFIRMED
        assert await ledger.balance(MERCHANT) == 7
    else:
        assert record.status == PaymentStatus.REFUNDED
        assert await ledger.balance(PAYER) == 7


@pytest.mark.asyncio
async def test_events_lookback_and_from_block(ledger, clock):
    first = await open_payment(ledger, "evt-1")
    second = await open_payment(ledger, "evt-2")
    await ledger.confirm(first, CONFIRMER)
    third = await open_payment(ledger, "evt-3")

    head, created = await ledger.events()
    assert head == 4
    assert [e.order_id for e in created] == [first, second, third]

    head, recent = await ledger.events(lookback=2)
    assert [e.order_id for e in recent] == [third]

    head, later = await ledger.events(from_block=2)
    assert [e.order_id for e in later] == [second, third]

    head, confirmations = await ledger.events(event_type=EventType.PAYMENT_CONFIRMED)
    assert [e.order_id for e in confirmations] == [first]


@pytest.mark.asyncio
async def test_transaction_lookup_returns_committed_receipt(ledger):
    order_id = derive_order_id("pay-tx")
    await ledger.credit(PAYER, 10)
    receipt = await ledger.create(order_id, PAYER, 10)

    assert await ledger.transaction(receipt.tx_ref) == receipt
    assert await ledger.transaction("0x" + "0" * 64) is None


@pytest.mark.asyncio
async def test_default_clock_is_naive_utc(session_factory):
    ledger = EscrowLedger(session_factory, merchant=MERCHANT, timeout_seconds=TIMEOUT)

    now = ledger.now()

    assert now.tzinfo is None
    assert abs(now - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)
