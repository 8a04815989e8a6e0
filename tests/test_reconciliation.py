"""
Reconciliation adapter tests: transition table and persistence.
"""

import pytest

from ccip_settlement.exceptions import ConcurrentUpdateError, InvalidStateError
from ccip_settlement.models import PaymentStatus
from ccip_settlement.oracle import InFlightDefaultSource, StatusOracle
from ccip_settlement.reconciliation import (
    ALLOWED_TRANSITIONS,
    ReconciliationAdapter,
    check_transition,
    is_valid_transition,
)
from ccip_settlement.store import InMemoryPaymentStore
from ccip_settlement.tracker import DeliveryTracker

from conftest import MESSAGE_ID, make_payment


def test_terminal_statuses_have_no_exits():
    for status in PaymentStatus:
        if status.is_terminal:
            assert ALLOWED_TRANSITIONS[status] == frozenset()


@pytest.mark.parametrize(
    "current,new,allowed",
    [
        (PaymentStatus.ESCROWED, PaymentStatus.CONFIRMING, True),
        (PaymentStatus.ESCROWED, PaymentStatus.REFUNDED, True),
        (PaymentStatus.ESCROWED, PaymentStatus.COMPLETED, False),
        (PaymentStatus.CONFIRMING, PaymentStatus.COMPLETED, True),
        (PaymentStatus.CONFIRMING, PaymentStatus.REFUNDED, True),
        (PaymentStatus.CONFIRMING, PaymentStatus.ESCROWED, True),
        (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED, False),
        (PaymentStatus.REFUNDED, PaymentStatus.ESCROWED, False),
    ],
)
def test_transition_table(current, new, allowed):
    assert is_valid_transition(current, new) is allowed


def test_check_transition_raises():
    with pytest.raises(InvalidStateError) as exc_info:
        check_transition(PaymentStatus.COMPLETED, PaymentStatus.REFUNDED, "P1")
    assert exc_info.value.payment_id == "P1"


@pytest.fixture
def adapter():
    store = InMemoryPaymentStore([
        make_payment("P1"),
        make_payment("P2", PaymentStatus.CONFIRMING, delivery_message_id=MESSAGE_ID),
        make_payment("P3", PaymentStatus.CONFIRMING),
    ])
    tracker = DeliveryTracker(StatusOracle([InFlightDefaultSource()]), poll_interval=10)
    return ReconciliationAdapter(store, tracker)


class TestReconciliationAdapter:

    @pytest.mark.asyncio
    async def test_on_transition_persists_and_stamps(self, adapter):
        payment = await adapter.get("P1")
        updated = await adapter.on_transition(payment, {"status": "refunded"})

        assert updated.status is PaymentStatus.REFUNDED
        assert updated.updated_at is not None
        assert (await adapter.store.get("P1")).status is PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_on_transition_rejects_illegal_edge(self, adapter):
        payment = await adapter.get("P1")
        with pytest.raises(InvalidStateError):
            await adapter.on_transition(payment, {"status": PaymentStatus.COMPLETED})
        assert adapter.store.update_count == 0

    @pytest.mark.asyncio
    async def test_stale_payment_loses(self, adapter):
        stale = await adapter.get("P2")
        await adapter.on_transition(stale, {"status": PaymentStatus.COMPLETED})

        with pytest.raises(ConcurrentUpdateError):
            await adapter.on_transition(stale, {"status": PaymentStatus.REFUNDED})
        assert (await adapter.store.get("P2")).status is PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_all_skips_payments_without_key(self, adapter):
        resumed = await adapter.resume_all()

        assert [s.payment_id for s in resumed] == ["P2"]
        assert adapter.tracker.active_payments == ["P2"]
        await adapter.tracker.shutdown()
