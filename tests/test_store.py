"""
Payment store tests: in-memory adapter and PostgREST adapter.
"""

import json

import httpx
import pytest

from ccip_settlement.exceptions import (
    ConcurrentUpdateError,
    InvalidStateError,
    PaymentNotFoundError,
)
from ccip_settlement.models import PaymentStatus
from ccip_settlement.store import InMemoryPaymentStore, RestPaymentStore, encode_fields

from conftest import MESSAGE_ID, PAYER, SELLER, T0, TX_HASH, make_payment

BASE_URL = "https://project.supabase.test"


def _row(**overrides):
    row = {
        "id": "P1",
        "amount": "45.99",
        "currency": "USDC",
        "chain_id": 11155111,
        "payer_wallet": PAYER,
        "recipient_wallet": SELLER,
        "status": "escrowed",
        "tx_hash": "0x" + "12" * 32,
        "delivery_tx_hash": None,
    }
    row.update(overrides)
    return row


class TestInMemoryPaymentStore:

    @pytest.mark.asyncio
    async def test_get_unknown_payment(self):
        with pytest.raises(PaymentNotFoundError):
            await InMemoryPaymentStore().get("nope")

    @pytest.mark.asyncio
    async def test_update_checks_expected_status(self):
        store = InMemoryPaymentStore([make_payment()])

        with pytest.raises(ConcurrentUpdateError) as exc_info:
            await store.update(
                "P1", {"status": PaymentStatus.COMPLETED},
                expected_status=PaymentStatus.CONFIRMING,
            )
        assert exc_info.value.expected_status == "confirming"
        assert (await store.get("P1")).status is PaymentStatus.ESCROWED

    @pytest.mark.asyncio
    async def test_message_id_is_write_once(self):
        store = InMemoryPaymentStore([make_payment()])
        await store.update(
            "P1",
            {"status": PaymentStatus.CONFIRMING, "delivery_message_id": MESSAGE_ID},
            expected_status=PaymentStatus.ESCROWED,
        )

        with pytest.raises(InvalidStateError):
            await store.update(
                "P1", {"delivery_message_id": TX_HASH},
                expected_status=PaymentStatus.CONFIRMING,
            )
        # Same value is accepted
        await store.update(
            "P1", {"delivery_message_id": MESSAGE_ID},
            expected_status=PaymentStatus.CONFIRMING,
        )
        assert store.update_count == 2

    @pytest.mark.asyncio
    async def test_list_by_status(self):
        store = InMemoryPaymentStore([
            make_payment("P1"),
            make_payment("P2", PaymentStatus.CONFIRMING, delivery_message_id=MESSAGE_ID),
        ])
        confirming = await store.list_by_status(PaymentStatus.CONFIRMING)
        assert [p.id for p in confirming] == ["P2"]

    @pytest.mark.asyncio
    async def test_add_rejects_duplicates(self):
        store = InMemoryPaymentStore([make_payment()])
        with pytest.raises(InvalidStateError):
            await store.add(make_payment())


def test_encode_fields_uses_column_names():
    encoded = encode_fields({
        "status": PaymentStatus.CONFIRMING,
        "delivery_message_id": MESSAGE_ID,
        "confirmation_started_at": T0,
    })
    assert encoded == {
        "status": "confirming",
        "delivery_tx_hash": MESSAGE_ID,
        "confirmation_started_at": T0.isoformat(),
    }


def test_encode_fields_rejects_unknown():
    with pytest.raises(ValueError):
        encode_fields({"seller_email": "x@example.com"})


class TestRestPaymentStore:

    @staticmethod
    def _store(handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return RestPaymentStore(BASE_URL, api_key="service-key", client=client)

    @pytest.mark.asyncio
    async def test_get_parses_row_and_legacy_status(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[_row(status="pending_delivery")])

        payment = await self._store(handler).get("P1")

        assert payment.status is PaymentStatus.ESCROWED
        assert payment.payer_identity == PAYER
        assert str(payment.amount) == "45.99"
        assert seen[0].url.path == "/rest/v1/payments"
        assert seen[0].url.params["id"] == "eq.P1"
        assert seen[0].headers["apikey"] == "service-key"
        assert seen[0].headers["authorization"] == "Bearer service-key"

    @pytest.mark.asyncio
    async def test_get_missing_row(self):
        store = self._store(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(PaymentNotFoundError):
            await store.get("P1")

    @pytest.mark.asyncio
    async def test_update_sends_preconditions(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[_row(status="confirming", delivery_tx_hash=MESSAGE_ID)])

        payment = await self._store(handler).update(
            "P1",
            {"status": PaymentStatus.CONFIRMING, "delivery_message_id": MESSAGE_ID},
            expected_status=PaymentStatus.ESCROWED,
        )

        request = seen[0]
        assert request.method == "PATCH"
        assert request.url.params["status"] == "eq.escrowed"
        assert request.url.params["delivery_tx_hash"] == "is.null"
        assert request.headers["prefer"] == "return=representation"
        assert json.loads(request.content) == {"status": "confirming", "delivery_tx_hash": MESSAGE_ID}
        assert payment.delivery_message_id == MESSAGE_ID

    @pytest.mark.asyncio
    async def test_update_lost_race(self):
        def handler(request):
            if request.method == "PATCH":
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[_row(status="refunded")])

        with pytest.raises(ConcurrentUpdateError):
            await self._store(handler).update(
                "P1", {"status": PaymentStatus.COMPLETED},
                expected_status=PaymentStatus.CONFIRMING,
            )

    @pytest.mark.asyncio
    async def test_update_refuses_message_id_overwrite(self):
        def handler(request):
            if request.method == "PATCH":
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[_row(status="confirming", delivery_tx_hash=MESSAGE_ID)])

        with pytest.raises(InvalidStateError):
            await self._store(handler).update(
                "P1", {"delivery_message_id": TX_HASH},
                expected_status=PaymentStatus.CONFIRMING,
            )

    @pytest.mark.asyncio
    async def test_list_by_status(self):
        def handler(request):
            assert request.url.params["status"] == "eq.confirming"
            return httpx.Response(200, json=[
                _row(id="P2", status="confirming", delivery_tx_hash=MESSAGE_ID),
            ])

        payments = await self._store(handler).list_by_status(PaymentStatus.CONFIRMING)
        assert [p.delivery_message_id for p in payments] == [MESSAGE_ID]

    @pytest.mark.asyncio
    async def test_server_errors_propagate(self):
        store = self._store(lambda request: httpx.Response(500))
        with pytest.raises(httpx.HTTPStatusError):
            await store.get("P1")

    @pytest.mark.asyncio
    async def test_aclose_only_closes_own_client(self):
        shared = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])))
        await RestPaymentStore(BASE_URL, client=shared).aclose()
        assert not shared.is_closed
        await shared.aclose()

        store = RestPaymentStore(BASE_URL)
        async with store:
            pass
        assert store._client.is_closed
