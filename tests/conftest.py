"""
Shared fixtures for settlement tests.

Provides:
1. A scriptable in-process ChainClient (no RPC access)
2. Payment fixtures backed by InMemoryPaymentStore
3. A status API stub served through httpx.MockTransport
4. A factory for fully wired state machines, shut down after each test
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import httpx
import pytest
import pytest_asyncio

from ccip_settlement.chain_client import ChainClient
from ccip_settlement.config import SettlementConfig
from ccip_settlement.models import LogEntry, Payment, PaymentStatus, Receipt
from ccip_settlement.oracle import StatusOracle
from ccip_settlement.receipts import TOKENS_TRANSFERRED_TOPIC
from ccip_settlement.state_machine import SettlementStateMachine
from ccip_settlement.store import InMemoryPaymentStore

PAYER = "0x1111111111111111111111111111111111111111"
SELLER = "0x2222222222222222222222222222222222222222"
STRANGER = "0x9999999999999999999999999999999999999999"
SENDER_CONTRACT = "0x3333333333333333333333333333333333333333"
DESTINATION_ESCROW = "0x435F8F1dd271Ce2741CCb859cf588705a99929A8"

MESSAGE_ID = "0x" + "ab" * 32
TX_HASH = "0x" + "cd" * 32
REFUND_TX_HASH = "0x" + "ef" * 32
FUJI_SELECTOR = 14767482510784806043

STATUS_API_A = "https://status-a.test"
STATUS_API_B = "https://status-b.test"

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeChainClient(ChainClient):
    """Records submissions and replays scripted chain responses."""

    def __init__(self, *, message_id: Optional[str] = MESSAGE_ID):
        self.message_id = message_id
        self.transfers: list[tuple] = []
        self.refunds: list[str] = []
        self.transfer_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.receipt_error: Optional[Exception] = None
        self.receipt_status = 1
        self.execution_state: Optional[int] = None
        self.submit_delay = 0.0

    async def submit_delivery_transfer(self, destination_chain_selector, receiver, amount, seller):
        self.transfers.append((destination_chain_selector, receiver, amount, seller))
        await asyncio.sleep(self.submit_delay)
        if self.transfer_error:
            raise self.transfer_error
        return TX_HASH

    async def submit_refund(self, beneficiary):
        if self.refund_error:
            raise self.refund_error
        self.refunds.append(beneficiary)
        return REFUND_TX_HASH

    async def wait_for_receipt(self, tx_hash):
        if self.receipt_error:
            raise self.receipt_error
        logs = []
        if self.message_id is not None:
            logs.append(LogEntry(
                address=SENDER_CONTRACT,
                topics=[TOKENS_TRANSFERRED_TOPIC, self.message_id, "0x" + format(FUJI_SELECTOR, "064x")],
            ))
        return Receipt(transaction_hash=tx_hash, status=self.receipt_status, block_number=1, logs=logs)

    async def read_execution_state(self, message_id):
        if self.execution_state is None:
            raise RuntimeError("message not indexed on destination")
        return self.execution_state


class FakeClock:
    """Mutable clock for the state machine."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class StatusApi:
    """
    Status endpoint stub. ``replies`` maps a base URL to a list of replies,
    consumed one per request (the last one repeats). A reply is a status
    string, a raw body (starting with "<" or "{"), a dict body, an int HTTP
    status, or an exception instance.
    """

    def __init__(self, replies: Optional[dict[str, list]] = None):
        self.replies = replies or {}
        self.calls: dict[str, int] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        base = f"{request.url.scheme}://{request.url.host}"
        count = self.calls.get(base, 0)
        self.calls[base] = count + 1
        script = self.replies.get(base)
        if not script:
            return httpx.Response(404)
        reply = script[min(count, len(script) - 1)]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, int):
            return httpx.Response(reply)
        if isinstance(reply, dict):
            return httpx.Response(200, json=reply)
        if reply.startswith(("<", "{")):
            return httpx.Response(200, text=reply)
        return httpx.Response(200, json={"status": reply})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def make_payment(payment_id: str = "P1", status: PaymentStatus = PaymentStatus.ESCROWED, **fields) -> Payment:
    return Payment(
        id=payment_id,
        amount=Decimal("45.99"),
        currency="USDC",
        source_chain_id=11155111,
        payer_identity=PAYER,
        recipient_identity=SELLER,
        status=status,
        source_tx_hash="0x" + "12" * 32,
        **fields,
    )


@pytest.fixture
def config() -> SettlementConfig:
    return SettlementConfig(
        source_contract_address=SENDER_CONTRACT,
        destination_escrow_address=DESTINATION_ESCROW,
        status_api_urls=[STATUS_API_A, STATUS_API_B],
        status_api_timeout=1.0,
        poll_interval=0,
        max_poll_attempts=60,
    )


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def status_api() -> StatusApi:
    return StatusApi()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryPaymentStore:
    return InMemoryPaymentStore([make_payment()])


@pytest_asyncio.fixture
async def make_machine(config, chain, status_api, clock, store):
    """Factory for wired state machines; every machine is shut down afterwards."""
    machines: list[SettlementStateMachine] = []

    def factory(**overrides) -> SettlementStateMachine:
        cfg = config.model_copy(update=overrides) if overrides else config
        oracle = StatusOracle.from_config(cfg, chain, http_client=status_api.client())
        machine = SettlementStateMachine(store, chain, oracle, cfg, clock=clock)
        machines.append(machine)
        return machine

    yield factory
    for machine in machines:
        await machine.shutdown()


@pytest.fixture
def machine(make_machine) -> SettlementStateMachine:
    return make_machine()


def collect_updates(machine: SettlementStateMachine) -> list:
    updates: list = []
    machine.on_update(updates.append)
    return updates
