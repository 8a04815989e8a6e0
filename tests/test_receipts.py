"""
Receipt parsing tests.
"""

from decimal import Decimal

import pytest
from eth_abi import encode

from ccip_settlement.exceptions import ParseError
from ccip_settlement.models import LogEntry, Receipt
from ccip_settlement.receipts import (
    TOKENS_TRANSFERRED_TOPIC,
    decode_delivery_event,
    extract_message_id,
    is_bytes32_hex,
    to_base_units,
    to_hex,
)

from conftest import DESTINATION_ESCROW, FUJI_SELECTOR, MESSAGE_ID, SENDER_CONTRACT, TX_HASH

OTHER_CONTRACT = "0x4444444444444444444444444444444444444444"
SELECTOR_TOPIC = "0x" + format(FUJI_SELECTOR, "064x")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


def _receipt(*logs):
    return Receipt(transaction_hash=TX_HASH, status=1, logs=list(logs))


class TestExtractMessageId:

    def test_reads_first_indexed_topic(self):
        receipt = _receipt(
            LogEntry(address=OTHER_CONTRACT, topics=[TRANSFER_TOPIC, "0x" + "00" * 32]),
            LogEntry(
                address=SENDER_CONTRACT.upper().replace("0X", "0x"),
                topics=[TOKENS_TRANSFERRED_TOPIC, MESSAGE_ID.upper().replace("0X", "0x"), SELECTOR_TOPIC],
            ),
        )
        assert extract_message_id(receipt, SENDER_CONTRACT) == MESSAGE_ID

    def test_prefers_event_signature(self):
        other_id = "0x" + "01" * 32
        receipt = _receipt(
            LogEntry(address=SENDER_CONTRACT, topics=[TRANSFER_TOPIC, other_id]),
            LogEntry(address=SENDER_CONTRACT, topics=[TOKENS_TRANSFERRED_TOPIC, MESSAGE_ID, SELECTOR_TOPIC]),
        )
        assert extract_message_id(receipt, SENDER_CONTRACT) == MESSAGE_ID

    def test_falls_back_to_first_contract_log_with_topics(self):
        receipt = _receipt(
            LogEntry(address=SENDER_CONTRACT, topics=[TRANSFER_TOPIC]),
            LogEntry(address=SENDER_CONTRACT, topics=["0x" + "aa" * 32, MESSAGE_ID]),
        )
        assert extract_message_id(receipt, SENDER_CONTRACT) == MESSAGE_ID

    def test_ignores_other_contracts(self):
        receipt = _receipt(
            LogEntry(address=OTHER_CONTRACT, topics=[TOKENS_TRANSFERRED_TOPIC, MESSAGE_ID]),
        )
        with pytest.raises(ParseError):
            extract_message_id(receipt, SENDER_CONTRACT)

    def test_malformed_topic(self):
        receipt = _receipt(
            LogEntry(address=SENDER_CONTRACT, topics=[TOKENS_TRANSFERRED_TOPIC, "0x1234"]),
        )
        with pytest.raises(ParseError):
            extract_message_id(receipt, SENDER_CONTRACT)


def test_decode_delivery_event():
    token = "0x5425890298aed601595a70ab815c96711a31bc65"
    link = "0x0b9d5d9136855f6fec3c0993fee6e9ce8a297846"
    data = encode(
        ["address", "address", "uint256", "address", "uint256"],
        [DESTINATION_ESCROW.lower(), token, 45_990_000, link, 10**17],
    )
    log = LogEntry(
        address=SENDER_CONTRACT,
        topics=[TOKENS_TRANSFERRED_TOPIC, MESSAGE_ID, SELECTOR_TOPIC],
        data="0x" + data.hex(),
    )

    event = decode_delivery_event(log)

    assert event.message_id == MESSAGE_ID
    assert event.destination_chain_selector == FUJI_SELECTOR
    assert event.receiver.lower() == DESTINATION_ESCROW.lower()
    assert event.token_amount == 45_990_000
    assert event.fees == 10**17


def test_decode_delivery_event_bad_data():
    log = LogEntry(
        address=SENDER_CONTRACT,
        topics=[TOKENS_TRANSFERRED_TOPIC, MESSAGE_ID, SELECTOR_TOPIC],
        data="0x00",
    )
    with pytest.raises(ParseError):
        decode_delivery_event(log)


def test_is_bytes32_hex():
    assert is_bytes32_hex(MESSAGE_ID)
    assert not is_bytes32_hex(MESSAGE_ID[2:])
    assert not is_bytes32_hex("0x1234")
    assert not is_bytes32_hex(None)


def test_to_hex_normalizes():
    assert to_hex(bytes.fromhex("ab" * 32)) == MESSAGE_ID
    assert to_hex("AB" * 32) == MESSAGE_ID


@pytest.mark.parametrize(
    "amount,expected",
    [
        (Decimal("45.99"), 45_990_000),
        ("1", 1_000_000),
        (Decimal("0.0000019"), 1),
    ],
)
def test_to_base_units(amount, expected):
    assert to_base_units(amount) == expected
