"""
Receipt parsing for delivery transfers.

The source contract emits::

    event TokensTransferred(
        bytes32 indexed messageId,
        uint64 indexed destinationChainSelector,
        address receiver,
        address token,
        uint256 tokenAmount,
        address feeToken,
        uint256 fees
    );

The CCIP message id is the first indexed topic. When it cannot be found the
caller falls back to tracking by transaction hash.
"""

import re
from decimal import ROUND_FLOOR, Decimal
from typing import Optional, Union

from eth_abi import decode
from web3 import Web3

from ccip_settlement.exceptions import ParseError
from ccip_settlement.models import DeliveryEvent, LogEntry, Receipt

TOKENS_TRANSFERRED_SIGNATURE = (
    "TokensTransferred(bytes32,uint64,address,address,uint256,address,uint256)"
)
TOKENS_TRANSFERRED_TOPIC = "0x" + Web3.keccak(text=TOKENS_TRANSFERRED_SIGNATURE).hex().removeprefix("0x")

_BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def is_bytes32_hex(value: Optional[str]) -> bool:
    """True for a ``0x``-prefixed 32-byte hex string (message ids, tx hashes)."""
    return bool(value) and bool(_BYTES32_RE.match(value))


def to_hex(value: Union[str, bytes]) -> str:
    """Normalize HexBytes/bytes/str to a lowercase ``0x`` hex string."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value).hex()
    else:
        raw = str(value)
    # HexBytes.hex() may or may not include the 0x prefix depending on version
    raw = raw if raw.startswith("0x") else "0x" + raw
    return raw.lower()


def _logs_from(receipt: Receipt, contract_address: str) -> list[LogEntry]:
    address = contract_address.lower()
    return [log for log in receipt.logs if log.address.lower() == address]


def find_delivery_log(receipt: Receipt, contract_address: str) -> LogEntry:
    """
    Locate the ``TokensTransferred`` log emitted by the source contract.

    A log whose topic0 is the event signature wins; otherwise the first
    contract log carrying at least two topics is accepted.

    Raises:
        ParseError: If no log from the contract carries a message id
    """
    contract_logs = _logs_from(receipt, contract_address)
    for log in contract_logs:
        if len(log.topics) >= 2 and to_hex(log.topics[0]) == TOKENS_TRANSFERRED_TOPIC:
            return log
    for log in contract_logs:
        if len(log.topics) >= 2 and log.topics[0]:
            return log
    raise ParseError(
        f"No delivery event from {contract_address} in receipt {receipt.transaction_hash}"
    )


def extract_message_id(receipt: Receipt, contract_address: str) -> str:
    """
    Extract the CCIP message id from a delivery transfer receipt.

    Args:
        receipt: Receipt of the ``transferTokensPayLINK`` transaction
        contract_address: Source contract that emits ``TokensTransferred``

    Returns:
        The message id as a lowercase ``0x`` bytes32 hex string

    Raises:
        ParseError: If the event is missing or its topic is malformed
    """
    log = find_delivery_log(receipt, contract_address)
    message_id = to_hex(log.topics[1])
    if not is_bytes32_hex(message_id):
        raise ParseError(f"Malformed message id topic {message_id!r}")
    return message_id


def decode_delivery_event(log: LogEntry) -> DeliveryEvent:
    """
    Decode a ``TokensTransferred`` log into a ``DeliveryEvent``.

    Raises:
        ParseError: If the topics or data do not match the event layout
    """
    if len(log.topics) < 3:
        raise ParseError("TokensTransferred log must carry three topics")
    try:
        data = bytes.fromhex(to_hex(log.data).removeprefix("0x"))
        receiver, token, token_amount, fee_token, fees = decode(
            ["address", "address", "uint256", "address", "uint256"], data
        )
        selector = int(to_hex(log.topics[2]), 16)
    except Exception as e:
        raise ParseError(f"Could not decode TokensTransferred data: {e}") from e

    return DeliveryEvent(
        message_id=to_hex(log.topics[1]),
        destination_chain_selector=selector,
        receiver=Web3.to_checksum_address(receiver),
        token=Web3.to_checksum_address(token),
        token_amount=token_amount,
        fee_token=Web3.to_checksum_address(fee_token),
        fees=fees,
    )


def to_base_units(amount: Union[Decimal, str, int, float], decimals: int = 6) -> int:
    """
    Convert a human amount to token base units, truncating extra precision.

    >>> to_base_units(Decimal("45.99"))
    45990000
    """
    value = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(value.to_integral_value(rounding=ROUND_FLOOR))
