"""
Chain client for the escrow CCIP lane.

Source chain (Sender contract):
    transferTokensPayLINK(uint64, address, uint256, address) -> bytes32
        Initiates the cross-chain delivery transfer.
    withdrawUsdcToken(address)
        Refunds escrowed USDC to the beneficiary.

Destination chain (CCIP OffRamp):
    getExecutionState(bytes32) -> uint8
        0=Untouched, 1=InProgress, 2=Success, 3=Failure

``ChainClient`` is the interface the settlement core depends on;
``Web3ChainClient`` implements it over JSON-RPC with a local signer.

Example:
    >>> client = Web3ChainClient.from_config(config)
    >>> tx_hash = await client.submit_delivery_transfer(
    ...     config.destination_chain_selector,
    ...     config.destination_escrow_address,
    ...     45_990_000,
    ...     "0xSeller...",
    ... )
    >>> receipt = await client.wait_for_receipt(tx_hash)
"""

import abc
import asyncio
import logging
from typing import Any, Optional

from eth_account import Account
from web3 import Web3

from ccip_settlement.config import SettlementConfig
from ccip_settlement.exceptions import SubmissionError
from ccip_settlement.models import LogEntry, Receipt
from ccip_settlement.receipts import to_hex

logger = logging.getLogger(__name__)


# ============================================================
# ABIs (minimal, for the calls we need)
# ============================================================

SENDER_ABI = [
    {
        "type": "function",
        "name": "transferTokensPayLINK",
        "inputs": [
            {"name": "_destinationChainSelector", "type": "uint64"},
            {"name": "_receiver", "type": "address"},
            {"name": "_amount", "type": "uint256"},
            {"name": "_seller", "type": "address"},
        ],
        "outputs": [{"name": "messageId", "type": "bytes32"}],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "withdrawUsdcToken",
        "inputs": [{"name": "_beneficiary", "type": "address"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "event",
        "name": "TokensTransferred",
        "anonymous": False,
        "inputs": [
            {"name": "messageId", "type": "bytes32", "indexed": True},
            {"name": "destinationChainSelector", "type": "uint64", "indexed": True},
            {"name": "receiver", "type": "address", "indexed": False},
            {"name": "token", "type": "address", "indexed": False},
            {"name": "tokenAmount", "type": "uint256", "indexed": False},
            {"name": "feeToken", "type": "address", "indexed": False},
            {"name": "fees", "type": "uint256", "indexed": False},
        ],
    },
]

OFFRAMP_ABI = [
    {
        "type": "function",
        "name": "getExecutionState",
        "inputs": [{"name": "messageId", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
    },
]


class ChainClient(abc.ABC):
    """Chain operations the settlement core depends on."""

    @abc.abstractmethod
    async def submit_delivery_transfer(
        self,
        destination_chain_selector: int,
        receiver: str,
        amount: int,
        seller: str,
    ) -> str:
        """Submit ``transferTokensPayLINK`` and return the transaction hash."""

    @abc.abstractmethod
    async def submit_refund(self, beneficiary: str) -> str:
        """Submit ``withdrawUsdcToken`` and return the transaction hash."""

    @abc.abstractmethod
    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        """Wait for a source-chain transaction to be mined."""

    @abc.abstractmethod
    async def read_execution_state(self, message_id: str) -> int:
        """Read the OffRamp execution state code for a message id."""


class Web3ChainClient(ChainClient):
    """
    ``ChainClient`` backed by web3.py HTTP providers and a local private key.

    web3's HTTP provider is blocking, so every call runs in a worker thread to
    keep the event loop (and every other payment's polling task) responsive.
    """

    def __init__(
        self,
        private_key: Optional[str],
        *,
        source_rpc_url: str,
        destination_rpc_url: str,
        source_contract_address: str,
        offramp_address: str,
        gas_limit: int = 500_000,
        receipt_timeout: float = 120.0,
    ):
        """
        Initialize the chain client.

        Args:
            private_key: Hex-encoded private key for signing (None = read-only)
            source_rpc_url: JSON-RPC endpoint of the source chain
            destination_rpc_url: JSON-RPC endpoint of the destination chain
            source_contract_address: Sender contract on the source chain
            offramp_address: CCIP OffRamp on the destination chain
            gas_limit: Gas limit for submitted transactions
            receipt_timeout: Seconds to wait for a receipt
        """
        self.private_key = private_key
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout

        self.source_w3 = Web3(Web3.HTTPProvider(source_rpc_url))
        self.destination_w3 = Web3(Web3.HTTPProvider(destination_rpc_url))
        self.account = Account.from_key(private_key) if private_key else None

        self.sender_contract = self.source_w3.eth.contract(
            address=Web3.to_checksum_address(source_contract_address),
            abi=SENDER_ABI,
        )
        self.offramp_contract = self.destination_w3.eth.contract(
            address=Web3.to_checksum_address(offramp_address),
            abi=OFFRAMP_ABI,
        )

    @classmethod
    def from_config(cls, config: SettlementConfig) -> "Web3ChainClient":
        """Build a client from ``SettlementConfig``."""
        if not config.source_contract_address:
            raise ValueError("source_contract_address must be configured")
        if not config.offramp_address:
            raise ValueError(
                f"No OffRamp known for chain {config.destination_chain_id}; "
                "set offramp_address explicitly"
            )
        return cls(
            config.private_key,
            source_rpc_url=config.source_rpc_url,
            destination_rpc_url=config.destination_rpc_url,
            source_contract_address=config.source_contract_address,
            offramp_address=config.offramp_address,
            gas_limit=config.gas_limit,
            receipt_timeout=config.receipt_timeout,
        )

    @property
    def signer_address(self) -> Optional[str]:
        return self.account.address if self.account else None

    def _send_tx(self, func_call: Any, label: str) -> str:
        """Build, sign, and send a transaction; return its hash."""
        if self.account is None:
            raise SubmissionError(f"{label}: no signing key configured")
        try:
            gas_price = self.source_w3.eth.gas_price
            tx = func_call.build_transaction({
                "from": self.account.address,
                "nonce": self.source_w3.eth.get_transaction_count(self.account.address, "pending"),
                "gas": self.gas_limit,
                "maxFeePerGas": gas_price * 2,
                "maxPriorityFeePerGas": gas_price,
            })
            signed = self.source_w3.eth.account.sign_transaction(tx, self.private_key)
            tx_hash = self.source_w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            logger.error("%s submission failed: %s", label, e)
            raise SubmissionError(f"{label} failed: {e}") from e
        return to_hex(tx_hash)

    async def submit_delivery_transfer(
        self,
        destination_chain_selector: int,
        receiver: str,
        amount: int,
        seller: str,
    ) -> str:
        call = self.sender_contract.functions.transferTokensPayLINK(
            destination_chain_selector,
            Web3.to_checksum_address(receiver),
            amount,
            Web3.to_checksum_address(seller),
        )
        return await asyncio.to_thread(self._send_tx, call, "transferTokensPayLINK")

    async def submit_refund(self, beneficiary: str) -> str:
        call = self.sender_contract.functions.withdrawUsdcToken(
            Web3.to_checksum_address(beneficiary)
        )
        return await asyncio.to_thread(self._send_tx, call, "withdrawUsdcToken")

    def _wait_for_receipt(self, tx_hash: str) -> Receipt:
        raw = self.source_w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.receipt_timeout
        )
        return Receipt(
            transaction_hash=to_hex(raw["transactionHash"]),
            status=raw["status"],
            block_number=raw.get("blockNumber"),
            gas_used=raw.get("gasUsed"),
            logs=[
                LogEntry(
                    address=log["address"],
                    topics=[to_hex(t) for t in log["topics"]],
                    data=to_hex(log["data"]),
                    log_index=log.get("logIndex"),
                )
                for log in raw["logs"]
            ],
        )

    async def wait_for_receipt(self, tx_hash: str) -> Receipt:
        return await asyncio.to_thread(self._wait_for_receipt, tx_hash)

    async def read_execution_state(self, message_id: str) -> int:
        message_bytes = bytes.fromhex(message_id.removeprefix("0x"))
        call = self.offramp_contract.functions.getExecutionState(message_bytes)
        return int(await asyncio.to_thread(call.call))
