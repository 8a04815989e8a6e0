"""
Data models for cross-chain settlement.

``Payment`` mirrors the persisted payment row (column names are the pydantic
aliases, so store records validate directly). The tracking and chain types are
plain dataclasses: they never leave the process.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class PaymentStatus(str, Enum):
    """Persisted payment lifecycle status."""

    ESCROWED = "escrowed"  # Funds locked on the source chain
    CONFIRMING = "confirming"  # Delivery transfer submitted, awaiting CCIP outcome
    COMPLETED = "completed"  # Delivered (by oracle evidence or manual attestation)
    REFUNDED = "refunded"  # Funds returned to the payer

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)


# Statuses older payment rows may still carry
_LEGACY_STATUSES = {
    "pending_delivery": PaymentStatus.ESCROWED,
}


class CanonicalStatus(str, Enum):
    """Source-agnostic progress of one cross-chain message."""

    NOT_STARTED = "NOT_STARTED"
    SOURCE_FINALIZED = "SOURCE_FINALIZED"
    COMMITTING = "COMMITTING"
    COMMITTED = "COMMITTED"
    BLESSING = "BLESSING"
    BLESSED = "BLESSED"
    EXECUTING = "EXECUTING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (CanonicalStatus.SUCCESS, CanonicalStatus.FAILED)

    @property
    def step(self) -> int:
        """Display order: 0..6 in flight, 7 for success, -1 for failure."""
        return _STEPS[self]

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @property
    def time_estimate(self) -> str:
        return _TIME_ESTIMATES[self]


TOTAL_STEPS = 7

_STEPS = {
    CanonicalStatus.NOT_STARTED: 0,
    CanonicalStatus.SOURCE_FINALIZED: 1,
    CanonicalStatus.COMMITTING: 2,
    CanonicalStatus.COMMITTED: 3,
    CanonicalStatus.BLESSING: 4,
    CanonicalStatus.BLESSED: 5,
    CanonicalStatus.EXECUTING: 6,
    CanonicalStatus.SUCCESS: 7,
    CanonicalStatus.FAILED: -1,
}

_DESCRIPTIONS = {
    CanonicalStatus.NOT_STARTED: "Transaction not yet initiated",
    CanonicalStatus.SOURCE_FINALIZED: "Source transaction finalized",
    CanonicalStatus.COMMITTING: "CCIP committing to destination chain",
    CanonicalStatus.COMMITTED: "Transaction committed on destination",
    CanonicalStatus.BLESSING: "Security blessing in progress",
    CanonicalStatus.BLESSED: "Security blessing completed",
    CanonicalStatus.EXECUTING: "Executing on destination chain",
    CanonicalStatus.SUCCESS: "Cross-chain transfer completed",
    CanonicalStatus.FAILED: "Transfer failed",
}

_TIME_ESTIMATES = {
    CanonicalStatus.NOT_STARTED: "15-20 minutes",
    CanonicalStatus.SOURCE_FINALIZED: "10-15 minutes",
    CanonicalStatus.COMMITTING: "8-12 minutes",
    CanonicalStatus.COMMITTED: "5-8 minutes",
    CanonicalStatus.BLESSING: "3-5 minutes",
    CanonicalStatus.BLESSED: "1-2 minutes",
    CanonicalStatus.EXECUTING: "< 1 minute",
    CanonicalStatus.SUCCESS: "Complete",
    CanonicalStatus.FAILED: "Failed",
}


class Payment(BaseModel):
    """Payment record, one per funds-lock event."""

    id: str
    amount: Decimal
    currency: str = "USDC"
    source_chain_id: int = Field(..., alias="chain_id")
    payer_identity: str = Field(..., alias="payer_wallet")
    recipient_identity: str = Field(..., alias="recipient_wallet")
    status: PaymentStatus = PaymentStatus.ESCROWED
    source_tx_hash: Optional[str] = Field(None, alias="tx_hash")
    delivery_message_id: Optional[str] = Field(None, alias="delivery_tx_hash")
    delivery_submission_tx_hash: Optional[str] = None
    tracking_degraded: bool = False
    confirmation_started_at: Optional[datetime] = None
    refund_tx_hash: Optional[str] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    manual_completion: bool = False
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if isinstance(value, PaymentStatus):
            return value
        if isinstance(value, str):
            lowered = value.lower()
            if lowered in _LEGACY_STATUSES:
                return _LEGACY_STATUSES[lowered]
            if lowered not in {s.value for s in PaymentStatus}:
                raise ValueError(f"Unknown payment status '{value}'")
            return lowered
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_party(self, actor: str) -> bool:
        """True if ``actor`` is the payer or the recipient (case-insensitive)."""
        if not actor:
            return False
        actor = actor.lower()
        return actor in (self.payer_identity.lower(), self.recipient_identity.lower())

    def to_record(self) -> dict[str, Any]:
        """Serialize using the persisted column names."""
        return self.model_dump(by_alias=True, mode="json")


# Python field name -> persisted column name
PAYMENT_COLUMNS: dict[str, str] = {
    name: (info.alias or name) for name, info in Payment.model_fields.items()
}


@dataclass
class DeliveryTrackingState:
    """Ephemeral tracking state for one in-flight message. Never persisted."""

    payment_id: str
    message_id: str
    canonical_status: CanonicalStatus = CanonicalStatus.NOT_STARTED
    poll_attempts: int = 0
    last_error: Optional[str] = None
    last_source: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    timed_out: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.canonical_status.is_terminal

    @property
    def refund_eligible(self) -> bool:
        """A confirming payment may be refunded after a failure or a timeout."""
        return self.canonical_status is CanonicalStatus.FAILED or self.timed_out


@dataclass
class LogEntry:
    """A single event log from a transaction receipt."""

    address: str
    topics: list[str]
    data: str = "0x"
    log_index: Optional[int] = None


@dataclass
class Receipt:
    """Transaction receipt, reduced to the fields settlement needs."""

    transaction_hash: str
    status: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    logs: list[LogEntry] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass
class DeliveryEvent:
    """Decoded ``TokensTransferred`` event emitted by the source contract."""

    message_id: str
    destination_chain_selector: int
    receiver: str
    token: str
    token_amount: int
    fee_token: str
    fees: int
