"""
ccip-settlement: settlement core for cross-chain escrow payments.

Funds are locked on the source chain; confirming delivery bridges them to the
seller over Chainlink CCIP, and the delivery tracker follows the message until
it settles on the destination chain.

Example:
    >>> from ccip_settlement import (
    ...     InMemoryPaymentStore, SettlementConfig, SettlementStateMachine,
    ...     StatusOracle, Web3ChainClient,
    ... )
    >>> config = SettlementConfig()
    >>> chain = Web3ChainClient.from_config(config)
    >>> machine = SettlementStateMachine(
    ...     InMemoryPaymentStore(), chain, StatusOracle.from_config(config, chain), config
    ... )
"""

__version__ = "0.1.0"

from ccip_settlement.chain_client import ChainClient, Web3ChainClient
from ccip_settlement.config import SettlementConfig, configure_logging, get_config
from ccip_settlement.exceptions import (
    AuthorizationError,
    ConcurrentUpdateError,
    InvalidStateError,
    ParseError,
    PaymentNotFoundError,
    PersistenceError,
    SettlementError,
    SubmissionError,
    TrackingDegradedError,
    TrackingTimeoutError,
)
from ccip_settlement.models import (
    CanonicalStatus,
    DeliveryEvent,
    DeliveryTrackingState,
    LogEntry,
    Payment,
    PaymentStatus,
    Receipt,
)
from ccip_settlement.oracle import (
    InFlightDefaultSource,
    OnChainSource,
    RemoteApiSource,
    Resolution,
    StatusOracle,
    StatusSource,
)
from ccip_settlement.progress import ProgressEstimate, estimate_progress, explorer_url
from ccip_settlement.reconciliation import ALLOWED_TRANSITIONS, ReconciliationAdapter
from ccip_settlement.state_machine import SettlementStateMachine
from ccip_settlement.store import InMemoryPaymentStore, PaymentStore, RestPaymentStore
from ccip_settlement.tracker import DeliveryTracker

__all__ = [
    "__version__",
    # State machine
    "SettlementStateMachine",
    "ReconciliationAdapter",
    "ALLOWED_TRANSITIONS",
    "DeliveryTracker",
    # Oracle
    "StatusOracle",
    "StatusSource",
    "RemoteApiSource",
    "OnChainSource",
    "InFlightDefaultSource",
    "Resolution",
    # Chain
    "ChainClient",
    "Web3ChainClient",
    # Store
    "PaymentStore",
    "InMemoryPaymentStore",
    "RestPaymentStore",
    # Models
    "Payment",
    "PaymentStatus",
    "CanonicalStatus",
    "DeliveryTrackingState",
    "Receipt",
    "LogEntry",
    "DeliveryEvent",
    # Progress
    "ProgressEstimate",
    "estimate_progress",
    "explorer_url",
    # Config
    "SettlementConfig",
    "get_config",
    "configure_logging",
    # Errors
    "SettlementError",
    "AuthorizationError",
    "InvalidStateError",
    "SubmissionError",
    "TrackingDegradedError",
    "TrackingTimeoutError",
    "ParseError",
    "PaymentNotFoundError",
    "ConcurrentUpdateError",
    "PersistenceError",
]
