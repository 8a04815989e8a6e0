"""
Manual override heuristic and display progress.

Nothing here drives a state transition. The progress estimate blends time
spent in ``confirming`` with the oracle's stage so users see movement even
when status sources are slow, and ``manual_override_available`` decides when
the human-attested completion path is offered.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ccip_settlement.models import CanonicalStatus, PaymentStatus, utc_now

MANUAL_OVERRIDE_AFTER = 180.0

# Elapsed time alone reaches at most 70% over five minutes
BASE_PROGRESS_WINDOW = 300.0
BASE_PROGRESS_CAP = 70.0
DEGRADED_BONUS = 20.0

STAGE_PROGRESS: dict[CanonicalStatus, float] = {
    CanonicalStatus.SOURCE_FINALIZED: 25.0,
    CanonicalStatus.COMMITTING: 40.0,
    CanonicalStatus.COMMITTED: 55.0,
    CanonicalStatus.BLESSING: 70.0,
    CanonicalStatus.BLESSED: 80.0,
    CanonicalStatus.EXECUTING: 90.0,
}

_STAGE_DESCRIPTIONS: dict[CanonicalStatus, str] = {
    CanonicalStatus.SOURCE_FINALIZED: "Transaction confirmed on source chain, initiating cross-chain transfer...",
    CanonicalStatus.COMMITTING: "Committing transaction to destination chain...",
    CanonicalStatus.COMMITTED: "Transaction committed, awaiting security verification...",
    CanonicalStatus.BLESSING: "Security verification in progress...",
    CanonicalStatus.BLESSED: "Verification complete, executing on destination...",
    CanonicalStatus.EXECUTING: "Final execution in progress...",
}

LONG_WAIT_DESCRIPTION = (
    "Cross-chain transfers can take 5-20 minutes. Your transaction is processing normally."
)

EXPLORER_URL = "https://ccip.chain.link/msg/{message_id}"


@dataclass
class ProgressEstimate:
    """Display-only view of a payment's progress."""

    title: str
    description: str
    percent: float
    color: str
    elapsed: float = 0.0
    manual_override_available: bool = False
    time_estimate: Optional[str] = None


def elapsed_since(started_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Seconds since ``started_at`` (0 when unknown or in the future)."""
    if started_at is None:
        return 0.0
    now = now or utc_now()
    return max((now - started_at).total_seconds(), 0.0)


def format_elapsed(seconds: float) -> str:
    """
    Format elapsed seconds as ``m:ss``.

    >>> format_elapsed(125)
    '2:05'
    """
    seconds = int(seconds)
    return f"{seconds // 60}:{seconds % 60:02d}"


def stage_description(
    canonical: Optional[CanonicalStatus],
    elapsed: float,
    threshold: float = MANUAL_OVERRIDE_AFTER,
) -> str:
    if elapsed > threshold:
        return LONG_WAIT_DESCRIPTION
    return _STAGE_DESCRIPTIONS.get(canonical, "Initiating cross-chain transfer...")


def manual_override_available(
    elapsed: float,
    canonical: Optional[CanonicalStatus],
    threshold: float = MANUAL_OVERRIDE_AFTER,
) -> bool:
    """True once ``threshold`` seconds passed and no terminal status is known."""
    if canonical is not None and canonical.is_terminal:
        return False
    return elapsed >= threshold


def explorer_url(message_id: str) -> str:
    return EXPLORER_URL.format(message_id=message_id)


def estimate_progress(
    stage: PaymentStatus,
    canonical: Optional[CanonicalStatus],
    elapsed: float,
    *,
    degraded: bool = False,
    threshold: float = MANUAL_OVERRIDE_AFTER,
) -> ProgressEstimate:
    """
    Estimate display progress for a payment.

    Args:
        stage: Persisted payment status
        canonical: Latest canonical status from tracking, if any
        elapsed: Seconds since confirmation started
        degraded: True when the remote status APIs are not answering
        threshold: Manual override threshold in seconds

    Returns:
        A ``ProgressEstimate``; never used for transitions
    """
    if stage is PaymentStatus.COMPLETED:
        return ProgressEstimate(
            title="Delivery Confirmed",
            description="Cross-chain transfer completed successfully",
            color="green",
            percent=100.0,
            elapsed=elapsed,
        )
    if stage is PaymentStatus.REFUNDED:
        return ProgressEstimate(
            title="Refund Processed",
            description="Funds have been returned to the payer",
            color="orange",
            percent=100.0,
            elapsed=elapsed,
        )
    if stage is PaymentStatus.ESCROWED:
        return ProgressEstimate(
            title="Funds in Escrow",
            description="Ready for delivery confirmation",
            color="yellow",
            percent=0.0,
        )

    base = min(elapsed / BASE_PROGRESS_WINDOW * BASE_PROGRESS_CAP, BASE_PROGRESS_CAP)
    override = manual_override_available(elapsed, canonical, threshold)
    estimate = canonical.time_estimate if canonical else None

    if canonical is CanonicalStatus.SUCCESS:
        return ProgressEstimate(
            title="Cross-Chain Transfer Complete",
            description="Finalizing delivery confirmation...",
            color="green",
            percent=95.0,
            elapsed=elapsed,
            time_estimate=estimate,
        )
    if canonical is CanonicalStatus.FAILED:
        return ProgressEstimate(
            title="Transfer Failed",
            description="The cross-chain transfer encountered an error",
            color="red",
            percent=0.0,
            elapsed=elapsed,
            time_estimate=estimate,
        )
    if degraded:
        return ProgressEstimate(
            title="Processing Transaction",
            description="Cross-chain transfer in progress (tracking temporarily unavailable)",
            color="blue",
            percent=base + DEGRADED_BONUS,
            elapsed=elapsed,
            manual_override_available=override,
            time_estimate=estimate,
        )

    return ProgressEstimate(
        title="Confirming Cross-Chain Delivery",
        description=stage_description(canonical, elapsed, threshold),
        color="blue",
        percent=max(base, STAGE_PROGRESS.get(canonical, 0.0)),
        elapsed=elapsed,
        manual_override_available=override,
        time_estimate=estimate,
    )
