"""
Error taxonomy for cross-chain settlement.

Every error carries the payment it concerns (when known) and a ``next_step``
hint so a caller can always offer the user an action instead of a dead end:

- ``"retry"``            - the same operation can simply be tried again
- ``"refund"``           - the escrowed funds can be returned to the payer
- ``"manual_complete"``  - delivery can be attested by hand
- ``None``               - nothing to do (e.g. the payment is already settled)
"""

from typing import Optional


class SettlementError(Exception):
    """Base class for all settlement errors."""

    default_next_step: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        payment_id: Optional[str] = None,
        next_step: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.payment_id = payment_id
        self.next_step = next_step if next_step is not None else self.default_next_step

    def __str__(self) -> str:
        if self.payment_id:
            return f"{self.message} (payment {self.payment_id})"
        return self.message


class AuthorizationError(SettlementError):
    """Actor is neither the payer nor the recipient of the payment."""


class InvalidStateError(SettlementError):
    """Operation is not permitted from the payment's current state."""


class SubmissionError(SettlementError):
    """A transfer or refund transaction could not be submitted or reverted."""

    default_next_step = "retry"


class TrackingDegradedError(SettlementError):
    """Every status source was inconclusive for one poll cycle."""

    def __init__(self, message: str, *, message_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.message_id = message_id


class TrackingTimeoutError(SettlementError):
    """Polling ran out of attempts without a terminal status."""

    default_next_step = "refund"

    def __init__(self, message: str, *, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class ParseError(SettlementError):
    """A receipt or event could not be decoded into a message id."""


class PaymentNotFoundError(SettlementError):
    """The payment store has no record with the requested id."""


class ConcurrentUpdateError(SettlementError):
    """A store update lost its optimistic precondition on ``status``."""

    def __init__(self, message: str, *, expected_status: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.expected_status = expected_status


class PersistenceError(SettlementError):
    """
    A transaction was accepted on chain but its transition was not recorded.

    Retrying the same operation records ``tx_hash`` again instead of sending
    a second transaction.
    """

    default_next_step = "retry"

    def __init__(self, message: str, *, tx_hash: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.tx_hash = tx_hash
