"""
Reconciliation and persistence adapter.

Every state change goes through ``on_transition``, which validates the edge,
stamps ``updated_at`` and writes the changed fields with the previous status
as a precondition. ``resume`` rebuilds tracking from the two persisted fields
that matter (``status`` and ``delivery_message_id``) after a restart, without
ever resubmitting a transaction.
"""

import logging
from typing import Any, Optional

from ccip_settlement.exceptions import InvalidStateError
from ccip_settlement.models import DeliveryTrackingState, Payment, PaymentStatus, utc_now
from ccip_settlement.store import PaymentStore
from ccip_settlement.tracker import DeliveryTracker

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.ESCROWED: frozenset({PaymentStatus.CONFIRMING, PaymentStatus.REFUNDED}),
    PaymentStatus.CONFIRMING: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.REFUNDED,
        # Rollback when the initiating transfer fails before a message id exists
        PaymentStatus.ESCROWED,
    }),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def is_valid_transition(current: PaymentStatus, new: PaymentStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def check_transition(current: PaymentStatus, new: PaymentStatus, payment_id: Optional[str] = None) -> None:
    """Raise ``InvalidStateError`` unless ``current -> new`` is an allowed edge."""
    if not is_valid_transition(current, new):
        raise InvalidStateError(
            f"Transition {current.value} -> {new.value} is not allowed",
            payment_id=payment_id,
        )


class ReconciliationAdapter:
    """Writes transitions to the payment store and resumes tracking on restart."""

    def __init__(self, store: PaymentStore, tracker: DeliveryTracker):
        self.store = store
        self.tracker = tracker

    async def get(self, payment_id: str) -> Payment:
        return await self.store.get(payment_id)

    async def on_transition(self, payment: Payment, fields: dict[str, Any]) -> Payment:
        """
        Persist a transition synchronously, before the caller reports success.

        Args:
            payment: Payment as last read (its status is the precondition)
            fields: Changed fields; ``status`` is validated against the edges

        Returns:
            The payment as stored after the update

        Raises:
            InvalidStateError: If the status edge is not allowed
            ConcurrentUpdateError: If the stored status moved on meanwhile
        """
        fields = dict(fields)
        if "status" in fields:
            new_status = PaymentStatus(fields["status"])
            check_transition(payment.status, new_status, payment.id)
            fields["status"] = new_status
        fields.setdefault("updated_at", utc_now())

        updated = await self.store.update(payment.id, fields, expected_status=payment.status)
        if updated.status != payment.status:
            logger.info(
                "Payment %s: %s -> %s",
                payment.id, payment.status.value, updated.status.value,
            )
        return updated

    async def resume(self, payment_id: str) -> Optional[DeliveryTrackingState]:
        """
        Restart tracking for a payment left mid-flight.

        Returns:
            The tracking state, or None if the payment needs no tracking
        """
        payment = await self.store.get(payment_id)
        if payment.status is not PaymentStatus.CONFIRMING:
            logger.debug("Payment %s is %s; nothing to resume", payment_id, payment.status.value)
            return None
        if not payment.delivery_message_id:
            logger.warning(
                "Payment %s is confirming without a tracking key; manual review needed",
                payment_id,
            )
            return None
        logger.info("Resuming tracking for payment %s", payment_id)
        return self.tracker.start(payment.id, payment.delivery_message_id)

    async def resume_all(self) -> list[DeliveryTrackingState]:
        """Resume every confirming payment in the store (process start)."""
        resumed = []
        for payment in await self.store.list_by_status(PaymentStatus.CONFIRMING):
            state = await self.resume(payment.id)
            if state is not None:
                resumed.append(state)
        logger.info("Resumed tracking for %d payment(s)", len(resumed))
        return resumed
