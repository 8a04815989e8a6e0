"""
Settlement state machine.

Drives a payment through ``escrowed -> confirming -> completed`` or to
``refunded``. The delivery transfer is submitted on the source chain, the
CCIP message id is read from the receipt, and a tracker polls the status
oracle until the message settles on the destination chain.

Every operation takes the acting wallet explicitly and runs under a
per-payment lock. Status changes are persisted through the reconciliation
adapter before an operation returns.

Example:
    >>> machine = SettlementStateMachine(store, chain_client, oracle, config)
    >>> await machine.resume_all()
    >>> payment = await machine.confirm_delivery("7d0f...", actor="0xSeller...")
    >>> payment.status
    <PaymentStatus.CONFIRMING: 'confirming'>
    >>> await machine.wait_for_tracking(payment.id)
    <CanonicalStatus.SUCCESS: 'SUCCESS'>
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

from ccip_settlement.chain_client import ChainClient, Web3ChainClient
from ccip_settlement.config import SettlementConfig
from ccip_settlement.exceptions import (
    AuthorizationError,
    ConcurrentUpdateError,
    InvalidStateError,
    ParseError,
    PersistenceError,
    SubmissionError,
    TrackingTimeoutError,
)
from ccip_settlement.models import (
    CanonicalStatus,
    DeliveryTrackingState,
    Payment,
    PaymentStatus,
    utc_now,
)
from ccip_settlement.oracle import RemoteApiSource, StatusOracle
from ccip_settlement.progress import (
    ProgressEstimate,
    elapsed_since,
    estimate_progress,
    manual_override_available,
)
from ccip_settlement.receipts import extract_message_id, to_base_units
from ccip_settlement.reconciliation import ReconciliationAdapter
from ccip_settlement.store import PaymentStore, RestPaymentStore
from ccip_settlement.tracker import DeliveryTracker

logger = logging.getLogger(__name__)

UpdateListener = Callable[[Union[Payment, DeliveryTrackingState]], None]


@dataclass
class SubmittedTransition:
    """A chain transaction that was accepted but whose transition is not stored yet."""

    action: str  # "delivery" or "refund"
    tx_hash: str
    fields: dict[str, Any]


class SettlementStateMachine:
    """
    Public settlement operations for escrowed cross-chain payments.

    Args:
        store: Payment store
        chain_client: Source/destination chain access
        oracle: Status oracle used by the delivery tracker
        config: Settlement configuration
        clock: Returns the current UTC time (injectable for tests)
        owns_store: Close the store on ``shutdown``
    """

    def __init__(
        self,
        store: PaymentStore,
        chain_client: ChainClient,
        oracle: StatusOracle,
        config: SettlementConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
        owns_store: bool = False,
    ):
        self.config = config
        self.chain_client = chain_client
        self.oracle = oracle
        self.clock = clock
        self.tracker = DeliveryTracker.from_config(
            oracle,
            config,
            on_outcome=self._apply_tracking_outcome,
            on_poll=self._publish,
        )
        self.reconciler = ReconciliationAdapter(store, self.tracker)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._confirmations: dict[str, asyncio.Task] = {}
        self._unrecorded: dict[str, SubmittedTransition] = {}
        self._owns_store = owns_store
        self._listeners: list[UpdateListener] = []

    @classmethod
    def from_config(
        cls,
        config: SettlementConfig,
        *,
        store: Optional[PaymentStore] = None,
    ) -> "SettlementStateMachine":
        """
        Wire a machine from configuration.

        Uses ``Web3ChainClient`` and the configured status APIs. Without an
        explicit ``store`` a ``RestPaymentStore`` is opened on ``store_url``
        and closed again by ``shutdown``.
        """
        chain_client = Web3ChainClient.from_config(config)
        owns_store = store is None
        if store is None:
            if not config.store_url:
                raise ValueError("store_url must be configured")
            store = RestPaymentStore(config.store_url, api_key=config.store_api_key)
        return cls(
            store,
            chain_client,
            StatusOracle.from_config(config, chain_client),
            config,
            owns_store=owns_store,
        )

    # =========================================================================
    # Listeners
    # =========================================================================

    def on_update(self, callback: UpdateListener) -> None:
        """Register a callback for tracking polls and persisted transitions."""
        self._listeners.append(callback)

    def _publish(self, update: Union[Payment, DeliveryTrackingState]) -> None:
        for callback in self._listeners:
            try:
                callback(update)
            except Exception:
                logger.exception("Update listener %r failed", callback)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _authorize(payment: Payment, actor: str) -> None:
        if not payment.is_party(actor):
            raise AuthorizationError(
                "Only the payer or the recipient can act on this payment",
                payment_id=payment.id,
            )

    def _elapsed(self, payment: Payment) -> float:
        started_at = payment.confirmation_started_at
        if started_at is None:
            state = self.tracker.state(payment.id)
            started_at = state.started_at if state else None
        return elapsed_since(started_at, self.clock())

    async def _tracking_key(self, payment_id: str, tx_hash: str) -> tuple[str, bool]:
        """Message id from the receipt, or the tx hash when it can't be read."""
        try:
            receipt = await self.chain_client.wait_for_receipt(tx_hash)
        except Exception as e:
            logger.warning(
                "Receipt for %s unavailable, tracking payment %s by transaction hash: %s",
                tx_hash, payment_id, e,
            )
            return tx_hash, True

        if not receipt.succeeded:
            raise SubmissionError(
                f"Delivery transfer {tx_hash} reverted",
                payment_id=payment_id,
            )
        try:
            return extract_message_id(receipt, self.config.source_contract_address), False
        except ParseError as e:
            logger.warning(
                "No CCIP message id in receipt %s, tracking payment %s by transaction hash: %s",
                tx_hash, payment_id, e,
            )
            return tx_hash, True

    def _check_unrecorded(self, payment_id: str, action: str) -> Optional[SubmittedTransition]:
        """Return the unrecorded ``action`` transaction; refuse anything else meanwhile."""
        pending = self._unrecorded.get(payment_id)
        if pending is not None and pending.action != action:
            raise InvalidStateError(
                f"The {pending.action} transaction {pending.tx_hash} is not recorded yet",
                payment_id=payment_id,
                next_step="retry",
            )
        return pending

    async def _record_submission(self, payment: Payment, pending: SubmittedTransition) -> Payment:
        """
        Persist the transition for an accepted transaction.

        On failure the transaction is remembered, so retrying the operation
        records the same hash again and never sends a second transaction.

        Raises:
            PersistenceError: If the store write fails
        """
        if payment.status is pending.fields["status"]:
            # An earlier write landed but its response was lost
            self._unrecorded.pop(payment.id, None)
            return payment
        try:
            payment = await self.reconciler.on_transition(payment, pending.fields)
        except Exception as e:
            self._unrecorded[payment.id] = pending
            logger.error(
                "%s transaction %s for payment %s was accepted but not recorded: %s",
                pending.action.capitalize(), pending.tx_hash, payment.id, e,
            )
            raise PersistenceError(
                f"{pending.action.capitalize()} transaction {pending.tx_hash} "
                "was sent but could not be recorded",
                payment_id=payment.id,
                tx_hash=pending.tx_hash,
            ) from e
        self._unrecorded.pop(payment.id, None)
        return payment

    # =========================================================================
    # Operations
    # =========================================================================

    async def get_payment(self, payment_id: str) -> Payment:
        return await self.reconciler.get(payment_id)

    async def confirm_delivery(self, payment_id: str, actor: str) -> Payment:
        """
        Confirm delivery and start the cross-chain transfer to the seller.

        A second call while the first is in flight awaits the same result,
        so the transfer is submitted exactly once.

        Args:
            payment_id: Payment to confirm
            actor: Wallet address of the caller

        Returns:
            The payment, now ``confirming``

        Raises:
            AuthorizationError: If actor is neither payer nor recipient
            InvalidStateError: If the payment is not escrowed
            SubmissionError: If the transfer fails or reverts (state unchanged)
            PersistenceError: If the transfer was sent but not recorded; retrying
                records the same transaction
        """
        payment = await self.reconciler.get(payment_id)
        self._authorize(payment, actor)

        in_flight = self._confirmations.get(payment_id)
        if in_flight is not None:
            logger.info("Confirmation for payment %s already in flight; joining it", payment_id)
            return await asyncio.shield(in_flight)

        task = asyncio.create_task(self._confirm_delivery(payment_id, actor))
        self._confirmations[payment_id] = task
        task.add_done_callback(lambda _: self._confirmations.pop(payment_id, None))
        return await asyncio.shield(task)

    async def _confirm_delivery(self, payment_id: str, actor: str) -> Payment:
        async with self._locks[payment_id]:
            payment = await self.reconciler.get(payment_id)
            self._authorize(payment, actor)
            pending = self._check_unrecorded(payment_id, "delivery")
            if pending is not None:
                logger.info(
                    "Recording delivery transfer %s for payment %s without resubmitting",
                    pending.tx_hash, payment_id,
                )
            else:
                if payment.status is not PaymentStatus.ESCROWED:
                    raise InvalidStateError(
                        f"Cannot confirm delivery of a {payment.status.value} payment",
                        payment_id=payment_id,
                    )
                pending = await self._submit_delivery(payment)

            payment = await self._record_submission(payment, pending)
            self.tracker.start(payment_id, payment.delivery_message_id)

        self._publish(payment)
        return payment

    async def _submit_delivery(self, payment: Payment) -> SubmittedTransition:
        payment_id = payment.id
        amount = to_base_units(payment.amount, self.config.token_decimals)
        logger.info(
            "Confirming delivery of payment %s: %s %s to %s",
            payment_id, payment.amount, payment.currency, payment.recipient_identity,
        )
        try:
            tx_hash = await self.chain_client.submit_delivery_transfer(
                self.config.destination_chain_selector,
                self.config.destination_escrow_address,
                amount,
                payment.recipient_identity,
            )
        except SubmissionError as e:
            raise SubmissionError(e.message, payment_id=payment_id) from e
        except Exception as e:
            logger.error("Delivery transfer for payment %s failed: %s", payment_id, e)
            raise SubmissionError(
                f"Delivery transfer failed: {e}", payment_id=payment_id
            ) from e

        message_id, degraded = await self._tracking_key(payment_id, tx_hash)
        return SubmittedTransition("delivery", tx_hash, {
            "status": PaymentStatus.CONFIRMING,
            "delivery_message_id": message_id,
            "delivery_submission_tx_hash": tx_hash,
            "tracking_degraded": degraded,
            "confirmation_started_at": self.clock(),
        })

    async def request_refund(self, payment_id: str, actor: str) -> Payment:
        """
        Return the escrowed funds to the payer.

        Allowed from ``escrowed``, and from ``confirming`` once delivery
        failed or tracking timed out.

        Raises:
            AuthorizationError: If actor is neither payer nor recipient
            InvalidStateError: If the payment cannot be refunded now
            SubmissionError: If the refund transaction fails (state unchanged)
            PersistenceError: If the refund was sent but not recorded
        """
        async with self._locks[payment_id]:
            payment = await self.reconciler.get(payment_id)
            self._authorize(payment, actor)
            pending = self._check_unrecorded(payment_id, "refund")
            if pending is None:
                self._check_refundable(payment)
                logger.info("Refunding payment %s to %s", payment_id, payment.payer_identity)
                try:
                    refund_tx = await self.chain_client.submit_refund(payment.payer_identity)
                except SubmissionError as e:
                    raise SubmissionError(e.message, payment_id=payment_id) from e
                except Exception as e:
                    logger.error("Refund for payment %s failed: %s", payment_id, e)
                    raise SubmissionError(f"Refund failed: {e}", payment_id=payment_id) from e
                pending = SubmittedTransition("refund", refund_tx, {
                    "status": PaymentStatus.REFUNDED,
                    "refund_tx_hash": refund_tx,
                    "refunded_at": self.clock(),
                })

            payment = await self._record_submission(payment, pending)
            self.tracker.forget(payment_id)

        # Settled payments take no further transitions
        self._locks.pop(payment_id, None)
        self._publish(payment)
        return payment

    def _check_refundable(self, payment: Payment) -> None:
        if payment.status is PaymentStatus.CONFIRMING:
            state = self.tracker.state(payment.id)
            if state is None or not state.refund_eligible:
                raise InvalidStateError(
                    "Refund is only available after the delivery failed or tracking timed out",
                    payment_id=payment.id,
                )
        elif payment.status is not PaymentStatus.ESCROWED:
            raise InvalidStateError(
                f"Cannot refund a {payment.status.value} payment",
                payment_id=payment.id,
            )

    async def mark_manual_complete(self, payment_id: str, actor: str) -> Payment:
        """
        Attest delivery by hand after the override threshold has passed.

        Raises:
            AuthorizationError: If actor is neither payer nor recipient
            InvalidStateError: If not confirming, too early, or delivery failed
        """
        async with self._locks[payment_id]:
            payment = await self.reconciler.get(payment_id)
            self._authorize(payment, actor)
            self._check_unrecorded(payment_id, "manual completion")
            if payment.status is not PaymentStatus.CONFIRMING:
                raise InvalidStateError(
                    f"Cannot complete a {payment.status.value} payment",
                    payment_id=payment_id,
                )

            elapsed = self._elapsed(payment)
            threshold = self.config.manual_override_after
            if elapsed < threshold:
                raise InvalidStateError(
                    f"Manual completion is available {threshold - elapsed:.0f}s from now",
                    payment_id=payment_id,
                    next_step="retry",
                )
            state = self.tracker.state(payment_id)
            if state is not None and state.canonical_status is CanonicalStatus.FAILED:
                raise InvalidStateError(
                    "Delivery failed on the destination chain",
                    payment_id=payment_id,
                    next_step="refund",
                )

            payment = await self.reconciler.on_transition(payment, {
                "status": PaymentStatus.COMPLETED,
                "completed_at": self.clock(),
                "manual_completion": True,
            })
            self.tracker.forget(payment_id)
            logger.warning(
                "Payment %s manually completed by %s after %.0fs",
                payment_id, actor, elapsed,
            )

        self._locks.pop(payment_id, None)
        self._publish(payment)
        return payment

    async def retry_tracking(self, payment_id: str, actor: str) -> DeliveryTrackingState:
        """
        Poll again for a confirming payment whose tracking ended.

        Never resubmits a transaction; uses the persisted tracking key.

        Raises:
            AuthorizationError: If actor is neither payer nor recipient
            InvalidStateError: If not confirming or still being tracked
        """
        async with self._locks[payment_id]:
            payment = await self.reconciler.get(payment_id)
            self._authorize(payment, actor)
            self._check_unrecorded(payment_id, "tracking")
            if payment.status is not PaymentStatus.CONFIRMING:
                raise InvalidStateError(
                    f"Cannot track a {payment.status.value} payment",
                    payment_id=payment_id,
                )
            if self.tracker.is_active(payment_id):
                raise InvalidStateError("Payment is already being tracked", payment_id=payment_id)
            if not payment.delivery_message_id:
                raise InvalidStateError(
                    "Payment has no tracking key", payment_id=payment_id, next_step="manual_complete"
                )
            self.tracker.forget(payment_id)
            return self.tracker.start(payment_id, payment.delivery_message_id)

    async def resume(self, payment_id: str) -> Optional[DeliveryTrackingState]:
        return await self.reconciler.resume(payment_id)

    async def resume_all(self) -> list[DeliveryTrackingState]:
        return await self.reconciler.resume_all()

    # =========================================================================
    # Tracking outcomes
    # =========================================================================

    async def _apply_tracking_outcome(self, state: DeliveryTrackingState) -> None:
        payment_id = state.payment_id
        if state.timed_out:
            logger.warning(
                "Delivery tracking for payment %s timed out after %d polls; "
                "refund or manual completion required",
                payment_id, state.poll_attempts,
            )
            return
        if state.canonical_status is CanonicalStatus.FAILED:
            logger.error(
                "Cross-chain delivery of payment %s failed (message %s); refund available",
                payment_id, state.message_id,
            )
            return
        if state.canonical_status is not CanonicalStatus.SUCCESS:
            return

        async with self._locks[payment_id]:
            try:
                payment = await self.reconciler.get(payment_id)
                if payment.status is not PaymentStatus.CONFIRMING:
                    logger.info(
                        "Ignoring delivery success for payment %s: already %s",
                        payment_id, payment.status.value,
                    )
                    return
                payment = await self.reconciler.on_transition(payment, {
                    "status": PaymentStatus.COMPLETED,
                    "completed_at": self.clock(),
                    "manual_completion": False,
                })
            except ConcurrentUpdateError as e:
                logger.info("Dropping delivery success for payment %s: %s", payment_id, e)
                return
            except Exception as e:
                # Payment stays confirming; retry_tracking records the success again
                logger.exception("Could not record delivery success for payment %s", payment_id)
                state.last_error = f"completion not recorded: {e}"
                self._publish(state)
                return
            self.tracker.forget(payment_id)

        self._locks.pop(payment_id, None)
        logger.info("Payment %s completed via %s", payment_id, state.last_source)
        self._publish(payment)

    # =========================================================================
    # Read-only views
    # =========================================================================

    def tracking_state(self, payment_id: str) -> Optional[DeliveryTrackingState]:
        return self.tracker.state(payment_id)

    async def wait_for_tracking(self, payment_id: str) -> CanonicalStatus:
        """
        Wait until tracking for a payment ends.

        Returns:
            The terminal canonical status (``SUCCESS`` or ``FAILED``)

        Raises:
            InvalidStateError: If the payment is not being tracked
            TrackingTimeoutError: If polling gave up without a terminal status
        """
        state = await self.tracker.wait(payment_id)
        if state is None:
            # Tracking state is dropped once a delivery success is recorded
            payment = await self.reconciler.get(payment_id)
            if payment.status is PaymentStatus.COMPLETED and not payment.manual_completion:
                return CanonicalStatus.SUCCESS
            raise InvalidStateError("Payment is not being tracked", payment_id=payment_id)
        if state.timed_out:
            raise TrackingTimeoutError(
                "Delivery tracking timed out",
                payment_id=payment_id,
                attempts=state.poll_attempts,
            )
        return state.canonical_status

    async def manual_override_available(self, payment_id: str) -> bool:
        payment = await self.reconciler.get(payment_id)
        if payment.status is not PaymentStatus.CONFIRMING:
            return False
        state = self.tracker.state(payment_id)
        return manual_override_available(
            self._elapsed(payment),
            state.canonical_status if state else None,
            self.config.manual_override_after,
        )

    async def progress(self, payment_id: str) -> ProgressEstimate:
        """Display progress for a payment; never drives a transition."""
        payment = await self.reconciler.get(payment_id)
        state = self.tracker.state(payment_id)
        degraded = (
            state is not None
            and state.poll_attempts > 0
            and state.last_source != RemoteApiSource.name
        )
        return estimate_progress(
            payment.status,
            state.canonical_status if state else None,
            self._elapsed(payment),
            degraded=degraded,
            threshold=self.config.manual_override_after,
        )

    async def shutdown(self) -> None:
        """Stop all tracking tasks and close the HTTP clients this machine owns."""
        await self.tracker.shutdown()
        await self.oracle.aclose()
        if self._owns_store:
            await self.reconciler.store.aclose()
        if self._unrecorded:
            logger.error(
                "Shutting down with unrecorded transactions: %s",
                {pid: p.tx_hash for pid, p in self._unrecorded.items()},
            )
