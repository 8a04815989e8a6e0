"""
Delivery tracker: one cancellable polling task per in-flight payment.

Tasks are keyed by payment id. Starting tracking for a payment that already
has an active task returns the existing state instead of spawning a second
poller, so resuming after a restart can never double-poll.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ccip_settlement.config import SettlementConfig
from ccip_settlement.exceptions import TrackingDegradedError
from ccip_settlement.models import DeliveryTrackingState
from ccip_settlement.oracle import StatusOracle

logger = logging.getLogger(__name__)

TRACKING_TIMEOUT = "tracking timeout"

OutcomeCallback = Callable[[DeliveryTrackingState], Awaitable[None]]
PollCallback = Callable[[DeliveryTrackingState], None]


class DeliveryTracker:
    """Polls the status oracle for each tracked payment until it settles."""

    def __init__(
        self,
        oracle: StatusOracle,
        *,
        poll_interval: float = 5.0,
        max_attempts: int = 60,
        on_outcome: Optional[OutcomeCallback] = None,
        on_poll: Optional[PollCallback] = None,
    ):
        """
        Initialize the tracker.

        Args:
            oracle: Status oracle to poll
            poll_interval: Seconds between polls
            max_attempts: Polls before giving up with a tracking timeout
            on_outcome: Awaited once per run with the final state
                (terminal status or timeout), from inside the polling task
            on_poll: Called with the state after every poll
        """
        self.oracle = oracle
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.on_outcome = on_outcome
        self.on_poll = on_poll
        self._tasks: dict[str, asyncio.Task] = {}
        self._states: dict[str, DeliveryTrackingState] = {}

    @classmethod
    def from_config(cls, oracle: StatusOracle, config: SettlementConfig, **kwargs) -> "DeliveryTracker":
        return cls(
            oracle,
            poll_interval=config.poll_interval,
            max_attempts=config.max_poll_attempts,
            **kwargs,
        )

    def is_active(self, payment_id: str) -> bool:
        task = self._tasks.get(payment_id)
        return task is not None and not task.done()

    def state(self, payment_id: str) -> Optional[DeliveryTrackingState]:
        """Latest tracking state, kept after the task ends until ``forget``."""
        return self._states.get(payment_id)

    @property
    def active_payments(self) -> list[str]:
        return [pid for pid in self._tasks if self.is_active(pid)]

    def start(self, payment_id: str, message_id: str) -> DeliveryTrackingState:
        """
        Start polling for a payment, unless it is already being polled.

        Returns:
            The tracking state of the (new or existing) poller
        """
        if self.is_active(payment_id):
            logger.info("Payment %s is already being tracked; not starting another poller", payment_id)
            return self._states[payment_id]

        state = DeliveryTrackingState(payment_id=payment_id, message_id=message_id)
        self._states[payment_id] = state
        task = asyncio.create_task(self._run(state), name=f"ccip-tracking-{payment_id}")
        self._tasks[payment_id] = task
        task.add_done_callback(lambda t: self._discard(payment_id, t))
        logger.info("Tracking payment %s via message %s", payment_id, message_id)
        return state

    def _discard(self, payment_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(payment_id) is task:
            del self._tasks[payment_id]

    async def _run(self, state: DeliveryTrackingState) -> DeliveryTrackingState:
        while state.poll_attempts < self.max_attempts:
            state.poll_attempts += 1
            try:
                resolution = await self.oracle.resolve_detailed(state.message_id)
            except TrackingDegradedError as e:
                state.last_error = str(e)
                logger.warning(
                    "Tracking degraded for payment %s (poll %d/%d): %s",
                    state.payment_id, state.poll_attempts, self.max_attempts, e,
                )
            else:
                state.canonical_status = resolution.status
                state.last_source = resolution.source
                state.last_error = None
                logger.debug(
                    "Payment %s poll %d: %s via %s",
                    state.payment_id, state.poll_attempts,
                    resolution.status.value, resolution.source,
                )

            if self.on_poll:
                self.on_poll(state)
            if state.is_terminal:
                break
            if state.poll_attempts < self.max_attempts:
                await asyncio.sleep(self.poll_interval)
        else:
            state.timed_out = True
            state.last_error = TRACKING_TIMEOUT
            logger.warning(
                "Tracking for payment %s gave up after %d polls without a terminal status",
                state.payment_id, state.poll_attempts,
            )

        if self.on_outcome:
            await self.on_outcome(state)
        return state

    async def wait(self, payment_id: str) -> Optional[DeliveryTrackingState]:
        """
        Wait for the payment's poller to finish and return its final state.

        Errors raised by the outcome callback are re-raised here.
        """
        task = self._tasks.get(payment_id)
        if task is not None:
            await asyncio.wait({task})
            if not task.cancelled():
                return task.result()
        return self._states.get(payment_id)

    def cancel(self, payment_id: str) -> None:
        """Stop polling for a payment; its last state is kept."""
        task = self._tasks.pop(payment_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            logger.info("Stopped tracking payment %s", payment_id)

    def forget(self, payment_id: str) -> None:
        """Stop polling and drop the tracking state (the payment settled)."""
        self.cancel(payment_id)
        self._states.pop(payment_id, None)

    async def shutdown(self) -> None:
        """Cancel every poller and wait for them to unwind."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        self._tasks.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Delivery tracker stopped (%d pollers cancelled)", len(tasks))
