"""
Payment confirmation reconciliation.

After the customer is sent to the gateway, a ``ReconciliationLoop`` decides,
exactly once, whether the payment went through. It reads the payment record on
every tick, trusting whatever the webhook wrote there. Once the record has
stayed ``pending`` for ``verify_after_attempts`` ticks it also asks the gateway
directly and heals the record itself through ``write_if_pending``. After
``max_attempts`` ticks it gives up with ``TIMED_OUT``, which is not a failure:
money may have moved, the confirmation just did not arrive in time.

The loop never sleeps. Drivers call ``step()`` on a timer: the Celery task in
``tasks.py`` in production, ``run_until_settled`` for the command line.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from django.conf import settings
from django.db import DatabaseError
from django.utils import timezone

from .exceptions import NetworkFailure
from .models import PaymentRecord
from .notifier import CrossContextNotifier, PaymentStatusMessage
from .store import PaymentRecordStore, WriteOutcome

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    INITIATED = "initiated"
    POLLING = "polling"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (LoopState.SUCCESS, LoopState.FAILED, LoopState.TIMED_OUT)


OUTCOME_MESSAGES = {
    "initialization_failed": "We couldn't start your payment. Please try again.",
    LoopState.SUCCESS.value: "Payment confirmed. Thank you!",
    LoopState.FAILED.value: "Your payment was declined. You can try again with another method.",
    LoopState.TIMED_OUT.value: (
        "We couldn't confirm your payment yet. If you were charged, "
        "please contact support with your payment reference."
    ),
}


@dataclass(frozen=True)
class ReconciliationPolicy:
    poll_interval: float = 5.0
    verify_after_attempts: int = 3
    max_attempts: int = 12

    def __post_init__(self) -> None:
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.verify_after_attempts < 1 or self.max_attempts < 1:
            raise ValueError("attempt limits must be at least 1")

    @classmethod
    def from_settings(cls) -> "ReconciliationPolicy":
        return cls(
            poll_interval=getattr(settings, "PAYMENT_POLL_INTERVAL_SECONDS", 5.0),
            verify_after_attempts=getattr(settings, "PAYMENT_VERIFY_AFTER_ATTEMPTS", 3),
            max_attempts=getattr(settings, "PAYMENT_MAX_POLL_ATTEMPTS", 12),
        )


@dataclass
class ReconciliationAttempt:
    reference: str
    attempt_count: int = 0
    started_at: datetime = field(default_factory=timezone.now)
    last_status: Optional[str] = None


SuccessCallback = Callable[..., object]


class ReconciliationLoop:
    """One loop per payment reference; shares nothing with other loops but the store."""

    def __init__(
        self,
        reference: str,
        store: PaymentRecordStore,
        gateway,
        policy: Optional[ReconciliationPolicy] = None,
        on_success: Optional[SuccessCallback] = None,
        attempt: Optional[ReconciliationAttempt] = None,
    ) -> None:
        self.reference = reference
        self.store = store
        self.gateway = gateway
        self.policy = policy or ReconciliationPolicy.from_settings()
        self.on_success = on_success
        self.attempt = attempt
        # A loop rebuilt mid-run (next Celery tick) carries on polling.
        self.state = LoopState.POLLING if attempt is not None and attempt.attempt_count else LoopState.INITIATED
        self.order_id = None
        self.transaction_id: Optional[str] = None
        self._stopped = threading.Event()

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    @property
    def user_message(self) -> Optional[str]:
        return OUTCOME_MESSAGES.get(self.state.value)

    def start(self) -> None:
        if self.state is not LoopState.INITIATED:
            return
        if self.attempt is None:
            self.attempt = ReconciliationAttempt(reference=self.reference)
        self._transition(LoopState.POLLING)

    def cancel(self) -> None:
        """Stop the loop and wake any driver waiting for the next tick. The record is left untouched."""
        if not self.stopped:
            logger.info("Reconciliation for %s cancelled in state %s", self.reference, self.state.value)
        self._stopped.set()

    def wait(self, timeout: float) -> bool:
        """Sleep until the next tick; True when the loop was cancelled meanwhile."""
        return self._stopped.wait(timeout)

    def step(self, notifier: Optional[CrossContextNotifier] = None) -> LoopState:
        """One timer fire: poll, treating a waiting cross-context message as a reason to verify now."""
        if notifier is not None and not self.is_terminal and not self.stopped:
            message = notifier.receive(self.reference)
            if message is not None:
                self.receive(message)
                return self.state
        return self.tick()

    def tick(self, verify_now: bool = False) -> LoopState:
        if self.is_terminal or self.stopped:
            return self.state
        self.start()

        record = self._read()
        if record is not None and record.is_terminal:
            self.attempt.last_status = record.status
            self._settle_from_record(record)
            return self.state

        self.attempt.last_status = PaymentRecord.STATUS_PENDING
        self.attempt.attempt_count += 1
        if verify_now or self.attempt.attempt_count >= self.policy.verify_after_attempts:
            self._verify_directly()
            if self.is_terminal:
                return self.state

        if self.attempt.attempt_count >= self.policy.max_attempts:
            self._transition(LoopState.TIMED_OUT)
        return self.state

    def receive(self, message: PaymentStatusMessage) -> bool:
        """
        Accept a terminal status observed by another browsing context.

        Ignored when it is for another reference or when this loop already
        reached a terminal state, since our own result is at least as recent.
        Otherwise it counts as a tick: the record wins when it is already
        terminal, and a still-pending record is verified with the gateway right
        away instead of waiting for the threshold. The order is never finalized
        off a message alone. Returns True when the loop settled.
        """
        if self.is_terminal or self.stopped or message.reference != self.reference:
            return False
        logger.info("Reconciliation for %s received %s from another context", self.reference, message.status)
        self.tick(verify_now=True)
        return self.is_terminal

    def describe(self) -> dict:
        attempt = self.attempt
        return {
            "reference": self.reference,
            "state": self.state.value,
            "attempt_count": attempt.attempt_count if attempt else 0,
            "started_at": attempt.started_at.isoformat() if attempt else None,
            "last_status": attempt.last_status if attempt else None,
            "transaction_id": self.transaction_id,
            "message": self.user_message,
        }

    def _read(self) -> Optional[PaymentRecord]:
        try:
            record = self.store.read(self.reference)
        except DatabaseError:
            logger.warning("Could not read payment record %s; retrying next tick", self.reference, exc_info=True)
            return None
        if record is not None:
            self.order_id = record.order_id
        return record

    def _verify_directly(self) -> None:
        try:
            result = self.gateway.verify(self.reference)
        except NetworkFailure as exc:
            logger.warning(
                "Fallback verification for %s inconclusive (attempt %s): %s",
                self.reference,
                self.attempt.attempt_count,
                exc,
            )
            return

        logger.info(
            "Fallback verification for %s (attempt %s): %s payload=%s",
            self.reference,
            self.attempt.attempt_count,
            result.status,
            result.raw,
        )
        if not result.is_terminal:
            return

        try:
            outcome = self.store.write_if_pending(
                self.reference,
                result.status,
                result.transaction_id,
                result.raw,
                source="fallback",
            )
        except DatabaseError:
            logger.warning(
                "Could not store fallback result %s for %s; retrying next tick",
                result.status,
                self.reference,
                exc_info=True,
            )
            return
        if outcome is WriteOutcome.APPLIED:
            if result.status == PaymentRecord.STATUS_SUCCESS:
                self._succeed(result.transaction_id)
            else:
                self._transition(LoopState.FAILED)
        elif outcome is WriteOutcome.ALREADY_RESOLVED:
            # Someone else wrote first; their value stands even if it disagrees.
            record = self._read()
            if record is not None and record.is_terminal:
                self._settle_from_record(record)
        else:
            logger.error("Payment record %s vanished during fallback verification", self.reference)

    def _settle_from_record(self, record: PaymentRecord) -> None:
        if record.status == PaymentRecord.STATUS_SUCCESS:
            self._succeed(record.gateway_transaction_id)
        else:
            self._transition(LoopState.FAILED)

    def _succeed(self, transaction_id: Optional[str]) -> None:
        self.transaction_id = transaction_id
        self._transition(LoopState.SUCCESS)
        if self.on_success is None:
            return
        try:
            self.on_success(order_id=self.order_id, reference=self.reference, transaction_id=transaction_id)
        except DatabaseError:
            # The record already says success; the stale payment sweeper finalizes the order later.
            logger.exception("Finalizing order %s for %s failed", self.order_id, self.reference)

    def _transition(self, new_state: LoopState) -> None:
        logger.info(
            "Reconciliation %s: %s -> %s (attempt %s)",
            self.reference,
            self.state.value,
            new_state.value,
            self.attempt.attempt_count if self.attempt else 0,
        )
        self.state = new_state


def run_until_settled(loop: ReconciliationLoop, notifier: Optional[CrossContextNotifier] = None) -> LoopState:
    """Drive ``loop`` in the current thread until it settles or ``loop.cancel()`` is called."""
    loop.start()
    while not loop.is_terminal:
        if loop.wait(loop.policy.poll_interval):
            break
        loop.step(notifier)
    return loop.state
