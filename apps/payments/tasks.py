import logging
from typing import Optional

from celery import shared_task
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from . import services
from .notifier import CrossContextNotifier
from .reconciliation import ReconciliationAttempt, ReconciliationPolicy

logger = logging.getLogger(__name__)


def start_reconciliation(reference: str) -> str:
    """Begin (or resume) polling ``reference`` with a fresh attempt budget. Returns the run id."""
    run_id = services.claim_run(reference)
    schedule_reconciliation(reference, run_id, attempt_count=0, started_at=timezone.now().isoformat())
    return run_id


def stop_reconciliation(reference: str) -> None:
    services.release_run(reference)
    logger.info("Reconciliation for %s stopped on request", reference)


def schedule_reconciliation(reference: str, run_id: str, attempt_count: int, started_at: Optional[str]) -> None:
    policy = ReconciliationPolicy.from_settings()
    reconcile_payment.apply_async(
        args=[reference, run_id, attempt_count, started_at],
        countdown=policy.poll_interval,
    )


@shared_task
def reconcile_payment(reference: str, run_id: str, attempt_count: int = 0, started_at: Optional[str] = None) -> str:
    """
    One tick of the reconciliation loop for ``reference``.

    The attempt counters ride along in the task arguments; each non-terminal
    tick enqueues the next one. A run stops as soon as it is no longer the
    current run for the reference (cancelled or superseded by a resume).
    """
    if not services.is_current_run(reference, run_id):
        logger.info("Reconciliation run %s for %s is no longer current", run_id, reference)
        return "stopped"

    attempt = ReconciliationAttempt(
        reference=reference,
        attempt_count=attempt_count,
        started_at=parse_datetime(started_at) if started_at else timezone.now(),
    )
    loop = services.build_loop(reference, attempt=attempt)
    loop.start()
    state = loop.step(CrossContextNotifier())
    services.remember_loop_state(loop)

    if not loop.is_terminal:
        schedule_reconciliation(reference, run_id, attempt.attempt_count, attempt.started_at.isoformat())
    return state.value


@shared_task
def sweep_stale_payments() -> int:
    return services.sweep_stale_payments()
