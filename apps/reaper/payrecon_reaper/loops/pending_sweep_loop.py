"""Pending sweep loop: settle payments neither confirmation channel reached.

A checkout whose verify request never arrived (closed tab) and whose webhook
was never delivered stays pending forever. The sweep re-runs the verify path
for payments pending longer than the threshold:
- Scan: status='pending' AND created_at < NOW() - threshold
- Settle: ConfirmationReconciler.verify (same ledger CAS as the API)

The same iteration resumes completed payments whose subscription was never
applied (process died between the ledger commit and the projector):
- Scan: status='completed' AND subscription_applied_at IS NULL
- Resume: ConfirmationReconciler.resume_projection
- Interval: 5 minutes (configurable)
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker

from payrecon_api.billing.org_sync import OrganizationSync
from payrecon_api.billing.paystack import PaystackClient
from payrecon_api.billing.reconciler import ConfirmationReconciler, run_inline
from payrecon_api.billing.subscriptions import Clock, SubscriptionProjector, utc_clock
from payrecon_api.db.repo_payments import PaymentLedger
from payrecon_api.errors import GatewayUnavailable, NotConfigured
from payrecon_reaper.shutdown import shutdown_event

logger = logging.getLogger(__name__)


def scan_stale_pending(
    session_factory: sessionmaker[Session],
    threshold_minutes: int,
    limit: int = 50,
) -> list[str]:
    """References of payments pending for longer than threshold_minutes."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=threshold_minutes)
    db = session_factory()
    try:
        payments = PaymentLedger(db).scan_stale_pending(cutoff, limit)
        references = [payment.reference for payment in payments]
    finally:
        db.close()

    if references:
        logger.info(
            f"Pending sweep found {len(references)} stale payments",
            extra={"stale_count": len(references), "scan_limit": limit},
        )
    return references


def _reconciler(
    db: Session,
    session_factory: sessionmaker[Session],
    gateway: PaystackClient,
    clock: Clock,
) -> ConfirmationReconciler:
    return ConfirmationReconciler(
        db=db,
        gateway=gateway,
        verifier=None,
        projector=SubscriptionProjector(db, clock=clock),
        org_sync=OrganizationSync(session_factory),
        dispatch=run_inline,
    )


def reverify_payment(
    session_factory: sessionmaker[Session],
    gateway: PaystackClient,
    reference: str,
    clock: Clock = utc_clock,
) -> bool:
    """Run the verify path for one stale payment.

    Returns:
        True if the payment reached a terminal status, False to retry next iteration
    """
    db = session_factory()
    try:
        reconciler = _reconciler(db, session_factory, gateway, clock)
        outcome = asyncio.run(reconciler.verify(reference))
        logger.info(
            f"Pending sweep settled {reference} as {outcome.status}",
            extra={"reference": reference, "status": outcome.status, "applied": outcome.applied},
        )
        return True

    except GatewayUnavailable:
        # verify() already committed 'failed' before raising
        logger.warning(
            f"Pending sweep: gateway unavailable for {reference}, settled as failed",
            extra={"reference": reference, "outcome": "gateway_unavailable"},
        )
        return True

    except NotConfigured as e:
        logger.error(
            f"Pending sweep cannot verify {reference}: {e.detail}",
            extra={"reference": reference, "outcome": "not_configured"},
        )
        return False

    except Exception as e:
        logger.error(
            f"Pending sweep unexpected error for {reference} (will retry): {e}",
            exc_info=True,
            extra={"reference": reference, "outcome": "unexpected_error"},
        )
        return False

    finally:
        db.close()


def scan_unprojected(
    session_factory: sessionmaker[Session],
    grace_minutes: int,
    limit: int = 50,
) -> list[str]:
    """References of completed payments still missing their subscription."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=grace_minutes)
    db = session_factory()
    try:
        payments = PaymentLedger(db).scan_unprojected_completed(cutoff, limit)
        references = [payment.reference for payment in payments]
    finally:
        db.close()

    if references:
        logger.warning(
            f"Pending sweep found {len(references)} completed payments without a subscription",
            extra={"unprojected_count": len(references), "scan_limit": limit},
        )
    return references


def resume_projection(
    session_factory: sessionmaker[Session],
    gateway: PaystackClient,
    reference: str,
    clock: Clock = utc_clock,
) -> bool:
    """Apply the missing subscription for one completed payment.

    Returns:
        True if the subscription is now applied, False to retry next iteration
    """
    db = session_factory()
    try:
        subscription = _reconciler(db, session_factory, gateway, clock).resume_projection(reference)
        return subscription is not None
    except Exception as e:
        logger.error(
            f"Pending sweep could not resume projection for {reference} (will retry): {e}",
            exc_info=True,
            extra={"reference": reference, "outcome": "projection_resume_error"},
        )
        return False
    finally:
        db.close()


def pending_sweep_loop(
    session_factory: sessionmaker[Session],
    gateway: PaystackClient,
    interval_seconds: int = 300,
    threshold_minutes: int = 60,
    limit_per_scan: int = 50,
    projection_grace_minutes: int = 10,
    clock: Clock = utc_clock,
    stop_after_one_iteration: bool = False,
) -> None:
    """Periodically settle stale pending payments and resume missing projections.

    Args:
        session_factory: Session factory (each payment gets its own session)
        gateway: Paystack client
        interval_seconds: Sleep interval between scans
        threshold_minutes: Minimum age of a pending payment before it is swept
        limit_per_scan: Max payments per iteration (per scan)
        projection_grace_minutes: Minimum age of a completed payment without a
            subscription before its projection is resumed
        clock: Subscription period clock
        stop_after_one_iteration: For testing only - exit after one scan
    """
    logger.info(
        f"Pending sweep loop started (interval={interval_seconds}s, "
        f"threshold={threshold_minutes}min, limit={limit_per_scan})"
    )

    iteration = 0
    total_settled = 0

    while not shutdown_event.is_set():
        iteration += 1
        iteration_start = time.time()

        try:
            references = scan_stale_pending(session_factory, threshold_minutes, limit_per_scan)
            if references:
                settled = sum(
                    1 for reference in references
                    if reverify_payment(session_factory, gateway, reference, clock)
                )
                total_settled += settled
                logger.info(
                    f"Pending sweep iteration {iteration}: {settled}/{len(references)} settled",
                    extra={
                        "iteration": iteration,
                        "settled": settled,
                        "scanned": len(references),
                        "duration_ms": int((time.time() - iteration_start) * 1000),
                        "total_settled": total_settled,
                    },
                )
        except Exception as e:
            logger.error(f"Pending sweep loop error in iteration {iteration}: {e}", exc_info=True)

        try:
            unprojected = scan_unprojected(session_factory, projection_grace_minutes, limit_per_scan)
            resumed = sum(
                1 for reference in unprojected
                if resume_projection(session_factory, gateway, reference, clock)
            )
            if unprojected:
                logger.info(
                    f"Pending sweep iteration {iteration}: {resumed}/{len(unprojected)} projections resumed",
                    extra={"iteration": iteration, "resumed": resumed, "scanned": len(unprojected)},
                )
        except Exception as e:
            logger.error(f"Pending sweep projection resume error in iteration {iteration}: {e}", exc_info=True)

        if stop_after_one_iteration:
            logger.info("Pending sweep loop stopping after one iteration (test mode)")
            break

        # Interruptible sleep - allows immediate shutdown on signal
        shutdown_event.wait(interval_seconds)

    logger.info(
        f"Pending sweep loop stopped gracefully after {iteration} iterations",
        extra={"total_iterations": iteration, "total_settled": total_settled},
    )
