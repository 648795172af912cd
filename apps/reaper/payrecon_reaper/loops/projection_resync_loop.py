"""Projection resync loop.

Organization sync after a confirmation is best-effort. This loop repairs
organizations whose projected subscription fields drifted from their
subscription row:
- Scan: active subscriptions whose organization disagrees on status, plan
  or end date, or still carries a trial marker
- Repair: OrganizationSync.sync per organization
- Interval: 10 minutes (configurable)
"""

import logging

from sqlalchemy.orm import Session, sessionmaker

from payrecon_api.billing.org_sync import OrganizationSync
from payrecon_reaper.shutdown import shutdown_event

logger = logging.getLogger(__name__)


def projection_resync_loop(
    session_factory: sessionmaker[Session],
    interval_seconds: int = 600,
    limit_per_scan: int = 100,
    stop_after_one_iteration: bool = False,
) -> None:
    """Periodically re-apply drifted organization projections."""
    org_sync = OrganizationSync(session_factory)
    logger.info(
        f"Projection resync loop started (interval={interval_seconds}s, limit={limit_per_scan})"
    )

    iteration = 0
    total_synced = 0

    while not shutdown_event.is_set():
        iteration += 1
        try:
            total_synced += org_sync.resync_stale(limit=limit_per_scan)
        except Exception as e:
            logger.error(f"Projection resync loop error in iteration {iteration}: {e}", exc_info=True)

        if stop_after_one_iteration:
            break

        shutdown_event.wait(interval_seconds)

    logger.info(
        f"Projection resync loop stopped after {iteration} iterations",
        extra={"total_iterations": iteration, "total_synced": total_synced},
    )
