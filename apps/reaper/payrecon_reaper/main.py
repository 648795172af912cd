"""payrecon Reaper main entry point.

Reaper Service: two independent loops that back the API's eventual
consistency.

1. Pending Sweep Loop:
   - Scan: status='pending' AND created_at < NOW - PENDING_SWEEP_THRESHOLD_MIN
   - Settle: verify with Paystack through the reconciler
   - Resume: completed payments with no subscription applied after
     PENDING_SWEEP_PROJECTION_GRACE_MIN (default 10)
   - Interval: PENDING_SWEEP_INTERVAL_SEC (default 300)

2. Projection Resync Loop:
   - Scan: organizations whose subscription projection drifted
   - Repair: re-apply the projection
   - Interval: PROJECTION_RESYNC_INTERVAL_SEC (default 600)
"""

import logging
import threading

from payrecon_api.billing.paystack import PaystackClient
from payrecon_api.config import Settings
from payrecon_api.config.env import get_int
from payrecon_api.db.engine import build_engine, build_sessionmaker
from payrecon_api.utils import configure_json_logging
from payrecon_reaper.loops.pending_sweep_loop import pending_sweep_loop
from payrecon_reaper.loops.projection_resync_loop import projection_resync_loop
from payrecon_reaper.shutdown import install_signal_handlers

logger = logging.getLogger(__name__)


def main() -> None:
    """Main entry point for reaper.

    Runs both loops in separate threads; each payment and each resync gets its
    own session (SQLAlchemy sessions are NOT thread-safe).
    """
    settings = Settings.from_env()
    configure_json_logging(log_level=settings.log_level)
    install_signal_handlers()

    sweep_interval_sec = get_int("PENDING_SWEEP_INTERVAL_SEC", 300)
    sweep_threshold_min = get_int("PENDING_SWEEP_THRESHOLD_MIN", 60)
    sweep_scan_limit = get_int("PENDING_SWEEP_SCAN_LIMIT", 50)
    sweep_projection_grace_min = get_int("PENDING_SWEEP_PROJECTION_GRACE_MIN", 10)
    resync_interval_sec = get_int("PROJECTION_RESYNC_INTERVAL_SEC", 600)
    resync_scan_limit = get_int("PROJECTION_RESYNC_SCAN_LIMIT", 100)

    engine = build_engine(settings.database_url, settings.db_pool, application_name="payrecon-reaper")
    SessionLocal = build_sessionmaker(engine)

    gateway = PaystackClient(
        secret_key=settings.paystack_secret_key,
        base_url=settings.paystack_base_url,
        max_attempts=settings.verify_max_attempts,
        retry_delay=settings.verify_retry_delay_seconds,
        timeout=settings.gateway_timeout_seconds,
    )

    threads = [
        threading.Thread(
            target=projection_resync_loop,
            kwargs={
                "session_factory": SessionLocal,
                "interval_seconds": resync_interval_sec,
                "limit_per_scan": resync_scan_limit,
            },
            name="ProjectionResyncLoop",
            daemon=False,
        ),
    ]
    if settings.paystack_configured:
        threads.append(
            threading.Thread(
                target=pending_sweep_loop,
                kwargs={
                    "session_factory": SessionLocal,
                    "gateway": gateway,
                    "interval_seconds": sweep_interval_sec,
                    "threshold_minutes": sweep_threshold_min,
                    "limit_per_scan": sweep_scan_limit,
                    "projection_grace_minutes": sweep_projection_grace_min,
                },
                name="PendingSweepLoop",
                daemon=False,
            )
        )
    else:
        logger.warning("Pending Sweep Loop: DISABLED (PAYSTACK_SECRET_KEY not configured)")

    logger.info(
        "Starting payrecon Reaper",
        extra={
            "loops": [thread.name for thread in threads],
            "sweep_interval_sec": sweep_interval_sec,
            "sweep_threshold_min": sweep_threshold_min,
            "resync_interval_sec": resync_interval_sec,
        },
    )

    try:
        for thread in threads:
            thread.start()
        # Blocks until SIGTERM/SIGINT sets the shutdown event
        for thread in threads:
            thread.join()
    except KeyboardInterrupt:
        logger.info("Reaper stopped by user (KeyboardInterrupt)")
    finally:
        engine.dispose()
        logger.info("Reaper shutdown complete")


if __name__ == "__main__":
    main()
