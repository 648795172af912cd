"""Organization projection sync.

Copies the active subscription onto the organization row
(subscription_status / subscription_plan / subscription_end_date) and
clears the trial marker. The projection is best-effort: it runs after the
confirming transaction has committed, in its own session, and a failure is
logged as ProjectionSyncFailed without touching the subscription or the
payment. The reaper's resync loop repairs anything left behind.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from payrecon_api.db.models import Organization, Subscription, SubscriptionStatus
from payrecon_api.errors import ProjectionSyncFailed
from payrecon_api.utils.sanitize import sanitize_str

logger = logging.getLogger(__name__)


class OrganizationSync:
    """Best-effort writer of the denormalized organization projection."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def _write(self, db: Session, organization_id: str, plan_id: str, end_date: datetime) -> None:
        stmt = (
            update(Organization)
            .where(Organization.id == organization_id)
            .values(
                subscription_status=SubscriptionStatus.ACTIVE.value,
                subscription_plan=plan_id,
                subscription_end_date=end_date,
                trial_start_date=None,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        if result.rowcount == 0:
            raise LookupError(f"organization {organization_id} does not exist")
        db.commit()

    def sync(self, organization_id: str, plan_id: str, end_date: datetime) -> bool:
        """Project the subscription onto the organization.

        Returns:
            True on success, False if the update failed (logged, not raised)
        """
        db = None
        try:
            db = self.session_factory()
            self._write(db, organization_id, plan_id, end_date)
        except Exception as e:
            if db is not None:
                db.rollback()
            failure = ProjectionSyncFailed(organization_id, e)
            logger.error(
                "ORG_PROJECTION_SYNC_FAILED",
                extra={
                    "organization_id": organization_id,
                    "plan_id": plan_id,
                    "error_type": type(e).__name__,
                    "error_msg": sanitize_str(str(failure)),
                },
            )
            return False
        finally:
            if db is not None:
                db.close()

        logger.info(
            "ORG_PROJECTION_SYNCED",
            extra={
                "organization_id": organization_id,
                "plan_id": plan_id,
                "end_date": end_date.isoformat(),
            },
        )
        return True

    def find_stale(self, db: Session, limit: int = 100) -> list[tuple[str, str, datetime]]:
        """Organizations whose projection disagrees with their active subscription.

        Returns:
            (organization_id, plan_id, end_date) tuples from the subscription rows
        """
        stmt = (
            select(Subscription.organization_id, Subscription.plan_id, Subscription.end_date)
            .join(Organization, Organization.id == Subscription.organization_id)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                or_(
                    Organization.subscription_status.is_distinct_from(SubscriptionStatus.ACTIVE.value),
                    Organization.subscription_plan.is_distinct_from(Subscription.plan_id),
                    Organization.subscription_end_date.is_distinct_from(Subscription.end_date),
                    Organization.trial_start_date.is_not(None),
                ),
            )
            .order_by(Subscription.updated_at.asc())
            .limit(limit)
        )
        return [tuple(row) for row in db.execute(stmt).all()]

    def resync_stale(self, limit: int = 100) -> int:
        """Re-apply the projection for organizations that drifted.

        Returns:
            Number of organizations successfully re-synced
        """
        db = self.session_factory()
        try:
            stale = self.find_stale(db, limit)
        finally:
            db.close()

        synced = 0
        for organization_id, plan_id, end_date in stale:
            if self.sync(organization_id, plan_id, end_date):
                synced += 1

        if stale:
            logger.info(
                "ORG_PROJECTION_RESYNC_COMPLETED",
                extra={"candidates": len(stale), "synced": synced},
            )
        return synced
