"""Webhook dedup gate.

Paystack redelivers an event until it gets a 2xx and can deliver the same
event twice at once. Each delivery claims its (provider, dedup_key) row
before business processing:

    INSERT ... ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
        row   -> ACQUIRED, first processor
        none  -> UPDATE ... SET status='processing'
                 WHERE status='failed'
                    OR (status='processing' AND last seen before the lease)
                 RETURNING id
                    row  -> RECLAIMED, previous attempt failed or its process died
                    none -> DUPLICATE, done or still in flight

Only deliveries that claim the row run the reconciler. The ledger CAS and
the subscription upsert remain the correctness guarantee.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from payrecon_api.db.engine import dialect_insert
from payrecon_api.db.models import WebhookDedupEvent

logger = logging.getLogger(__name__)

PROVIDER_PAYSTACK = "paystack"

# A 'processing' claim older than this is treated as abandoned
DEFAULT_LEASE_SECONDS = 300


class DedupClaim(str, enum.Enum):
    ACQUIRED = "acquired"
    RECLAIMED = "reclaimed"
    DUPLICATE = "duplicate"

    @property
    def should_process(self) -> bool:
        return self is not DedupClaim.DUPLICATE


class WebhookDedupGate:
    """Per-delivery claim on webhook_dedup_events for one provider."""

    def __init__(
        self,
        db: Session,
        provider: str = PROVIDER_PAYSTACK,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ):
        self.db = db
        self.provider = provider
        self.lease_seconds = lease_seconds

    def _key_filter(self, dedup_key: str):
        return (
            WebhookDedupEvent.provider == self.provider,
            WebhookDedupEvent.dedup_key == dedup_key,
        )

    def claim(self, dedup_key: str, request_hash: Optional[str] = None) -> DedupClaim:
        """Claim processing rights for dedup_key. Commits either way."""
        now = datetime.now(timezone.utc)
        log_extra = {"provider": self.provider, "dedup_key_prefix": dedup_key[:24]}

        insert = dialect_insert(self.db)
        stmt = (
            insert(WebhookDedupEvent)
            .values(
                provider=self.provider,
                dedup_key=dedup_key,
                first_seen_at=now,
                status="processing",
                request_hash=request_hash,
            )
            .on_conflict_do_nothing(index_elements=["provider", "dedup_key"])
            .returning(WebhookDedupEvent.id)
        )
        inserted = self.db.execute(stmt).first()
        if inserted is not None:
            self.db.commit()
            logger.debug("WEBHOOK_DEDUP_ACQUIRED", extra=log_extra)
            return DedupClaim.ACQUIRED

        lease_cutoff = now - timedelta(seconds=self.lease_seconds)
        last_seen = func.coalesce(WebhookDedupEvent.last_seen_at, WebhookDedupEvent.first_seen_at)
        reclaim = (
            update(WebhookDedupEvent)
            .where(
                *self._key_filter(dedup_key),
                or_(
                    WebhookDedupEvent.status == "failed",
                    and_(WebhookDedupEvent.status == "processing", last_seen < lease_cutoff),
                ),
            )
            .values(status="processing", last_seen_at=now)
            .returning(WebhookDedupEvent.id)
            .execution_options(synchronize_session=False)
        )
        reclaimed = self.db.execute(reclaim).first()
        self.db.commit()

        if reclaimed is not None:
            logger.info("WEBHOOK_DEDUP_RETRY_RECLAIMED", extra=log_extra)
            return DedupClaim.RECLAIMED

        logger.info("WEBHOOK_DEDUP_DUPLICATE", extra=log_extra)
        return DedupClaim.DUPLICATE

    def _finish(self, dedup_key: str, status: str) -> None:
        stmt = (
            update(WebhookDedupEvent)
            .where(*self._key_filter(dedup_key))
            .values(status=status, last_seen_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)
        self.db.commit()

    def mark_done(self, dedup_key: str) -> None:
        self._finish(dedup_key, "done")

    def mark_failed(self, dedup_key: str) -> None:
        """Release the claim so the next redelivery can reclaim it."""
        self._finish(dedup_key, "failed")
