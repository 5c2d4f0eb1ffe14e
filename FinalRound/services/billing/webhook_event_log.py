"""
Webhook Event Log - PayPal 事件审计与去重

Every verified delivery claims its processor event id before any state is
touched. Redeliveries of a processed event are acknowledged as duplicates;
failed or abandoned deliveries can be claimed again.
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from FinalRound.database.models import EventProcessingStatus, WebhookEvent
from FinalRound.observability.logging import LogModule, get_module_logger
from FinalRound.services.billing.events import NormalizedWebhookEvent
from FinalRound.utils.time import utcnow

logger = get_module_logger(LogModule.WEBHOOK)

# a pending claim older than this is treated as abandoned
CLAIM_LEASE = timedelta(minutes=5)


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    DUPLICATE = "duplicate"
    IN_PROGRESS = "in_progress"


class WebhookEventLog:
    def __init__(self, db: Session):
        self.db = db

    def get(self, event_id: str):
        stmt = (
            select(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def claim(self, event: NormalizedWebhookEvent) -> ClaimResult:
        """Take ownership of processing `event` (at most one worker at a time)."""
        row = WebhookEvent(
            event_id=event.event_id,
            event_type=event.raw_event_type or event.event_type.value,
            subscription_id=event.subscription_id,
            processing_status=EventProcessingStatus.PENDING.value,
            attempts=1,
            received_at=utcnow(),
        )
        self.db.add(row)
        try:
            self.db.commit()
            return ClaimResult.CLAIMED
        except IntegrityError:
            self.db.rollback()

        existing = self.get(event.event_id)
        if existing is None:
            return ClaimResult.IN_PROGRESS
        if existing.processing_status == EventProcessingStatus.PROCESSED.value:
            logger.info("Event %s already processed, skipping", event.event_id)
            return ClaimResult.DUPLICATE

        now = utcnow()
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event.event_id)
            .where(
                or_(
                    WebhookEvent.processing_status == EventProcessingStatus.FAILED.value,
                    and_(
                        WebhookEvent.processing_status == EventProcessingStatus.PENDING.value,
                        WebhookEvent.received_at < now - CLAIM_LEASE,
                    ),
                )
            )
            .values(
                processing_status=EventProcessingStatus.PENDING.value,
                attempts=WebhookEvent.attempts + 1,
                received_at=now,
                error_message=None,
            )
        )
        reclaimed = self.db.execute(stmt).rowcount
        self.db.commit()
        if reclaimed:
            logger.info("Retrying event %s (previous status %s)", event.event_id, existing.processing_status)
            return ClaimResult.CLAIMED
        return ClaimResult.IN_PROGRESS

    def _finish(self, event_id: str, status: EventProcessingStatus, error: str = None) -> None:
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(
                processing_status=status.value,
                processed_at=utcnow() if status == EventProcessingStatus.PROCESSED else None,
                error_message=error[:1000] if error else None,
            )
        )
        self.db.execute(stmt)
        self.db.commit()

    def mark_processed(self, event_id: str) -> None:
        self._finish(event_id, EventProcessingStatus.PROCESSED)

    def mark_failed(self, event_id: str, error: str) -> None:
        self._finish(event_id, EventProcessingStatus.FAILED, error)
