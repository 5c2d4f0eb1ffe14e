"""
Subscription Record Store

Per-user atomic read-modify-write over the `subscriptions` table. Writes are
predicated on the row's `version` column (SQLAlchemy version_id_col), so two
units of work racing on the same user never overwrite each other: the loser
gets StaleDataError, re-reads and recomputes.
"""

from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from FinalRound.config.settings import get_settings
from FinalRound.database.models import Subscription, User
from FinalRound.observability.logging import LogModule, get_module_logger
from FinalRound.services.billing.events import ReleasedToNewOwner
from FinalRound.services.billing.state_machine import SubscriptionState, Transition, transition
from FinalRound.utils.exceptions import ConflictError, NotFoundError, StaleWriteError
from FinalRound.utils.time import utcnow

logger = get_module_logger(LogModule.DATABASE)

Compute = Callable[[SubscriptionState], Transition]


class SubscriptionStore:
    """Subscription record access for one database session."""

    def __init__(self, db: Session, retries: Optional[int] = None):
        self.db = db
        self.retries = retries if retries is not None else get_settings().billing.write_retries

    def get(self, user_id: int) -> Optional[Subscription]:
        stmt = select(Subscription).where(Subscription.user_id == user_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_processor_id(self, subscription_id: str) -> Optional[Subscription]:
        if not subscription_id:
            return None
        stmt = select(Subscription).where(Subscription.processor_subscription_id == subscription_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_state(self, user_id: int) -> SubscriptionState:
        return SubscriptionState.from_record(self.get(user_id))

    def ensure_record(self, user_id: int) -> Subscription:
        """Return the user's record, creating the free default if absent."""
        record = self.get(user_id)
        if record is not None:
            return record

        if self.db.get(User, user_id) is None:
            raise NotFoundError(f"User {user_id} not found", details={"user_id": user_id})

        record = Subscription(user_id=user_id, tier="free")
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            # another unit of work created it first
            self.db.rollback()
            record = self.get(user_id)
            if record is None:
                raise
        return record

    def _reload(self, user_id: int) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def apply(self, user_id: int, compute: Compute) -> Transition:
        """
        Atomically apply `compute` to the user's record.

        `compute` receives a fresh SubscriptionState and returns a Transition;
        it may be called several times if the write loses a race, so it must
        be pure. Errors it raises propagate without any write.

        Raises:
            ConflictError: the new processor subscription id is owned by another record
            StaleWriteError: every attempt lost the race
        """
        self.ensure_record(user_id)

        for attempt in range(1, self.retries + 1):
            record = self._reload(user_id)
            current = SubscriptionState.from_record(record)
            result = compute(current)

            if not result.changed:
                return result

            result.state.apply_to(record)
            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                logger.info(
                    "Subscription write for user %s lost a race (attempt %s/%s), retrying",
                    user_id, attempt, self.retries,
                )
                continue
            except IntegrityError as e:
                self.db.rollback()
                raise ConflictError(
                    "Subscription is already attached to another account",
                    details={"subscription_id": result.state.subscription_id},
                ) from e

            logger.debug(
                "Subscription for user %s: %s -> %s (tier %s -> %s)",
                user_id,
                result.previous.logical_state.value,
                result.state.logical_state.value,
                result.previous.tier,
                result.state.tier,
            )
            return result

        raise StaleWriteError(
            f"Could not update subscription for user {user_id} after {self.retries} attempts",
            details={"user_id": user_id},
        )

    def release_stale_owner(self, subscription_id: str, new_owner_id: int) -> None:
        """Detach `subscription_id` from any other user before re-attaching it.

        An owner whose record is still active keeps it and the attach is
        rejected with ConflictError.
        """
        owner = self.get_by_processor_id(subscription_id)
        if owner is None or owner.user_id == new_owner_id:
            return

        if SubscriptionState.from_record(owner).is_active:
            raise ConflictError(
                "Subscription is already attached to another account",
                details={"subscription_id": subscription_id},
            )

        now = utcnow()
        self.apply(owner.user_id, lambda state: transition(state, ReleasedToNewOwner(subscription_id), now))
        logger.info("Released subscription %s from stale owner %s", subscription_id, owner.user_id)
