"""
SubscriptionStore optimistic-locking tests

Uses a file-backed SQLite database so two sessions hold separate
connections, as two concurrent requests would.
"""
from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from FinalRound.database.models import Base, Subscription, User
from FinalRound.services.billing import SubscriptionStore, Transition
from FinalRound.services.billing.state_machine import Outcome
from FinalRound.utils.exceptions import ConflictError, NotFoundError, StaleWriteError
from FinalRound.utils.time import utcnow


@pytest.fixture
def file_sessions(tmp_path, settings):
    engine = create_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    sessions = [factory(), factory()]
    yield sessions
    for session in sessions:
        session.close()
    engine.dispose()


@pytest.fixture
def user_id(file_sessions):
    session = file_sessions[0]
    user = User(email="race@example.com")
    session.add(user)
    session.commit()
    return user.id


def bump_elsewhere(session, user_id):
    """Concurrent writer: a conditional UPDATE through another connection."""
    session.execute(
        update(Subscription)
        .where(Subscription.user_id == user_id)
        .values(version=Subscription.version + 1, subscriber_email="other@example.com")
    )
    session.commit()


def set_tier(tier):
    def compute(state):
        return Transition(state, replace(state, tier=tier), [], Outcome.APPLIED)
    return compute


def test_ensure_record_creates_free_default(db, user):
    store = SubscriptionStore(db)
    record = store.ensure_record(user.id)
    assert record.tier == "free"
    assert record.version == 1
    assert store.ensure_record(user.id).id == record.id


def test_ensure_record_for_missing_user(db, settings):
    with pytest.raises(NotFoundError):
        SubscriptionStore(db).ensure_record(12345)


def test_unchanged_transition_is_not_written(db, user):
    store = SubscriptionStore(db)
    store.ensure_record(user.id)

    result = store.apply(user.id, lambda state: Transition(state, state, [], Outcome.UNCHANGED))

    assert result.outcome == Outcome.UNCHANGED
    assert store.get(user.id).version == 1


def test_lost_race_is_recomputed_from_fresh_state(file_sessions, user_id):
    mine, theirs = file_sessions
    store = SubscriptionStore(mine, retries=3)
    store.ensure_record(user_id)
    seen = []

    def compute(state):
        seen.append(state.subscriber_email)
        if len(seen) == 1:
            bump_elsewhere(theirs, user_id)
        return set_tier("pro")(state)

    result = store.apply(user_id, compute)

    assert seen == [None, "other@example.com"]
    assert result.state.tier == "pro"
    record = store.get(user_id)
    assert record.tier == "pro"
    assert record.subscriber_email == "other@example.com"
    assert record.version == 3


def test_always_losing_raises_stale_write(file_sessions, user_id):
    mine, theirs = file_sessions
    store = SubscriptionStore(mine, retries=2)
    store.ensure_record(user_id)
    calls = []

    def compute(state):
        calls.append(state)
        bump_elsewhere(theirs, user_id)
        return set_tier("pro")(state)

    with pytest.raises(StaleWriteError):
        store.apply(user_id, compute)
    assert len(calls) == 2


def test_duplicate_processor_id_is_a_conflict(db, user, other_user):
    store = SubscriptionStore(db)

    def attach(subscription_id):
        def compute(state):
            return Transition(state, replace(state, subscription_id=subscription_id, status="cancelled"), [])
        return compute

    store.apply(other_user.id, attach("I-DUP"))
    with pytest.raises(ConflictError):
        store.apply(user.id, attach("I-DUP"))
    assert store.get(user.id).processor_subscription_id is None


def test_release_stale_owner_keeps_active_owner(db, user, other_user):
    store = SubscriptionStore(db)
    store.apply(other_user.id, lambda s: Transition(
        s, replace(s, subscription_id="I-X", status="active", tier="pro"), []
    ))

    with pytest.raises(ConflictError):
        store.release_stale_owner("I-X", user.id)

    store.release_stale_owner("I-X", other_user.id)
    assert store.get(other_user.id).processor_subscription_id == "I-X"


def test_release_stale_owner_detaches_inactive_owner(db, user, other_user):
    store = SubscriptionStore(db)
    store.apply(other_user.id, lambda s: Transition(
        s, replace(s, subscription_id="I-X", status="expired", last_event_at=utcnow() - timedelta(days=1)), []
    ))

    store.release_stale_owner("I-X", user.id)

    assert store.get(other_user.id).processor_subscription_id is None
    assert store.get_by_processor_id("I-X") is None
