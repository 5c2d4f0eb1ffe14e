"""
Pure transition-function tests (no database, no network)
"""
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from FinalRound.schemas.entitlements import TierType
from FinalRound.services.billing.events import (
    AttachRequested,
    BroadcastPlanUpdate,
    CancelAtProcessor,
    CancelledByUser,
    NormalizedWebhookEvent,
    NotifyUser,
    ReleasedToNewOwner,
    ScheduleCancelRequested,
    WebhookEventType,
)
from FinalRound.services.billing.state_machine import (
    LogicalState,
    Outcome,
    SubscriptionState,
    ensure_cancellable,
    transition,
)
from FinalRound.utils.exceptions import ConflictError, InvalidStateError, NotFoundError, UnknownPlanError

NOW = datetime(2026, 1, 15, 9, 0, 0)
T0 = datetime(2026, 1, 10, 12, 0, 0)

ACTIVE_PRO = SubscriptionState(
    tier="pro",
    subscription_id="I-A",
    plan_id="P-PRO",
    status="active",
    processor_status="ACTIVE",
    next_billing_time=datetime(2026, 2, 10, 10, 0, 0),
    last_event_at=T0,
)


def event(event_type, status=None, tier=None, subscription_id="I-A", occurred_at=None, **kwargs):
    return NormalizedWebhookEvent(
        event_id=kwargs.pop("event_id", "WH-1"),
        event_type=event_type,
        raw_event_type=kwargs.pop("raw_event_type", "BILLING.SUBSCRIPTION." + event_type.value.upper()),
        subscription_id=subscription_id,
        reported_status=status,
        reported_plan_id=kwargs.pop("plan_id", "P-PRO" if tier else None),
        tier=tier,
        occurred_at=occurred_at,
        **kwargs,
    )


def templates(effects):
    return [e.template for e in effects if isinstance(e, NotifyUser)]


class TestWebhookTransitions:
    def test_activated_event_is_idempotent(self):
        start = SubscriptionState(subscription_id="I-A", status="created", plan_id="P-PRO")
        activated = event(WebhookEventType.ACTIVATED, status="ACTIVE", tier=TierType.PRO, occurred_at=T0)

        first = transition(start, activated, NOW)
        second = transition(first.state, activated, NOW)

        assert first.state.tier == "pro"
        assert first.state.status == "active"
        assert second.state == first.state
        assert second.outcome == Outcome.UNCHANGED
        assert second.effects == []

    def test_activation_emits_welcome_email_and_broadcast(self):
        start = SubscriptionState(subscription_id="I-A", status="created")
        result = transition(start, event(WebhookEventType.ACTIVATED, status="ACTIVE", tier=TierType.PRO_PLUS), NOW)

        assert result.state.tier == "pro_plus"
        assert templates(result.effects) == ["subscription_activated"]
        assert result.effects[0].params == {"planName": "Pro Plus"}
        assert any(isinstance(e, BroadcastPlanUpdate) for e in result.effects)

    def test_unmapped_status_leaves_tier_unchanged(self):
        result = transition(
            ACTIVE_PRO,
            event(WebhookEventType.UPDATED, status="SOME_NEW_STATUS", occurred_at=T0 + timedelta(hours=1)),
            NOW,
        )
        assert result.state.tier == "pro"
        assert result.state.status == "unknown"
        assert result.state.processor_status == "SOME_NEW_STATUS"

    def test_unmapped_plan_does_not_change_tier(self):
        result = transition(
            ACTIVE_PRO,
            event(WebhookEventType.UPDATED, status="ACTIVE", plan_id="P-UNKNOWN", occurred_at=T0 + timedelta(hours=1)),
            NOW,
        )
        assert result.state.tier == "pro"
        assert result.state.plan_id == "P-UNKNOWN"

    def test_updated_with_mapped_active_plan_changes_tier(self):
        result = transition(
            ACTIVE_PRO,
            event(WebhookEventType.UPDATED, status="ACTIVE", tier=TierType.PRO_PLUS, plan_id="P-PLUS",
                  occurred_at=T0 + timedelta(hours=1)),
            NOW,
        )
        assert result.state.tier == "pro_plus"

    @pytest.mark.parametrize("event_type,status", [
        (WebhookEventType.CANCELLED, "cancelled"),
        (WebhookEventType.EXPIRED, "expired"),
        (WebhookEventType.SUSPENDED, "suspended"),
    ])
    def test_should_free_events_drop_to_free(self, event_type, status):
        result = transition(ACTIVE_PRO, event(event_type, occurred_at=T0 + timedelta(days=1)), NOW)
        assert result.state.tier == "free"
        assert result.state.status == status
        assert result.state.cancel_at_period_end is False

    def test_cancelled_clears_next_billing_and_sends_email_with_old_plan(self):
        result = transition(ACTIVE_PRO, event(WebhookEventType.CANCELLED, status="CANCELLED"), NOW)
        assert result.state.next_billing_time is None
        assert templates(result.effects) == ["subscription_cancelled"]
        notice = [e for e in result.effects if isinstance(e, NotifyUser)][0]
        assert notice.params["planName"] == "Pro"

    def test_payment_denied_moves_to_failed(self):
        denied = event(WebhookEventType.PAYMENT_DENIED, raw_event_type="PAYMENT.SALE.DENIED")
        result = transition(ACTIVE_PRO, denied, NOW)
        assert result.state.tier == "free"
        assert result.state.status == "failed"
        assert templates(result.effects) == ["payment_failed"]

    def test_payment_failed_notifies_without_changing_tier(self):
        failed = event(WebhookEventType.PAYMENT_FAILED, status="ACTIVE", occurred_at=T0 + timedelta(hours=2))
        result = transition(ACTIVE_PRO, failed, NOW)
        assert result.state.tier == "pro"
        assert templates(result.effects) == ["payment_failed"]

    def test_completed_payment_events_are_ignored(self):
        completed = event(WebhookEventType.PAYMENT_COMPLETED, raw_event_type="PAYMENT.SALE.COMPLETED")
        result = transition(ACTIVE_PRO, completed, NOW)
        assert result.outcome == Outcome.IGNORED
        assert result.state == ACTIVE_PRO

    def test_late_created_never_demotes_active_record(self):
        created = event(WebhookEventType.CREATED, status="APPROVAL_PENDING", occurred_at=T0 + timedelta(minutes=1))
        result = transition(ACTIVE_PRO, created, NOW)
        assert result.state.status == "active"
        assert result.state.tier == "pro"

    def test_stale_event_is_discarded(self):
        older = event(WebhookEventType.SUSPENDED, occurred_at=T0 - timedelta(days=1))
        result = transition(ACTIVE_PRO, older, NOW)
        assert result.outcome == Outcome.STALE
        assert result.state == ACTIVE_PRO

    def test_cancelled_record_is_not_resurrected(self):
        cancelled = replace(ACTIVE_PRO, tier="free", status="cancelled", next_billing_time=None)
        reactivated = event(WebhookEventType.ACTIVATED, status="ACTIVE", tier=TierType.PRO,
                            occurred_at=T0 + timedelta(days=3))
        result = transition(cancelled, reactivated, NOW)
        assert result.outcome == Outcome.TERMINAL
        assert result.state == cancelled

    def test_last_event_at_only_moves_forward(self):
        later = T0 + timedelta(days=2)
        result = transition(ACTIVE_PRO, event(WebhookEventType.UPDATED, status="ACTIVE", occurred_at=later), NOW)
        assert result.state.last_event_at == later

    def test_cycle_completed_without_flag_does_not_cancel(self):
        cycle = event(WebhookEventType.CYCLE_COMPLETED, status="ACTIVE", occurred_at=T0 + timedelta(days=30))
        result = transition(ACTIVE_PRO, cycle, NOW)
        assert not any(isinstance(e, CancelAtProcessor) for e in result.effects)


class TestDeferredCancellation:
    def test_schedule_sets_flag_and_keeps_tier(self):
        result = transition(ACTIVE_PRO, ScheduleCancelRequested(), NOW)
        assert result.state.tier == "pro"
        assert result.state.cancel_at_period_end is True
        assert result.state.cancel_scheduled_at == NOW
        assert result.state.logical_state == LogicalState.ACTIVE_CANCEL_PENDING
        assert result.effects == [BroadcastPlanUpdate()]

    def test_schedule_twice_is_a_no_op(self):
        scheduled = transition(ACTIVE_PRO, ScheduleCancelRequested(), NOW).state
        again = transition(scheduled, ScheduleCancelRequested(), NOW + timedelta(minutes=5))
        assert again.outcome == Outcome.UNCHANGED
        assert again.state == scheduled

    def test_cycle_completed_requests_exactly_one_cancel(self):
        scheduled = transition(ACTIVE_PRO, ScheduleCancelRequested(), NOW).state
        cycle = event(WebhookEventType.CYCLE_COMPLETED, status="ACTIVE", occurred_at=NOW + timedelta(days=26))

        result = transition(scheduled, cycle, NOW + timedelta(days=26))

        cancels = [e for e in result.effects if isinstance(e, CancelAtProcessor)]
        assert len(cancels) == 1
        assert cancels[0].subscription_id == "I-A"
        assert result.state.cancel_at_period_end is True
        assert result.state.tier == "pro"

    def test_cycle_completed_before_scheduling_does_not_cancel(self):
        scheduled = transition(ACTIVE_PRO, ScheduleCancelRequested(), NOW).state
        earlier_cycle = event(WebhookEventType.CYCLE_COMPLETED, status="ACTIVE", occurred_at=NOW - timedelta(hours=1))
        result = transition(scheduled, earlier_cycle, NOW)
        assert not any(isinstance(e, CancelAtProcessor) for e in result.effects)

    def test_schedule_requires_subscription(self):
        with pytest.raises(NotFoundError):
            transition(SubscriptionState(), ScheduleCancelRequested(), NOW)

    def test_schedule_rejects_foreign_subscription_id(self):
        with pytest.raises(NotFoundError):
            transition(ACTIVE_PRO, ScheduleCancelRequested("I-OTHER"), NOW)

    def test_schedule_requires_active_status(self):
        suspended = replace(ACTIVE_PRO, status="suspended", tier="free")
        with pytest.raises(InvalidStateError):
            transition(suspended, ScheduleCancelRequested(), NOW)

    def test_cancelled_webhook_clears_flag(self):
        scheduled = transition(ACTIVE_PRO, ScheduleCancelRequested(), NOW).state
        result = transition(scheduled, event(WebhookEventType.CANCELLED, status="CANCELLED"), NOW)
        assert result.state.cancel_at_period_end is False
        assert result.state.cancel_scheduled_at is None


class TestUserActions:
    def attach(self, subscription_id="I-A", status="ACTIVE", tier=TierType.PRO):
        return AttachRequested(
            subscription_id=subscription_id,
            reported_status=status,
            plan_id="P-PRO",
            tier=tier,
            next_billing_time=datetime(2026, 2, 1),
        )

    def test_attach_from_free(self):
        result = transition(SubscriptionState(), self.attach(), NOW)
        assert result.state.tier == "pro"
        assert result.state.status == "active"
        assert result.state.subscription_id == "I-A"
        assert templates(result.effects) == ["subscription_activated"]

    def test_attach_different_subscription_while_active_conflicts(self):
        with pytest.raises(ConflictError):
            transition(ACTIVE_PRO, self.attach("I-B"), NOW)

    def test_reattach_same_subscription_is_allowed(self):
        result = transition(ACTIVE_PRO, self.attach("I-A"), NOW)
        assert result.state.subscription_id == "I-A"

    def test_attach_after_cancellation_revives_record(self):
        cancelled = replace(ACTIVE_PRO, tier="free", status="cancelled")
        result = transition(cancelled, self.attach("I-B"), NOW)
        assert result.state.status == "active"
        assert result.state.subscription_id == "I-B"

    def test_attach_requires_active_processor_status(self):
        with pytest.raises(InvalidStateError):
            transition(SubscriptionState(), self.attach(status="APPROVAL_PENDING"), NOW)

    def test_attach_requires_known_plan(self):
        with pytest.raises(UnknownPlanError):
            transition(SubscriptionState(), self.attach(tier=None), NOW)

    def test_cancelled_by_user(self):
        result = transition(ACTIVE_PRO, CancelledByUser("I-A", "User requested cancellation"), NOW)
        assert result.state.tier == "free"
        assert result.state.status == "cancelled"
        assert result.state.next_billing_time is None
        assert templates(result.effects) == ["subscription_cancelled"]

    def test_cancelled_by_user_ignores_replacement_subscription(self):
        # I-A was cancelled at the processor, but the record now holds I-B
        replaced = replace(ACTIVE_PRO, subscription_id="I-B")
        result = transition(replaced, CancelledByUser("I-A", "User requested cancellation"), NOW)
        assert result.outcome == Outcome.UNCHANGED
        assert (result.state.status, result.state.tier) == ("active", "pro")
        assert result.state.subscription_id == "I-B"
        assert result.effects == []

    def test_ensure_cancellable(self):
        with pytest.raises(NotFoundError):
            ensure_cancellable(SubscriptionState())
        with pytest.raises(InvalidStateError):
            ensure_cancellable(replace(ACTIVE_PRO, status="expired"))
        ensure_cancellable(ACTIVE_PRO)

    def test_release_to_new_owner(self):
        stale = replace(ACTIVE_PRO, status="cancelled", tier="free")
        result = transition(stale, ReleasedToNewOwner("I-A"), NOW)
        assert result.state.subscription_id is None
        assert result.state.tier == "free"

    def test_unknown_event_type_raises(self):
        with pytest.raises(TypeError):
            transition(ACTIVE_PRO, object(), NOW)
