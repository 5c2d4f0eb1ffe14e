"""
Subscription State Machine

One pure transition function shared by the webhook path and the user-action
path:

    transition(state, event, now) -> Transition(previous, state, effects, outcome)

It never touches the database or the network. The caller persists
`Transition.state` with a conditional write and only then performs
`Transition.effects`.

Tier rules:
- tier is lowered to free only by an explicit should-free classification
  (CANCELLED / EXPIRED / SUSPENDED / FAILED, or a payment-denied event)
- tier is raised only by an explicit should-activate classification
  (ACTIVATED, or status ACTIVE with a resolvable plan)
- everything else updates bookkeeping fields and leaves tier alone
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from FinalRound.database.models.billing import Subscription
from FinalRound.schemas.billing import SubscriptionStatus
from FinalRound.schemas.entitlements import TierType, normalize_tier
from FinalRound.services.billing.events import (
    AttachRequested,
    BillingEvent,
    BroadcastPlanUpdate,
    CancelAtProcessor,
    CancelledByUser,
    Effect,
    NormalizedWebhookEvent,
    NotifyUser,
    ReleasedToNewOwner,
    ScheduleCancelRequested,
    WebhookEventType,
)
from FinalRound.services.entitlements.plan_config import plan_display_name
from FinalRound.utils.exceptions import ConflictError, InvalidStateError, NotFoundError, UnknownPlanError

SCHEDULED_CANCEL_REASON = "Scheduled cancellation at end of billing period"

TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED.value, SubscriptionStatus.EXPIRED.value})

FREE_STATUSES = frozenset({"CANCELLED", "EXPIRED", "SUSPENDED", "FAILED"})

FREE_EVENT_TYPES = frozenset({
    WebhookEventType.CANCELLED,
    WebhookEventType.EXPIRED,
    WebhookEventType.SUSPENDED,
    WebhookEventType.PAYMENT_DENIED,
})

# events whose type alone decides the resulting status
EVENT_STATUS = {
    WebhookEventType.ACTIVATED: SubscriptionStatus.ACTIVE.value,
    WebhookEventType.CANCELLED: SubscriptionStatus.CANCELLED.value,
    WebhookEventType.EXPIRED: SubscriptionStatus.EXPIRED.value,
    WebhookEventType.SUSPENDED: SubscriptionStatus.SUSPENDED.value,
    WebhookEventType.PAYMENT_DENIED: SubscriptionStatus.FAILED.value,
}

# processor status -> local status
REPORTED_STATUS = {
    "ACTIVE": SubscriptionStatus.ACTIVE.value,
    "APPROVAL_PENDING": SubscriptionStatus.CREATED.value,
    "APPROVED": SubscriptionStatus.CREATED.value,
    "CANCELLED": SubscriptionStatus.CANCELLED.value,
    "EXPIRED": SubscriptionStatus.EXPIRED.value,
    "SUSPENDED": SubscriptionStatus.SUSPENDED.value,
    "FAILED": SubscriptionStatus.FAILED.value,
}

# status entered -> email template
STATUS_TEMPLATES = {
    SubscriptionStatus.ACTIVE.value: "subscription_activated",
    SubscriptionStatus.CANCELLED.value: "subscription_cancelled",
    SubscriptionStatus.EXPIRED.value: "subscription_expired",
    SubscriptionStatus.SUSPENDED.value: "subscription_suspended",
    SubscriptionStatus.FAILED.value: "payment_failed",
}


class LogicalState(str, Enum):
    NO_SUBSCRIPTION = "no_subscription"
    CREATED = "created"
    ACTIVE = "active"
    ACTIVE_CANCEL_PENDING = "active_cancel_pending"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    FAILED = "failed"
    UNKNOWN = "unknown"


class Outcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    STALE = "stale"
    TERMINAL = "terminal"
    IGNORED = "ignored"


@dataclass(frozen=True)
class SubscriptionState:
    """Value snapshot of the fields the state machine owns."""
    tier: str = TierType.FREE.value
    subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    status: Optional[str] = None
    processor_status: Optional[str] = None
    subscriber_email: Optional[str] = None
    next_billing_time: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancel_scheduled_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Optional[Subscription]) -> "SubscriptionState":
        if record is None:
            return cls()
        return cls(
            tier=normalize_tier(record.tier).value,
            subscription_id=record.processor_subscription_id,
            plan_id=record.processor_plan_id,
            status=record.status,
            processor_status=record.processor_status,
            subscriber_email=record.subscriber_email,
            next_billing_time=record.next_billing_time,
            cancel_at_period_end=bool(record.cancel_at_period_end),
            cancel_scheduled_at=record.cancel_scheduled_at,
            last_event_at=record.last_event_at,
        )

    def apply_to(self, record: Subscription) -> None:
        record.tier = self.tier
        record.processor_subscription_id = self.subscription_id
        record.processor_plan_id = self.plan_id
        record.status = self.status
        record.processor_status = self.processor_status
        record.subscriber_email = self.subscriber_email
        record.next_billing_time = self.next_billing_time
        record.cancel_at_period_end = self.cancel_at_period_end
        record.cancel_scheduled_at = self.cancel_scheduled_at
        record.last_event_at = self.last_event_at

    @property
    def logical_state(self) -> LogicalState:
        if not self.subscription_id and not self.status:
            return LogicalState.NO_SUBSCRIPTION
        if self.status == SubscriptionStatus.ACTIVE.value:
            return LogicalState.ACTIVE_CANCEL_PENDING if self.cancel_at_period_end else LogicalState.ACTIVE
        try:
            return LogicalState(self.status)
        except ValueError:
            return LogicalState.UNKNOWN

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def semantic_key(self) -> Tuple:
        """Fields whose change is visible to the user (excludes last_event_at)."""
        return (
            self.tier,
            self.subscription_id,
            self.plan_id,
            self.status,
            self.next_billing_time,
            self.cancel_at_period_end,
            self.cancel_scheduled_at,
        )


@dataclass(frozen=True)
class Transition:
    previous: SubscriptionState
    state: SubscriptionState
    effects: List[Effect] = field(default_factory=list)
    outcome: Outcome = Outcome.APPLIED

    @property
    def changed(self) -> bool:
        return self.state != self.previous


# ==================== classifiers ====================

def should_free(event: NormalizedWebhookEvent) -> bool:
    return event.event_type in FREE_EVENT_TYPES or (event.reported_status or "") in FREE_STATUSES


def should_activate(event: NormalizedWebhookEvent) -> bool:
    if event.event_type == WebhookEventType.ACTIVATED:
        return True
    return event.reported_status == "ACTIVE" and event.tier is not None


def _resolve_status(current: Optional[str], event: NormalizedWebhookEvent) -> Optional[str]:
    explicit = EVENT_STATUS.get(event.event_type)
    if explicit:
        return explicit

    if event.event_type == WebhookEventType.CREATED:
        # a late CREATED never demotes an active record
        if current == SubscriptionStatus.ACTIVE.value:
            return current
        return SubscriptionStatus.CREATED.value

    if not event.reported_status:
        return current
    return REPORTED_STATUS.get(event.reported_status, SubscriptionStatus.UNKNOWN.value)


def _max_time(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _effects_for(previous: SubscriptionState, state: SubscriptionState) -> List[Effect]:
    effects: List[Effect] = []
    if state.status != previous.status and state.status in STATUS_TEMPLATES:
        template = STATUS_TEMPLATES[state.status]
        if state.status == SubscriptionStatus.ACTIVE.value:
            effects.append(NotifyUser(template, {"planName": plan_display_name(state.tier)}))
        else:
            effects.append(NotifyUser(template, {"planName": plan_display_name(previous.tier)}))
    if state.semantic_key() != previous.semantic_key():
        effects.append(BroadcastPlanUpdate())
    return effects


# ==================== webhook path ====================

def _apply_webhook(state: SubscriptionState, event: NormalizedWebhookEvent) -> Transition:
    if event.is_payment_event and event.event_type != WebhookEventType.PAYMENT_DENIED:
        return Transition(state, state, [], Outcome.IGNORED)

    terminal_event = event.event_type in (WebhookEventType.CANCELLED, WebhookEventType.EXPIRED)
    if (
        not terminal_event
        and event.occurred_at is not None
        and state.last_event_at is not None
        and event.occurred_at < state.last_event_at
    ):
        return Transition(state, state, [], Outcome.STALE)

    next_status = _resolve_status(state.status, event)
    if state.is_terminal and next_status not in TERMINAL_STATUSES:
        # cancelled/expired are one-way; only a fresh attach revives the record
        return Transition(state, state, [], Outcome.TERMINAL)

    tier = state.tier
    if should_free(event):
        tier = TierType.FREE.value
    elif should_activate(event) and event.tier is not None:
        tier = event.tier.value

    terminal = next_status in TERMINAL_STATUSES
    cancel_flag = state.cancel_at_period_end and next_status == SubscriptionStatus.ACTIVE.value

    new_state = replace(
        state,
        tier=tier,
        subscription_id=event.subscription_id or state.subscription_id,
        plan_id=event.reported_plan_id or state.plan_id,
        status=next_status,
        processor_status=event.reported_status or state.processor_status,
        subscriber_email=event.subscriber_email or state.subscriber_email,
        next_billing_time=None if terminal else (event.next_billing_time or state.next_billing_time),
        cancel_at_period_end=cancel_flag,
        cancel_scheduled_at=state.cancel_scheduled_at if cancel_flag else None,
        last_event_at=_max_time(state.last_event_at, event.occurred_at),
    )

    effects = _effects_for(state, new_state)

    if (
        event.event_type == WebhookEventType.PAYMENT_FAILED
        and not any(isinstance(e, NotifyUser) and e.template == "payment_failed" for e in effects)
    ):
        effects.insert(0, NotifyUser("payment_failed", {"planName": plan_display_name(state.tier)}))

    if (
        event.event_type == WebhookEventType.CYCLE_COMPLETED
        and new_state.cancel_at_period_end
        and new_state.subscription_id
        and (
            new_state.cancel_scheduled_at is None
            or event.occurred_at is None
            or event.occurred_at >= new_state.cancel_scheduled_at
        )
    ):
        effects.append(CancelAtProcessor(new_state.subscription_id, SCHEDULED_CANCEL_REASON))

    outcome = Outcome.APPLIED if new_state != state or effects else Outcome.UNCHANGED
    return Transition(state, new_state, effects, outcome)


# ==================== user actions ====================

def _apply_attach(state: SubscriptionState, event: AttachRequested) -> Transition:
    if state.is_active and state.subscription_id and state.subscription_id != event.subscription_id:
        raise ConflictError(
            "User already has a different active subscription",
            details={"current": state.subscription_id, "requested": event.subscription_id},
        )
    if event.reported_status != "ACTIVE":
        raise InvalidStateError(
            f"Subscription is not active (status={event.reported_status or 'UNKNOWN'})",
            details={"subscription_id": event.subscription_id, "status": event.reported_status},
        )
    if event.tier is None:
        raise UnknownPlanError(
            "Unknown PayPal plan",
            details={"subscription_id": event.subscription_id, "plan_id": event.plan_id},
        )

    new_state = replace(
        state,
        tier=event.tier.value,
        subscription_id=event.subscription_id,
        plan_id=event.plan_id,
        status=SubscriptionStatus.ACTIVE.value,
        processor_status=event.reported_status,
        subscriber_email=event.subscriber_email or state.subscriber_email,
        next_billing_time=event.next_billing_time,
        cancel_at_period_end=False,
        cancel_scheduled_at=None,
        last_event_at=_max_time(state.last_event_at, event.status_update_time),
    )
    effects = _effects_for(state, new_state)
    outcome = Outcome.APPLIED if new_state != state else Outcome.UNCHANGED
    return Transition(state, new_state, effects, outcome)


def _apply_schedule_cancel(state: SubscriptionState, event: ScheduleCancelRequested, now: datetime) -> Transition:
    if not state.subscription_id:
        raise NotFoundError("No subscription to cancel")
    if event.subscription_id and event.subscription_id != state.subscription_id:
        raise NotFoundError(
            "Subscription does not belong to this user",
            details={"subscription_id": event.subscription_id},
        )
    if not state.is_active:
        raise InvalidStateError(
            f"Only active subscriptions can be cancelled at period end (status={state.status})",
            details={"status": state.status},
        )
    if state.cancel_at_period_end:
        return Transition(state, state, [], Outcome.UNCHANGED)

    new_state = replace(state, cancel_at_period_end=True, cancel_scheduled_at=now)
    return Transition(state, new_state, [BroadcastPlanUpdate()], Outcome.APPLIED)


def ensure_cancellable(state: SubscriptionState) -> None:
    """Precondition for an immediate cancel, checked before calling the processor."""
    if not state.subscription_id:
        raise NotFoundError("No subscription to cancel")
    if state.is_terminal:
        raise InvalidStateError(
            f"Subscription is already {state.status}",
            details={"subscription_id": state.subscription_id, "status": state.status},
        )


def _apply_cancelled_by_user(state: SubscriptionState, event: CancelledByUser) -> Transition:
    # record moved on to another subscription while the processor call was in flight
    if state.subscription_id != event.subscription_id:
        return Transition(state, state, [], Outcome.UNCHANGED)
    if state.status == SubscriptionStatus.CANCELLED.value and state.tier == TierType.FREE.value:
        return Transition(state, state, [], Outcome.UNCHANGED)
    new_state = replace(
        state,
        tier=TierType.FREE.value,
        status=SubscriptionStatus.CANCELLED.value,
        processor_status="CANCELLED",
        next_billing_time=None,
        cancel_at_period_end=False,
        cancel_scheduled_at=None,
    )
    return Transition(state, new_state, _effects_for(state, new_state), Outcome.APPLIED)


def _apply_release(state: SubscriptionState, event: ReleasedToNewOwner) -> Transition:
    if state.subscription_id != event.subscription_id:
        return Transition(state, state, [], Outcome.UNCHANGED)
    new_state = replace(
        state,
        tier=TierType.FREE.value,
        subscription_id=None,
        next_billing_time=None,
        cancel_at_period_end=False,
        cancel_scheduled_at=None,
    )
    return Transition(state, new_state, [BroadcastPlanUpdate()], Outcome.APPLIED)


def transition(state: SubscriptionState, event: BillingEvent, now: datetime) -> Transition:
    """Compute the next record state and the effects to run after commit.

    Raises ConflictError / InvalidStateError / UnknownPlanError / NotFoundError
    for user actions that are not allowed from `state`. Webhook events never
    raise; they are applied, ignored or discarded as stale.
    """
    if isinstance(event, NormalizedWebhookEvent):
        return _apply_webhook(state, event)
    if isinstance(event, AttachRequested):
        return _apply_attach(state, event)
    if isinstance(event, ScheduleCancelRequested):
        return _apply_schedule_cancel(state, event, now)
    if isinstance(event, CancelledByUser):
        return _apply_cancelled_by_user(state, event)
    if isinstance(event, ReleasedToNewOwner):
        return _apply_release(state, event)
    raise TypeError(f"Unsupported billing event: {type(event).__name__}")
