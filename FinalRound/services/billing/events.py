"""
Billing event kinds.

Inbound webhooks are parsed once into `NormalizedWebhookEvent`; user
actions are their own event classes. The state machine dispatches on this
closed set only, and emits `Effect` objects for the caller to perform after
the record write has committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

from FinalRound.schemas.entitlements import TierType


class WebhookEventType(str, Enum):
    ACTIVATED = "activated"
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    PAYMENT_FAILED = "payment_failed"
    CYCLE_COMPLETED = "cycle_completed"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_DENIED = "payment_denied"
    PAYMENT_REFUNDED = "payment_refunded"
    OTHER = "other"


PAYPAL_EVENT_TYPES: Dict[str, WebhookEventType] = {
    "BILLING.SUBSCRIPTION.ACTIVATED": WebhookEventType.ACTIVATED,
    "BILLING.SUBSCRIPTION.CREATED": WebhookEventType.CREATED,
    "BILLING.SUBSCRIPTION.UPDATED": WebhookEventType.UPDATED,
    "BILLING.SUBSCRIPTION.CANCELLED": WebhookEventType.CANCELLED,
    "BILLING.SUBSCRIPTION.EXPIRED": WebhookEventType.EXPIRED,
    "BILLING.SUBSCRIPTION.SUSPENDED": WebhookEventType.SUSPENDED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": WebhookEventType.PAYMENT_FAILED,
    "BILLING.SUBSCRIPTION.CYCLE.COMPLETED": WebhookEventType.CYCLE_COMPLETED,
    "PAYMENT.SALE.COMPLETED": WebhookEventType.PAYMENT_COMPLETED,
    "PAYMENT.CAPTURE.COMPLETED": WebhookEventType.PAYMENT_COMPLETED,
    "PAYMENT.SALE.DENIED": WebhookEventType.PAYMENT_DENIED,
    "PAYMENT.CAPTURE.DENIED": WebhookEventType.PAYMENT_DENIED,
    "PAYMENT.SALE.REFUNDED": WebhookEventType.PAYMENT_REFUNDED,
    "PAYMENT.SALE.REVERSED": WebhookEventType.PAYMENT_REFUNDED,
    "PAYMENT.CAPTURE.REFUNDED": WebhookEventType.PAYMENT_REFUNDED,
    "PAYMENT.CAPTURE.REVERSED": WebhookEventType.PAYMENT_REFUNDED,
}

PAYMENT_EVENT_TYPES = frozenset({
    WebhookEventType.PAYMENT_COMPLETED,
    WebhookEventType.PAYMENT_DENIED,
    WebhookEventType.PAYMENT_REFUNDED,
})


def classify_event_type(raw_event_type: str) -> WebhookEventType:
    return PAYPAL_EVENT_TYPES.get(str(raw_event_type or "").strip().upper(), WebhookEventType.OTHER)


@dataclass(frozen=True)
class PaymentDetails:
    """Sale / capture / refund resource carried by PAYMENT.* events."""
    transaction_id: str
    amount_value: Optional[Decimal] = None
    currency: Optional[str] = None
    parent_transaction_id: Optional[str] = None
    custom_id: Optional[str] = None
    state: Optional[str] = None
    create_time: Optional[datetime] = None


@dataclass(frozen=True)
class NormalizedWebhookEvent:
    event_id: str
    event_type: WebhookEventType
    raw_event_type: str
    subscription_id: Optional[str] = None
    reported_status: Optional[str] = None
    reported_plan_id: Optional[str] = None
    tier: Optional[TierType] = None
    next_billing_time: Optional[datetime] = None
    subscriber_email: Optional[str] = None
    occurred_at: Optional[datetime] = None
    payment: Optional[PaymentDetails] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_payment_event(self) -> bool:
        return self.event_type in PAYMENT_EVENT_TYPES


# ==================== user actions ====================

@dataclass(frozen=True)
class AttachRequested:
    """User attaches a processor subscription; fields come from a fresh gateway fetch."""
    subscription_id: str
    reported_status: str
    plan_id: Optional[str]
    tier: Optional[TierType]
    subscriber_email: Optional[str] = None
    next_billing_time: Optional[datetime] = None
    status_update_time: Optional[datetime] = None


@dataclass(frozen=True)
class ScheduleCancelRequested:
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class CancelledByUser:
    """Applied after the processor accepted an immediate cancellation of `subscription_id`."""
    subscription_id: Optional[str]
    reason: str


@dataclass(frozen=True)
class ReleasedToNewOwner:
    """Stale record gives up a processor subscription id another user is attaching."""
    subscription_id: str


BillingEvent = Union[
    NormalizedWebhookEvent,
    AttachRequested,
    ScheduleCancelRequested,
    CancelledByUser,
    ReleasedToNewOwner,
]


# ==================== side effects ====================

@dataclass(frozen=True)
class CancelAtProcessor:
    subscription_id: str
    reason: str


@dataclass(frozen=True)
class NotifyUser:
    template: str
    params: Dict[str, str] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class BroadcastPlanUpdate:
    pass


Effect = Union[CancelAtProcessor, NotifyUser, BroadcastPlanUpdate]
