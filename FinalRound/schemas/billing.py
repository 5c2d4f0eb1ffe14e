"""
Billing Schemas - Pydantic v2 models for billing/subscription APIs

Covers:
- Subscription record and status
- Attach / cancel requests
- Transaction ledger history
- One-time orders and admin refunds
- Webhook acknowledgement
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from FinalRound.schemas.common import BaseSchema
from FinalRound.schemas.entitlements import EntitlementBundle


class SubscriptionStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    FAILED = "failed"
    UNKNOWN = "unknown"


class SubscriptionResponse(BaseSchema):
    """
    User subscription record

    Returned by GET /api/v1/billing/me and the attach / cancel endpoints.
    Maps to the Subscription database model.
    """
    tier: str = Field(..., description="Current entitlement tier: free, pro, pro_plus")
    processor_subscription_id: Optional[str] = Field(None, description="PayPal subscription ID (I-*)")
    processor_plan_id: Optional[str] = Field(None, description="PayPal plan ID (P-*)")
    status: Optional[str] = Field(None, description="created, active, cancelled, expired, suspended, failed, unknown")
    subscriber_email: Optional[str] = Field(None, description="Payer email reported by PayPal")
    next_billing_time: Optional[datetime] = Field(None, description="Next billing timestamp (UTC)")
    cancel_at_period_end: bool = Field(False, description="Cancellation scheduled for the end of the current period")
    cancel_scheduled_at: Optional[datetime] = Field(None, description="When the deferred cancellation was requested")
    created_at: Optional[datetime] = Field(None, description="Record creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")

    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "example": {
                "tier": "pro",
                "processor_subscription_id": "I-BW452GLLEP1G",
                "processor_plan_id": "P-5ML4271244454362WXNWU5NQ",
                "status": "active",
                "subscriber_email": "buyer@example.com",
                "next_billing_time": "2026-02-01T10:00:00Z",
                "cancel_at_period_end": False,
                "cancel_scheduled_at": None,
                "created_at": "2026-01-01T00:00:00Z",
                "updated_at": "2026-01-01T12:30:00Z"
            }
        }
    )


class AttachSubscriptionRequest(BaseModel):
    """Attach a PayPal subscription approved in the browser to the current user"""
    subscription_id: str = Field(..., min_length=1, max_length=64, alias="subscriptionId", description="PayPal subscription ID")

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={"example": {"subscriptionId": "I-BW452GLLEP1G"}})

    @field_validator("subscription_id")
    @classmethod
    def strip_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("subscriptionId must not be blank")
        return v


class AttachSubscriptionResponse(BaseModel):
    message: str
    plan: str
    subscription_id: str = Field(..., alias="subscriptionId")
    status: Optional[str] = None
    subscription: SubscriptionResponse

    model_config = ConfigDict(populate_by_name=True)


class CancelSubscriptionRequest(BaseModel):
    """Request to cancel the current subscription"""
    cancel_at_period_end: bool = Field(
        False,
        alias="cancelAtPeriodEnd",
        description="If true, keep access until the end of the billing period and cancel then",
    )
    reason: Optional[str] = Field(None, max_length=128, description="Reason forwarded to PayPal")

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={"example": {"cancelAtPeriodEnd": True}})


class CancelSubscriptionResponse(BaseModel):
    ok: bool = True
    scheduled: bool = Field(..., description="True when cancellation was deferred to period end")
    message: str
    subscription: SubscriptionResponse


class BillingPeriod(BaseModel):
    start: datetime
    end: datetime


class BillingMeResponse(BaseModel):
    """Tier, entitlements and subscription of the current user"""
    plan: str
    entitlements: EntitlementBundle
    subscription: Optional[SubscriptionResponse] = None
    billing_period: BillingPeriod


class PlanListResponse(BaseModel):
    plans: List[EntitlementBundle]


class PayPalConfigResponse(BaseModel):
    """Public client configuration for the PayPal JS SDK"""
    enabled: bool
    client_id: str = Field(..., alias="clientId")
    mode: str
    plan_ids: Dict[str, str] = Field(..., alias="planIds")

    model_config = ConfigDict(populate_by_name=True)


class TransactionResponse(BaseSchema):
    """
    Ledger entry

    Returned by GET /api/v1/billing/paypal/transactions
    """
    transaction_id: str
    parent_transaction_id: Optional[str] = None
    subscription_id: Optional[str] = None
    transaction_type: str = Field(..., description="payment or refund")
    status: str = Field(..., description="completed, refunded, partially_refunded")
    amount_value: Decimal
    amount_currency: str
    plan: Optional[str] = None
    description: Optional[str] = None
    raw_event_type: Optional[str] = None
    occurred_at: datetime


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]


class CartItem(BaseModel):
    amount: Optional[str] = Field(None, description="Decimal amount, e.g. '20.00'")
    currency_code: Optional[str] = Field(None, min_length=3, max_length=3)


class CreateOrderRequest(BaseModel):
    cart: Optional[List[CartItem]] = None


class RefundRequest(BaseModel):
    """Admin refund of a captured payment (full refund when amount is omitted)"""
    capture_id: str = Field(..., min_length=1, alias="captureId")
    amount: Optional[Decimal] = Field(None, gt=0)
    currency_code: str = Field("USD", min_length=3, max_length=3, alias="currencyCode")
    note: Optional[str] = Field(None, max_length=255)

    model_config = ConfigDict(populate_by_name=True)


class WebhookAck(BaseModel):
    """Acknowledgement returned to PayPal; non-2xx triggers redelivery"""
    status: str = Field(..., description="success, duplicate, ignored or error")
    event_id: Optional[str] = None
    message: Optional[str] = None
    detail: Optional[Any] = None
