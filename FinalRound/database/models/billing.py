"""
Billing Domain Models - 计费领域模型

包含 PayPal 订阅记录、交易账本和 Webhook 事件审计模型。
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from FinalRound.utils.time import utcnow

from .base import Base

if TYPE_CHECKING:
    from .user import User


class Subscription(Base):
    """订阅表 - one record per user, mirrors the processor's view.

    `version` is the optimistic-lock column: every UPDATE is predicated on
    the version that was read, so concurrent units of work never overwrite
    each other silently.
    """
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), unique=True, index=True)
    tier: Mapped[str] = mapped_column(String(20), default="free")
    processor_subscription_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True, index=True)
    processor_plan_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # created, active, cancelled, ...
    processor_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # verbatim from processor
    subscriber_email: Mapped[Optional[str]] = mapped_column(String(254), nullable=True)
    next_billing_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    cancel_scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    user: Mapped["User"] = relationship("User", back_populates="subscription")

    __mapper_args__ = {"version_id_col": version}


class Transaction(Base):
    """交易账本 - append-only payment / refund history"""
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    transaction_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    parent_transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    transaction_type: Mapped[str] = mapped_column(String(20))  # payment, refund
    status: Mapped[str] = mapped_column(String(32))  # completed, refunded, partially_refunded
    amount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    amount_currency: Mapped[str] = mapped_column(String(3), default="USD")
    plan: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    raw_event_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    raw_resource: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    user: Mapped["User"] = relationship("User", back_populates="transactions")


class WebhookEvent(Base):
    """PayPal Webhook 事件表 - 用于审计与幂等性处理"""
    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    event_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    event_type: Mapped[str] = mapped_column(String(100), index=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processing_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, processed, failed
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


__all__ = [
    "Subscription",
    "Transaction",
    "WebhookEvent",
]
