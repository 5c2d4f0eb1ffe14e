"""
Database Models - 数据库模型

统一导出所有 ORM 模型。

导入方式:
    from FinalRound.database.models import Base, User, Subscription, Transaction
"""

from __future__ import annotations

from .base import Base, EventProcessingStatus, TransactionStatus, TransactionType
from .user import User
from .billing import Subscription, Transaction, WebhookEvent

__all__ = [
    # Base
    "Base", "EventProcessingStatus", "TransactionStatus", "TransactionType",
    # User
    "User",
    # Billing
    "Subscription", "Transaction", "WebhookEvent",
]
