"""
Base Database Models - 基础数据库模型

包含 Base 类和计费相关枚举定义。
"""

from __future__ import annotations

from enum import Enum

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy 声明式基类"""
    pass


class TransactionType(str, Enum):
    """账本条目类型"""
    PAYMENT = "payment"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    """账本条目状态"""
    COMPLETED = "completed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class EventProcessingStatus(str, Enum):
    """Webhook 事件处理状态"""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


__all__ = ["Base", "TransactionType", "TransactionStatus", "EventProcessingStatus"]
