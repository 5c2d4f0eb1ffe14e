"""
Database 模块

提供订阅记录、交易账本与 Webhook 审计的持久化
"""

from .db_manager import DBManager
from .models import Base, Subscription, Transaction, User, WebhookEvent
from .session import SessionLocal

__all__ = [
    'DBManager',
    'Base',
    'User',
    'Subscription',
    'Transaction',
    'WebhookEvent',
    'SessionLocal',
]
