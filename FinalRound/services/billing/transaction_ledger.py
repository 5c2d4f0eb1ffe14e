"""
Transaction Ledger - 交易账本

Append-only payment / refund history keyed by the processor transaction id.

- payments: keyed on the processor id; re-appending the same id is a no-op
  (INSERT ... ON CONFLICT DO NOTHING)
- refunds: keyed on `refund_<refund id>_<epoch seconds>` so repeated partial
  refunds of one capture are all kept
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from FinalRound.config.settings import get_settings
from FinalRound.database.models import Transaction, TransactionStatus, TransactionType
from FinalRound.observability.logging import LogModule, get_module_logger
from FinalRound.utils.time import utcnow

logger = get_module_logger(LogModule.BILLING)


def refund_transaction_id(refund_id: str, created_at: Optional[datetime]) -> str:
    if created_at is None:
        return f"refund_{refund_id}"
    return f"refund_{refund_id}_{calendar.timegm(created_at.utctimetuple())}"


@dataclass
class LedgerEntry:
    user_id: int
    transaction_id: str
    transaction_type: TransactionType
    amount_value: Decimal
    amount_currency: str = "USD"
    status: TransactionStatus = TransactionStatus.COMPLETED
    subscription_id: Optional[str] = None
    parent_transaction_id: Optional[str] = None
    plan: Optional[str] = None
    description: Optional[str] = None
    raw_event_type: Optional[str] = None
    raw_resource: Optional[Dict[str, Any]] = field(default=None, repr=False)
    occurred_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        now = utcnow()
        return {
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "transaction_id": self.transaction_id,
            "parent_transaction_id": self.parent_transaction_id,
            "transaction_type": self.transaction_type.value,
            "status": self.status.value,
            "amount_value": self.amount_value,
            "amount_currency": (self.amount_currency or "USD").upper(),
            "plan": self.plan,
            "description": self.description,
            "raw_event_type": self.raw_event_type,
            "raw_resource": self.raw_resource,
            "occurred_at": self.occurred_at or now,
            "created_at": now,
        }


class TransactionLedger:
    def __init__(self, db: Session, max_page_size: Optional[int] = None):
        self.db = db
        self.max_page_size = max_page_size or get_settings().billing.ledger_max_page_size

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(Transaction)
        if dialect == "sqlite":
            return sqlite_insert(Transaction)
        raise NotImplementedError(f"Ledger upsert not supported on {dialect}")

    def get(self, transaction_id: str) -> Optional[Transaction]:
        stmt = select(Transaction).where(Transaction.transaction_id == transaction_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def refunded_total(self, parent_transaction_id: str) -> Decimal:
        stmt = select(func.coalesce(func.sum(Transaction.amount_value), 0)).where(
            Transaction.parent_transaction_id == parent_transaction_id,
            Transaction.transaction_type == TransactionType.REFUND.value,
        )
        return Decimal(str(self.db.execute(stmt).scalar_one()))

    def refund_status(self, parent_transaction_id: Optional[str], amount: Decimal) -> TransactionStatus:
        """refunded once the parent's amount is covered, partially_refunded before that."""
        parent = self.get(parent_transaction_id) if parent_transaction_id else None
        if parent is None:
            return TransactionStatus.REFUNDED
        total = self.refunded_total(parent_transaction_id) + (amount or Decimal("0"))
        if total >= parent.amount_value:
            return TransactionStatus.REFUNDED
        return TransactionStatus.PARTIALLY_REFUNDED

    def append(self, entry: LedgerEntry) -> bool:
        """Insert `entry`; False when a row with the same transaction id already exists."""
        stmt = (
            self._insert()
            .values(**entry.to_row())
            .on_conflict_do_nothing(index_elements=["transaction_id"])
        )
        inserted = self.db.execute(stmt).rowcount
        self.db.commit()

        if inserted:
            logger.info(
                "Ledger %s %s: %s %s for user %s",
                entry.transaction_type.value, entry.transaction_id,
                entry.amount_value, entry.amount_currency, entry.user_id,
            )
        else:
            logger.debug("Ledger entry %s already recorded", entry.transaction_id)
        return bool(inserted)

    def list_for_user(self, user_id: int, limit: int = 50) -> List[Transaction]:
        """Newest first, at most `max_page_size` rows."""
        limit = max(1, min(int(limit), self.max_page_size))
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())
