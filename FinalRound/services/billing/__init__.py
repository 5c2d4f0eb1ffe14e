"""
Billing - PayPal subscription reconciliation

Normalizer -> state machine -> record store, plus the deferred-cancellation
scheduler, the transaction ledger and the webhook event log.
"""

from .deferred_cancellation import DeferredCancellationScheduler
from .events import NormalizedWebhookEvent, WebhookEventType
from .reconciliation_service import BillingReconciliationService, CancelOutcome
from .state_machine import SubscriptionState, Transition, transition
from .subscription_store import SubscriptionStore
from .transaction_ledger import LedgerEntry, TransactionLedger
from .webhook_event_log import ClaimResult, WebhookEventLog
from .webhook_normalizer import WebhookNormalizer, parse_event

__all__ = [
    "BillingReconciliationService",
    "CancelOutcome",
    "ClaimResult",
    "DeferredCancellationScheduler",
    "LedgerEntry",
    "NormalizedWebhookEvent",
    "SubscriptionState",
    "SubscriptionStore",
    "TransactionLedger",
    "Transition",
    "WebhookEventLog",
    "WebhookEventType",
    "WebhookNormalizer",
    "parse_event",
    "transition",
]
