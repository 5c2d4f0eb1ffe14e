"""
Billing Reconciliation Service - PayPal 订阅对账

Entry point used by the web layer. Every operation runs as one short unit
of work:

1. gather input (gateway fetch, webhook normalization)
2. apply one state-machine transition through the SubscriptionStore
   (conditional write, committed before anything else happens)
3. run the transition's effects best-effort: processor cancel, email,
   live broadcast. Their failures are logged, never raised.

Webhook deliveries are de-duplicated by processor event id in the
WebhookEventLog; payment events go to the TransactionLedger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from FinalRound.config.settings import Settings, get_settings
from FinalRound.database.models import Subscription, Transaction, TransactionType, User
from FinalRound.infrastructure.paypal.gateway import DEFAULT_CANCEL_REASON, ProcessorGateway, WebhookSignature
from FinalRound.observability.logging import LogContext, LogModule, get_module_logger
from FinalRound.schemas.entitlements import normalize_tier
from FinalRound.services.billing.deferred_cancellation import DeferredCancellationScheduler
from FinalRound.services.billing.events import (
    AttachRequested,
    BroadcastPlanUpdate,
    CancelAtProcessor,
    CancelledByUser,
    NormalizedWebhookEvent,
    NotifyUser,
    WebhookEventType,
)
from FinalRound.services.billing.state_machine import (
    Outcome,
    SubscriptionState,
    Transition,
    ensure_cancellable,
    transition,
)
from FinalRound.services.billing.subscription_store import SubscriptionStore
from FinalRound.services.billing.transaction_ledger import LedgerEntry, TransactionLedger, refund_transaction_id
from FinalRound.services.billing.webhook_event_log import ClaimResult, WebhookEventLog
from FinalRound.services.billing.webhook_normalizer import WebhookNormalizer
from FinalRound.services.entitlements.billing_period import billing_period_for
from FinalRound.services.entitlements.plan_config import resolve_entitlements
from FinalRound.services.entitlements.plan_mapping import map_plan_id_to_tier
from FinalRound.utils.exceptions import NotFoundError, RecoverableException
from FinalRound.utils.time import parse_timestamp, utcnow

logger = get_module_logger(LogModule.BILLING)
webhook_logger = get_module_logger(LogModule.WEBHOOK)


@dataclass
class CancelOutcome:
    scheduled: bool
    message: str
    subscription: Subscription


class BillingReconciliationService:
    """PayPal subscription reconciliation for one database session.

    `notifier` needs `async send_template(to, template, params) -> bool`;
    `broadcaster` needs `async broadcast_plan_update(user_id, state) -> int`.
    Either may be None.
    """

    def __init__(
        self,
        db: Session,
        gateway: ProcessorGateway,
        broadcaster: Any = None,
        notifier: Any = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.broadcaster = broadcaster
        self.notifier = notifier
        self.settings = settings or get_settings()

        self.store = SubscriptionStore(db, retries=self.settings.billing.write_retries)
        self.ledger = TransactionLedger(db, max_page_size=self.settings.billing.ledger_max_page_size)
        self.event_log = WebhookEventLog(db)
        self.scheduler = DeferredCancellationScheduler(self.store, gateway)
        self.normalizer = WebhookNormalizer(gateway, self._map_plan)

    def _map_plan(self, plan_id: Optional[str]):
        return map_plan_id_to_tier(plan_id, self.settings.paypal)

    # ==================== user actions ====================

    async def attach_subscription(self, user_id: int, subscription_id: str) -> Subscription:
        """
        Attach a PayPal subscription the user approved in the browser.

        Raises:
            ConflictError: user holds a different active subscription, or another
                active account owns this one
            InvalidStateError: PayPal does not report the subscription as ACTIVE
            UnknownPlanError: the subscription's plan id has no tier
            GatewayError: the PayPal lookup failed
        """
        with LogContext(user_id=user_id, subscription_id=subscription_id):
            remote = await self.gateway.fetch_subscription(subscription_id)
            event = AttachRequested(
                subscription_id=remote.id or subscription_id,
                reported_status=remote.status,
                plan_id=remote.plan_id,
                tier=self._map_plan(remote.plan_id),
                subscriber_email=remote.subscriber_email,
                next_billing_time=remote.next_billing_time,
                status_update_time=remote.status_update_time,
            )
            now = utcnow()

            # reject before touching any other account
            transition(self.store.get_state(user_id), event, now)
            self.store.release_stale_owner(event.subscription_id, user_id)

            result = self.store.apply(user_id, lambda state: transition(state, event, now))
            logger.info(
                "Attached subscription %s for user %s (tier=%s, status=%s)",
                event.subscription_id, user_id, result.state.tier, result.state.status,
            )
            await self._dispatch_effects(user_id, result)
            return self.store.get(user_id)

    async def cancel_subscription(
        self,
        user_id: int,
        cancel_at_period_end: bool = False,
        reason: Optional[str] = None,
    ) -> CancelOutcome:
        """
        Cancel now (PayPal first, then the record) or at the end of the period.

        Raises:
            NotFoundError: the user has no subscription
            InvalidStateError: the subscription cannot be cancelled from its status
            GatewayError: PayPal rejected the immediate cancellation; nothing changed
        """
        with LogContext(user_id=user_id):
            if cancel_at_period_end:
                result = self.scheduler.schedule(user_id)
                await self._dispatch_effects(user_id, result)
                return CancelOutcome(
                    scheduled=True,
                    message="Subscription will be cancelled at the end of the current billing period.",
                    subscription=self.store.get(user_id),
                )

            state = self.store.get_state(user_id)
            ensure_cancellable(state)
            await self.gateway.cancel_subscription(state.subscription_id, reason or DEFAULT_CANCEL_REASON)

            cancelled = CancelledByUser(state.subscription_id, reason or DEFAULT_CANCEL_REASON)
            now = utcnow()
            result = self.store.apply(user_id, lambda current: transition(current, cancelled, now))
            logger.info("Cancelled subscription %s for user %s", state.subscription_id, user_id)
            await self._dispatch_effects(user_id, result)
            return CancelOutcome(
                scheduled=False,
                message="Subscription cancelled successfully. Your plan has been changed to Free.",
                subscription=self.store.get(user_id),
            )

    # ==================== webhooks ====================

    async def handle_webhook(self, payload: Dict[str, Any], headers: Mapping[str, str]) -> Dict[str, Any]:
        """
        Verify, de-duplicate and apply one PayPal webhook delivery.

        Returns the acknowledgement body. Processing errors are logged and
        acknowledged with status "error".

        Raises:
            WebhookUnauthenticated: signature missing or rejected (respond 400)
            GatewayError / ConfigException: verification could not run (respond 503)
            RecoverableException: event is in flight elsewhere or lost every write race (respond 503)
        """
        signature = WebhookSignature.from_headers(headers)
        event = await self.normalizer.normalize(payload, signature)

        with LogContext(event_id=event.event_id, subscription_id=event.subscription_id):
            claim = self.event_log.claim(event)
            if claim == ClaimResult.DUPLICATE:
                return {"status": "duplicate", "event_id": event.event_id}
            if claim == ClaimResult.IN_PROGRESS:
                raise RecoverableException(
                    f"Event {event.event_id} is already being processed",
                    details={"event_id": event.event_id},
                )

            try:
                outcome = await self.process_event(event)
            except RecoverableException as e:
                self.db.rollback()
                self.event_log.mark_failed(event.event_id, e.message)
                raise
            except Exception as e:
                self.db.rollback()
                webhook_logger.error(
                    "Error processing webhook %s (%s): %s",
                    event.event_id, event.raw_event_type, e, exc_info=True,
                )
                self.event_log.mark_failed(event.event_id, str(e))
                return {"status": "error", "event_id": event.event_id, "message": str(e)[:200]}

            self.event_log.mark_processed(event.event_id)
            webhook_logger.info("Processed webhook %s (%s): %s", event.event_id, event.raw_event_type, outcome)
            status = "ignored" if outcome == Outcome.IGNORED.value else "success"
            return {"status": status, "event_id": event.event_id, "message": outcome}

    async def process_event(self, event: NormalizedWebhookEvent) -> str:
        """Apply a verified event; returns a short outcome label."""
        if event.event_type in (WebhookEventType.PAYMENT_COMPLETED, WebhookEventType.PAYMENT_REFUNDED):
            return self._record_payment(event)

        record = self.store.get_by_processor_id(event.subscription_id)
        if record is None:
            webhook_logger.warning(
                "No subscription record for %s (%s), ignoring",
                event.subscription_id or "N/A", event.raw_event_type,
            )
            return Outcome.IGNORED.value

        user_id = record.user_id
        now = utcnow()
        with LogContext(user_id=user_id):
            result = self.store.apply(user_id, lambda state: transition(state, event, now))
            if result.outcome in (Outcome.STALE, Outcome.TERMINAL):
                webhook_logger.info(
                    "Discarded %s for subscription %s (%s, record status=%s)",
                    event.raw_event_type, event.subscription_id, result.outcome.value, result.previous.status,
                )
            await self._dispatch_effects(user_id, result)
        return result.outcome.value

    # ==================== ledger ====================

    def _resolve_payment_user(self, event: NormalizedWebhookEvent) -> Optional[int]:
        record = self.store.get_by_processor_id(event.subscription_id)
        if record is not None:
            return record.user_id

        payment = event.payment
        if payment and payment.custom_id and payment.custom_id.isdigit():
            user = self.db.get(User, int(payment.custom_id))
            if user is not None:
                return user.id

        if payment and payment.parent_transaction_id:
            parent = self.ledger.get(payment.parent_transaction_id)
            if parent is not None:
                return parent.user_id
        return None

    def _record_payment(self, event: NormalizedWebhookEvent) -> str:
        payment = event.payment
        if payment is None or payment.amount_value is None:
            webhook_logger.warning("Payment event %s has no transaction or amount, ignoring", event.event_id)
            return Outcome.IGNORED.value

        user_id = self._resolve_payment_user(event)
        if user_id is None:
            webhook_logger.warning(
                "Cannot attribute %s %s to a user, ignoring",
                event.raw_event_type, payment.transaction_id,
            )
            return Outcome.IGNORED.value

        record = self.store.get(user_id)
        plan = record.tier if record is not None and event.subscription_id else None
        occurred_at = payment.create_time or event.occurred_at
        resource = event.raw_payload.get("resource") if event.raw_payload else None

        if event.event_type == WebhookEventType.PAYMENT_REFUNDED:
            entry = LedgerEntry(
                user_id=user_id,
                transaction_id=refund_transaction_id(payment.transaction_id, occurred_at),
                transaction_type=TransactionType.REFUND,
                status=self.ledger.refund_status(payment.parent_transaction_id, payment.amount_value),
                amount_value=payment.amount_value,
                amount_currency=payment.currency or "USD",
                subscription_id=event.subscription_id,
                parent_transaction_id=payment.parent_transaction_id,
                plan=plan,
                description="Refund",
                raw_event_type=event.raw_event_type,
                raw_resource=resource,
                occurred_at=occurred_at,
            )
        else:
            entry = LedgerEntry(
                user_id=user_id,
                transaction_id=payment.transaction_id,
                transaction_type=TransactionType.PAYMENT,
                amount_value=payment.amount_value,
                amount_currency=payment.currency or "USD",
                subscription_id=event.subscription_id,
                plan=plan,
                description="Subscription payment" if event.subscription_id else "One-time payment",
                raw_event_type=event.raw_event_type,
                raw_resource=resource,
                occurred_at=occurred_at,
            )

        return "recorded" if self.ledger.append(entry) else "duplicate_transaction"

    def list_transactions(self, user_id: int, limit: int = 50) -> List[Transaction]:
        return self.ledger.list_for_user(user_id, limit)

    # ==================== one-time orders & refunds ====================

    async def create_order(self, user_id: int, cart: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        return await self.gateway.create_order(cart, custom_id=str(user_id))

    async def capture_order(self, user_id: int, order_id: str) -> Dict[str, Any]:
        """Capture an approved order and record each completed capture in the ledger."""
        result = await self.gateway.capture_order(order_id)
        for unit in result.get("purchase_units") or []:
            for capture in (unit.get("payments") or {}).get("captures") or []:
                if str(capture.get("status") or "").upper() != "COMPLETED":
                    continue
                amount = capture.get("amount") or {}
                if not capture.get("id") or amount.get("value") is None:
                    continue
                self.ledger.append(LedgerEntry(
                    user_id=user_id,
                    transaction_id=str(capture["id"]),
                    transaction_type=TransactionType.PAYMENT,
                    amount_value=Decimal(str(amount["value"])),
                    amount_currency=amount.get("currency_code") or "USD",
                    description="One-time payment",
                    raw_event_type="CHECKOUT.ORDER.CAPTURED",
                    raw_resource=capture,
                    occurred_at=parse_timestamp(capture.get("create_time")),
                ))
        logger.info("Captured order %s for user %s (status=%s)", order_id, user_id, result.get("status"))
        return result

    async def refund_capture(
        self,
        capture_id: str,
        amount: Optional[Decimal] = None,
        currency_code: str = "USD",
        note: Optional[str] = None,
    ) -> Transaction:
        """
        Admin refund of a captured payment; the refund is appended to the
        owner's ledger under the same synthetic id the refund webhook yields.

        Raises:
            NotFoundError: the capture is not in the ledger
            GatewayError: PayPal rejected the refund
        """
        parent = self.ledger.get(capture_id)
        if parent is None or parent.transaction_type != TransactionType.PAYMENT.value:
            raise NotFoundError(f"Capture {capture_id} not found", details={"capture_id": capture_id})

        refund = await self.gateway.refund_capture(capture_id, amount, currency_code, note)
        value = refund.amount_value if refund.amount_value is not None else parent.amount_value
        transaction_id = refund_transaction_id(refund.id, refund.create_time)
        self.ledger.append(LedgerEntry(
            user_id=parent.user_id,
            transaction_id=transaction_id,
            transaction_type=TransactionType.REFUND,
            status=self.ledger.refund_status(capture_id, value),
            amount_value=value,
            amount_currency=refund.currency or currency_code,
            subscription_id=parent.subscription_id,
            parent_transaction_id=capture_id,
            plan=parent.plan,
            description=note or "Refund",
            raw_event_type="ADMIN.REFUND",
            raw_resource=refund.raw,
            occurred_at=refund.create_time,
        ))
        logger.info("Refunded capture %s (%s %s) as %s", capture_id, value, refund.currency, transaction_id)
        return self.ledger.get(transaction_id)

    # ==================== read side ====================

    def get_overview(self, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        record = self.store.get(user_id)
        tier = normalize_tier(record.tier if record is not None else None)
        start, end = billing_period_for(record, now)
        return {
            "plan": tier.value,
            "entitlements": resolve_entitlements(tier),
            "subscription": record,
            "billing_period": {"start": start, "end": end},
        }

    def delete_account(self, user_id: int) -> None:
        """Delete the user with their subscription record and ledger rows."""
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", details={"user_id": user_id})
        self.db.delete(user)
        self.db.commit()
        logger.info("Deleted account %s with billing records", user_id)

    # ==================== effects ====================

    async def _notify(self, user_id: int, effect: NotifyUser, state: SubscriptionState) -> None:
        if self.notifier is None:
            return
        user = self.db.get(User, user_id)
        to = (user.email if user is not None else None) or state.subscriber_email
        await self.notifier.send_template(to, effect.template, dict(effect.params))

    async def _dispatch_effects(self, user_id: int, result: Transition) -> None:
        """Run post-commit effects; each failure is logged and dropped."""
        for effect in result.effects:
            try:
                if isinstance(effect, CancelAtProcessor):
                    await self.scheduler.resolve(effect)
                elif isinstance(effect, NotifyUser):
                    await self._notify(user_id, effect, result.state)
                elif isinstance(effect, BroadcastPlanUpdate) and self.broadcaster is not None:
                    await self.broadcaster.broadcast_plan_update(user_id, result.state)
            except Exception as e:
                logger.warning(
                    "Side effect %s for user %s failed: %s",
                    type(effect).__name__, user_id, e,
                )
