"""
Webhook Event Normalizer

Verifies a PayPal webhook delivery with the processor and turns the raw
JSON body into a single `NormalizedWebhookEvent`. Nothing here touches the
database; the only side effect is the verification call.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from FinalRound.infrastructure.paypal.gateway import ProcessorGateway, WebhookSignature
from FinalRound.observability.logging import LogModule, get_module_logger
from FinalRound.schemas.entitlements import TierType
from FinalRound.services.billing.events import (
    NormalizedWebhookEvent,
    PaymentDetails,
    WebhookEventType,
    classify_event_type,
)
from FinalRound.services.entitlements.plan_mapping import map_plan_id_to_tier
from FinalRound.utils.exceptions import WebhookUnauthenticated
from FinalRound.utils.time import parse_timestamp

logger = get_module_logger(LogModule.WEBHOOK)

PlanMapper = Callable[[Optional[str]], Optional[TierType]]


def _text(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    return text or None


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _parent_from_links(resource: Dict[str, Any]) -> Optional[str]:
    """Refund resources link to the refunded capture via rel="up"."""
    for link in resource.get("links") or []:
        if not isinstance(link, dict) or link.get("rel") != "up":
            continue
        href = str(link.get("href") or "").rstrip("/")
        if href:
            return href.rsplit("/", 1)[-1]
    return None


def _payment_details(resource: Dict[str, Any], event_type: WebhookEventType) -> Optional[PaymentDetails]:
    transaction_id = _text(resource.get("id"))
    if not transaction_id:
        return None

    # sale resources use amount.total/currency, captures amount.value/currency_code
    amount = resource.get("amount") or {}
    value = amount.get("value", amount.get("total"))
    currency = amount.get("currency_code") or amount.get("currency")

    parent = None
    if event_type == WebhookEventType.PAYMENT_REFUNDED:
        parent = _text(resource.get("sale_id")) or _text(resource.get("capture_id")) or _parent_from_links(resource)

    return PaymentDetails(
        transaction_id=transaction_id,
        amount_value=_decimal(value),
        currency=_text(currency).upper() if _text(currency) else None,
        parent_transaction_id=parent,
        custom_id=_text(resource.get("custom_id") or resource.get("custom")),
        state=_text(resource.get("status") or resource.get("state")),
        create_time=parse_timestamp(resource.get("create_time")),
    )


def parse_event(
    payload: Dict[str, Any],
    plan_mapper: PlanMapper = map_plan_id_to_tier,
    fallback_event_id: Optional[str] = None,
) -> NormalizedWebhookEvent:
    """Build a NormalizedWebhookEvent from a verified PayPal webhook body."""
    if not isinstance(payload, dict):
        raise ValueError("Webhook payload must be a JSON object")

    raw_event_type = str(payload.get("event_type") or "").strip()
    event_type = classify_event_type(raw_event_type)
    resource = payload.get("resource") or {}
    if not isinstance(resource, dict):
        resource = {}

    event_id = _text(payload.get("id")) or _text(fallback_event_id)
    if not event_id:
        raise ValueError("Webhook payload has no event id")

    occurred_at = parse_timestamp(payload.get("create_time"))

    if event_type in (
        WebhookEventType.PAYMENT_COMPLETED,
        WebhookEventType.PAYMENT_DENIED,
        WebhookEventType.PAYMENT_REFUNDED,
    ):
        # payment resources: the subscription is referenced, not described
        return NormalizedWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            raw_event_type=raw_event_type,
            subscription_id=_text(resource.get("billing_agreement_id")),
            occurred_at=occurred_at,
            payment=_payment_details(resource, event_type),
            raw_payload=payload,
        )

    plan_id = _text(resource.get("plan_id"))
    billing_info = resource.get("billing_info") or {}
    subscriber = resource.get("subscriber") or {}
    status = _text(resource.get("status"))

    return NormalizedWebhookEvent(
        event_id=event_id,
        event_type=event_type,
        raw_event_type=raw_event_type,
        subscription_id=_text(resource.get("id")),
        reported_status=status.upper() if status else None,
        reported_plan_id=plan_id,
        tier=plan_mapper(plan_id),
        next_billing_time=parse_timestamp(billing_info.get("next_billing_time")),
        subscriber_email=_text(subscriber.get("email_address")),
        occurred_at=occurred_at,
        raw_payload=payload,
    )


class WebhookNormalizer:
    """Authenticate-then-parse entry point for inbound PayPal webhooks."""

    def __init__(self, gateway: ProcessorGateway, plan_mapper: PlanMapper = map_plan_id_to_tier):
        self.gateway = gateway
        self.plan_mapper = plan_mapper

    async def normalize(self, payload: Dict[str, Any], signature: WebhookSignature) -> NormalizedWebhookEvent:
        """
        Raises:
            WebhookUnauthenticated: headers missing or signature rejected
            GatewayError: the verification call itself failed (retryable)
            ValueError: verified body is not a usable event
        """
        if not signature.is_complete():
            raise WebhookUnauthenticated(
                "Missing PayPal transmission headers",
                details={"transmission_id": signature.transmission_id or None},
            )

        verified = await self.gateway.verify_webhook_signature(signature, payload)
        if not verified:
            raise WebhookUnauthenticated(
                "Invalid webhook signature",
                details={"transmission_id": signature.transmission_id},
            )

        event = parse_event(payload, self.plan_mapper, fallback_event_id=signature.transmission_id)
        logger.info(
            "Verified webhook %s (%s) subscription=%s status=%s plan=%s tier=%s",
            event.event_id,
            event.raw_event_type or "N/A",
            event.subscription_id or "N/A",
            event.reported_status or "N/A",
            event.reported_plan_id or "N/A",
            event.tier.value if event.tier else "N/A",
        )
        return event
