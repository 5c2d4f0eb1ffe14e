"""Billing API Endpoints - PayPal subscription management

SECURITY: the webhook endpoint is unauthenticated at the transport level.
Every delivery is verified with PayPal's verify-webhook-signature API
before anything is read from it.

API Layer - Thin orchestration, business logic in BillingReconciliationService.
Billing exceptions propagate to the app-level handler in backend.app.main,
which maps them to status codes and an ErrorResponse body.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from backend.app.security import get_current_user, get_db, require_admin
from FinalRound.config.settings import get_settings
from FinalRound.database.models import User
from FinalRound.infrastructure.paypal.gateway import PayPalGateway, ProcessorGateway
from FinalRound.observability.logging import LogContext
from FinalRound.schemas.billing import (
    AttachSubscriptionRequest,
    AttachSubscriptionResponse,
    BillingMeResponse,
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CreateOrderRequest,
    PayPalConfigResponse,
    PlanListResponse,
    RefundRequest,
    SubscriptionResponse,
    TransactionListResponse,
    TransactionResponse,
    WebhookAck,
)
from FinalRound.schemas.common import ErrorResponse, SuccessResponse
from FinalRound.services.billing import BillingReconciliationService
from FinalRound.services.email_service import EmailService
from FinalRound.services.entitlements import list_plans
from FinalRound.services.live_updates import LiveUpdateBroadcaster, get_live_update_broadcaster
from FinalRound.utils.exceptions import (
    ConfigException,
    GatewayError,
    RecoverableException,
    WebhookUnauthenticated,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


# ============================================
# 依赖注入
# ============================================

_gateway: Optional[PayPalGateway] = None
_email_service: Optional[EmailService] = None


def get_gateway() -> ProcessorGateway:
    """Process-wide PayPal client (keeps the OAuth token and connection pool)."""
    global _gateway
    if _gateway is None:
        _gateway = PayPalGateway()
    return _gateway


def get_notifier() -> EmailService:
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service


def get_broadcaster() -> LiveUpdateBroadcaster:
    return get_live_update_broadcaster()


async def close_billing_clients() -> None:
    """Shutdown hook: close the shared HTTP clients."""
    global _gateway, _email_service
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
    if _email_service is not None:
        await _email_service.aclose()
        _email_service = None


def get_billing_service(
    db: Session = Depends(get_db),
    gateway: ProcessorGateway = Depends(get_gateway),
    notifier: EmailService = Depends(get_notifier),
    broadcaster: LiveUpdateBroadcaster = Depends(get_broadcaster),
) -> BillingReconciliationService:
    """Dependency injection for BillingReconciliationService"""
    return BillingReconciliationService(db, gateway, broadcaster=broadcaster, notifier=notifier)


# ============================================
# PayPal
# ============================================

@router.get(
    "/paypal/config",
    response_model=PayPalConfigResponse,
    summary="PayPal client configuration",
)
async def get_paypal_config(current_user: User = Depends(get_current_user)):
    paypal = get_settings().paypal
    return PayPalConfigResponse(
        enabled=paypal.enabled,
        client_id=paypal.client_id,
        mode=paypal.mode,
        plan_ids=paypal.plan_ids(),
    )


@router.post(
    "/paypal/orders",
    status_code=status.HTTP_201_CREATED,
    responses={502: {"model": ErrorResponse}},
    summary="Create one-time order",
)
async def create_order(
    request: Optional[CreateOrderRequest] = None,
    current_user: User = Depends(get_current_user),
    service: BillingReconciliationService = Depends(get_billing_service),
):
    cart = [item.model_dump(exclude_none=True) for item in request.cart] if request and request.cart else None
    return await service.create_order(current_user.id, cart)


@router.post(
    "/paypal/orders/{order_id}/capture",
    responses={502: {"model": ErrorResponse}},
    summary="Capture an approved order",
)
async def capture_order(
    order_id: str,
    current_user: User = Depends(get_current_user),
    service: BillingReconciliationService = Depends(get_billing_service),
):
    return await service.capture_order(current_user.id, order_id)


@router.post(
    "/paypal/attach-subscription",
    response_model=AttachSubscriptionResponse,
    responses={
        400: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    summary="Attach an approved PayPal subscription",
)
async def attach_subscription(
    request: AttachSubscriptionRequest,
    current_user: User = Depends(get_current_user),
    service: BillingReconciliationService = Depends(get_billing_service),
):
    """Attach the subscription the user just approved in the PayPal popup

    Raises:
        400: PayPal does not report the subscription as ACTIVE, or its plan is unknown
        409: user already has a different active subscription
        502: PayPal lookup failed
    """
    record = await service.attach_subscription(current_user.id, request.subscription_id)

    return AttachSubscriptionResponse(
        message="Subscription attached successfully.",
        plan=record.tier,
        subscription_id=record.processor_subscription_id,
        status=record.status,
        subscription=SubscriptionResponse.model_validate(record),
    )


@router.post(
    "/paypal/cancel-subscription",
    response_model=CancelSubscriptionResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    summary="Cancel the current subscription",
)
async def cancel_subscription(
    request: Optional[CancelSubscriptionRequest] = None,
    current_user: User = Depends(get_current_user),
    service: BillingReconciliationService = Depends(get_billing_service),
):
    request = request or CancelSubscriptionRequest()
    outcome = await service.cancel_subscription(
        current_user.id,
        cancel_at_period_end=request.cancel_at_period_end,
        reason=request.reason,
    )

    return CancelSubscriptionResponse(
        ok=True,
        scheduled=outcome.scheduled,
        message=outcome.message,
        subscription=SubscriptionResponse.model_validate(outcome.subscription),
    )


@router.post(
    "/paypal/webhook",
    response_model=WebhookAck,
    status_code=200,
    summary="PayPal webhook handler",
    description=(
        "SECURITY: verifies the PayPal transmission signature before processing.\n\n"
        "Returns 400 only when the signature does not verify; every verified "
        "event is acknowledged with 200, including ignored event types."
    ),
)
async def paypal_webhook(
    request: Request,
    service: BillingReconciliationService = Depends(get_billing_service),
):
    """
    Handle PayPal webhook events

    Returns:
        200: processed, duplicate, ignored, or failed processing (logged)
        400: invalid signature or unreadable body
        503: signature could not be verified right now, or the event is
             already in flight; PayPal redelivers
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        logger.warning("Webhook request without a JSON object body")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    event_id = payload.get("id")
    with LogContext(event_id=event_id, endpoint="paypal_webhook"):
        logger.info(
            "Received PayPal webhook %s (%s)",
            event_id or "unknown",
            payload.get("event_type") or "N/A",
        )
        try:
            ack = await service.handle_webhook(payload, request.headers)
        except WebhookUnauthenticated as e:
            logger.warning("Invalid webhook signature: %s", e.message)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature")
        except (GatewayError, ConfigException, RecoverableException) as e:
            logger.error("Webhook could not be processed now: %s", e.message)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "error", "event_id": event_id, "message": e.message},
            )
        except Exception as e:
            # Processing error - return 200 to prevent redelivery storms
            logger.error("Webhook processing error: %s", e, exc_info=True)
            return WebhookAck(
                status="error",
                event_id=event_id,
                message="Event received but processing failed",
                detail=str(e),
            )

    return WebhookAck(**ack)


@router.get(
    "/paypal/transactions",
    response_model=TransactionListResponse,
    summary="Get transaction history",
)
async def get_transactions(
    limit: int = Query(50),
    current_user: User = Depends(get_current_user),
    service: BillingReconciliationService = Depends(get_billing_service),
):
    """Newest-first payment / refund history (limit 1..100)"""
    if limit < 1 or limit > 100:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Limit must be between 1 and 100"
        )
    rows = service.list_transactions(current_user.id, limit)
    return TransactionListResponse(transactions=[TransactionResponse.model_validate(r) for r in rows])


# ============================================
# Plans & account
# ============================================

@router.get(
    "/me",
    response_model=BillingMeResponse,
    summary="Current plan, entitlements and billing period",
)
async def get_billing_me(
    current_user: User = Depends(get_current_user),
    service: BillingReconciliationService = Depends(get_billing_service),
):
    overview = service.get_overview(current_user.id)
    record = overview["subscription"]
    return BillingMeResponse(
        plan=overview["plan"],
        entitlements=overview["entitlements"],
        subscription=SubscriptionResponse.model_validate(record) if record is not None else None,
        billing_period=overview["billing_period"],
    )


@router.get(
    "/plans",
    response_model=PlanListResponse,
    summary="List plans",
)
async def get_plans():
    return PlanListResponse(plans=list_plans())


@router.post(
    "/admin/refunds",
    response_model=TransactionResponse,
    responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    summary="Refund a captured payment (admin)",
)
async def admin_refund(
    request: RefundRequest,
    admin_user: User = Depends(require_admin),
    service: BillingReconciliationService = Depends(get_billing_service),
):
    entry = await service.refund_capture(
        request.capture_id,
        amount=request.amount,
        currency_code=request.currency_code,
        note=request.note,
    )
    logger.info("Admin %s refunded capture %s", admin_user.id, request.capture_id)
    return TransactionResponse.model_validate(entry)


@router.delete(
    "/account",
    response_model=SuccessResponse,
    summary="Delete account and billing records",
)
async def delete_account(
    current_user: User = Depends(get_current_user),
    service: BillingReconciliationService = Depends(get_billing_service),
):
    service.delete_account(current_user.id)
    return SuccessResponse(message="Account deleted")
