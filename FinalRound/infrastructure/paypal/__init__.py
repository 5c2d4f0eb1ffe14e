from .gateway import (
    DEFAULT_CANCEL_REASON,
    PayPalGateway,
    ProcessorGateway,
    ProcessorSubscription,
    RefundResult,
    WebhookSignature,
)

__all__ = [
    "DEFAULT_CANCEL_REASON",
    "PayPalGateway",
    "ProcessorGateway",
    "ProcessorSubscription",
    "RefundResult",
    "WebhookSignature",
]
