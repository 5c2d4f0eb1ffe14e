"""
Unified Exception Hierarchy for FinalRound billing
"""

from typing import Optional


class BaseAppException(Exception):
    """Base exception for all application-specific errors"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class DatabaseException(BaseAppException):
    """Fatal database errors (connection failed, table missing)"""
    pass


class ConfigException(BaseAppException):
    """Configuration errors (missing env vars, invalid YAML)"""
    pass


class APIException(BaseAppException):
    """External API call failures (payment processor, mail provider)"""
    pass


class RecoverableException(BaseAppException):
    """Non-fatal errors that can be retried"""
    pass


# ==================== Billing domain ====================

class WebhookUnauthenticated(BaseAppException):
    """Webhook signature did not verify; reject without touching state."""
    pass


class ConflictError(BaseAppException):
    """Processor subscription is owned by another active record."""
    pass


class InvalidStateError(BaseAppException):
    """Operation not allowed from the record's current status."""
    pass


class UnknownPlanError(BaseAppException):
    """Processor plan id has no tier mapping."""
    pass


class NotFoundError(BaseAppException):
    """No record for the given user / subscription / transaction."""
    pass


class StaleWriteError(RecoverableException):
    """Conditional update kept losing races; safe to retry the unit of work."""
    pass


class GatewayError(APIException):
    """Payment processor call failed.

    `status_code` is the processor's HTTP status when one was received;
    `retryable` is True for transport errors, timeouts and 5xx responses.
    """
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
        details: dict = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.retryable = retryable
