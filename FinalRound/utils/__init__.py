"""
工具模块

通用异常与时间工具。
"""

from .exceptions import (
    APIException,
    BaseAppException,
    ConfigException,
    ConflictError,
    DatabaseException,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    RecoverableException,
    StaleWriteError,
    UnknownPlanError,
    WebhookUnauthenticated,
)
from .time import isoformat_utc, parse_timestamp, to_naive_utc, utcnow

__all__ = [
    "APIException",
    "BaseAppException",
    "ConfigException",
    "ConflictError",
    "DatabaseException",
    "GatewayError",
    "InvalidStateError",
    "NotFoundError",
    "RecoverableException",
    "StaleWriteError",
    "UnknownPlanError",
    "WebhookUnauthenticated",
    "isoformat_utc",
    "parse_timestamp",
    "to_naive_utc",
    "utcnow",
]
