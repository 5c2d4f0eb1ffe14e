"""
Common Schemas - 通用响应结构
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class BaseSchema(BaseModel):
    """ORM-backed response models (from_attributes)."""
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class ErrorCode(str, Enum):
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    WEBHOOK_UNAUTHENTICATED = "WEBHOOK_UNAUTHENTICATED"
    SUBSCRIPTION_CONFLICT = "SUBSCRIPTION_CONFLICT"
    INVALID_SUBSCRIPTION_STATE = "INVALID_SUBSCRIPTION_STATE"
    UNKNOWN_PLAN = "UNKNOWN_PLAN"
    NOT_FOUND = "NOT_FOUND"
    GATEWAY_ERROR = "GATEWAY_ERROR"


class ErrorResponse(BaseModel):
    """错误响应"""
    success: bool = False
    error: str = Field(..., description="异常类型")
    detail: str = Field(..., description="错误详情")
    code: ErrorCode = ErrorCode.INTERNAL_SERVER_ERROR
    data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": False,
                "error": "ConflictError",
                "detail": "You already have an active subscription",
                "code": "SUBSCRIPTION_CONFLICT",
                "data": {"subscription_id": "I-BW452GLLEP1G"},
            }
        }
    )


class SuccessResponse(BaseModel):
    status: str = "success"
    message: str
    data: Optional[Dict[str, Any]] = None
