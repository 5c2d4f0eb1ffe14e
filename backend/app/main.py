"""
FastAPI 应用主入口

FinalRound 计费后端: PayPal 订阅对账、交易账本、计划实时推送
"""

import logging
import os

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api.v1.router import router as api_v1_router
from backend.app.core.lifespan import lifespan
from backend.app.ws.router import router as ws_router
from FinalRound import __version__
from FinalRound.observability.logging import configure_logging
from FinalRound.schemas.common import ErrorCode, ErrorResponse
from FinalRound.utils.exceptions import (
    BaseAppException,
    ConfigException,
    ConflictError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    RecoverableException,
    UnknownPlanError,
    WebhookUnauthenticated,
)

configure_logging(force=True)
logging.captureWarnings(True)

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "https://app.finalroundapp.com",
]


def _cors_origins() -> list:
    extra = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
    return DEFAULT_CORS_ORIGINS + extra


app = FastAPI(
    title="FinalRound Billing API",
    description="""
    ## FinalRound 订阅计费 API

    - **Attach / cancel** PayPal subscriptions (immediately or at period end)
    - **Webhooks**: signature-verified, de-duplicated reconciliation
    - **Ledger**: payment and refund history
    - **Live updates**: `/ws/billing` pushes plan changes to open sessions
    """,
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_v1_router)
app.include_router(ws_router)


# 异常类型 -> (HTTP 状态码, 错误码)；按顺序匹配，子类在前
ERROR_STATUS = (
    (ConflictError, status.HTTP_409_CONFLICT, ErrorCode.SUBSCRIPTION_CONFLICT),
    (InvalidStateError, status.HTTP_400_BAD_REQUEST, ErrorCode.INVALID_SUBSCRIPTION_STATE),
    (UnknownPlanError, status.HTTP_400_BAD_REQUEST, ErrorCode.UNKNOWN_PLAN),
    (NotFoundError, status.HTTP_404_NOT_FOUND, ErrorCode.NOT_FOUND),
    (WebhookUnauthenticated, status.HTTP_400_BAD_REQUEST, ErrorCode.WEBHOOK_UNAUTHENTICATED),
    (GatewayError, status.HTTP_502_BAD_GATEWAY, ErrorCode.GATEWAY_ERROR),
    (ConfigException, status.HTTP_503_SERVICE_UNAVAILABLE, ErrorCode.SERVICE_UNAVAILABLE),
    (RecoverableException, status.HTTP_503_SERVICE_UNAVAILABLE, ErrorCode.SERVICE_UNAVAILABLE),
)


def error_status(exc: BaseAppException):
    for exc_type, status_code, code in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code, code
    return status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.INTERNAL_SERVER_ERROR


@app.exception_handler(BaseAppException)
async def app_exception_handler(request: Request, exc: BaseAppException):
    """Billing errors raised by endpoints -> ErrorResponse"""
    status_code, code = error_status(exc)
    if status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    body = ErrorResponse(error=type(exc).__name__, detail=exc.message, code=code, data=exc.details or None)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.get("/health", tags=["System"])
async def health_check():
    return {"status": "ok"}


@app.get("/", include_in_schema=False)
async def root():
    return {"name": "FinalRound Billing API", "version": __version__, "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.app.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
