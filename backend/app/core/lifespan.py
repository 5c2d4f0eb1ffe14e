"""FastAPI lifespan: warm up the engine and plan limits, close shared clients on shutdown."""

import logging
import os
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, List

from fastapi import FastAPI

from backend.app.api.v1.endpoints.billing import close_billing_clients
from FinalRound.config.settings import get_settings
from FinalRound.database.db_manager import DBManager
from FinalRound.services.entitlements import get_plans_loader
from FinalRound.utils.exceptions import BaseAppException

logger = logging.getLogger(__name__)

ShutdownHook = Callable[[], Awaitable[None]]

_shutdown_hooks: List[ShutdownHook] = []


def on_shutdown(hook: ShutdownHook) -> None:
    _shutdown_hooks.append(hook)


async def _run_shutdown_hooks() -> None:
    # 逆序执行：后注册的先关闭
    while _shutdown_hooks:
        hook = _shutdown_hooks.pop()
        try:
            await hook()
        except Exception as exc:
            logger.warning("Shutdown hook %s failed: %s", getattr(hook, "__name__", hook), exc, exc_info=True)


async def _dispose_engine() -> None:
    DBManager().dispose()


def _startup_checks() -> None:
    """启动自检：数据库、计划配置、PayPal 配置。失败只记录，不阻止启动"""
    try:
        DBManager().get_session().close()
        logger.info("Database engine ready")
    except BaseAppException as exc:
        logger.error("Database unavailable at startup: %s", exc.message)

    try:
        plans = get_plans_loader()
        plans.get()
        logger.info("Plan limits loaded (sha256 %s)", plans.fingerprint()[:12])
    except BaseAppException as exc:
        logger.error("Plan limits could not be loaded: %s", exc.message)

    paypal = get_settings().paypal
    if not paypal.enabled:
        logger.warning("PayPal is not fully configured; checkout will be disabled")
    if not paypal.webhook_id:
        logger.warning("PAYPAL_WEBHOOK_ID is not set; webhooks will be answered with 503")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.getenv("FR_TESTING", "").lower() == "true":
        # 测试自行注入数据库与假实现
        yield
        return

    logger.info("Starting FinalRound billing API (%s)", get_settings().environment)
    _startup_checks()
    on_shutdown(_dispose_engine)
    on_shutdown(close_billing_clients)

    yield

    logger.info("Shutting down FinalRound billing API")
    await _run_shutdown_hooks()
