"""
统一日志配置模块

`configure_logging()` installs a dictConfig with a stdout handler and two
rotating files under `{log_dir}/billing/`:

    billing.log  everything at the configured file level
    error.log    ERROR and above

Every record carries the billing correlation fields (user_id,
subscription_id, event_id, endpoint). They are read from contextvars, so
`with LogContext(event_id=...)` around a webhook makes every line logged
while processing it, in any module, carry the event id.
"""

import contextvars
import logging
import logging.config
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from FinalRound.config.settings import LoggingConfig, get_settings


BASE_LOGGER_NAME = "FinalRound"
CONTEXT_FIELDS = ("user_id", "subscription_id", "event_id", "endpoint")

_context: Dict[str, contextvars.ContextVar] = {
    name: contextvars.ContextVar(f"fr_log_{name}", default=None) for name in CONTEXT_FIELDS
}


class LogModule:
    """Logger names under `FinalRound.`, one per billing concern.

    logger = get_module_logger(LogModule.WEBHOOK)
    """
    BILLING = "billing"          # 状态机 / 对账
    WEBHOOK = "webhook"          # 接收、验签、去重
    GATEWAY = "gateway"          # PayPal REST
    DATABASE = "database"
    NOTIFY = "notify"            # 邮件 / WebSocket 推送
    SYSTEM = "system"


class BillingContextFilter(logging.Filter):
    """把当前 contextvars 中的关联字段写到 LogRecord 上，缺省为 '-'"""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _context.items():
            value = var.get()
            setattr(record, name, "-" if value is None else value)
        return True


class LogContext:
    """临时设置关联字段，退出时恢复原值（可嵌套）"""

    def __init__(self, **fields):
        self._fields = {k: v for k, v in fields.items() if k in _context}
        self._tokens: Dict[str, contextvars.Token] = {}

    def __enter__(self):
        for name, value in self._fields.items():
            self._tokens[name] = _context[name].set(value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for name, token in self._tokens.items():
            _context[name].reset(token)
        self._tokens.clear()
        return False


def _file_handler(log_dir: Path, filename: str, level: Any) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": "detailed",
        "filename": str(log_dir / filename),
        "maxBytes": 10 * 1024 * 1024,
        "backupCount": 5,
        "encoding": "utf-8",
        "filters": ["billing_context"],
    }


def build_logging_config(config: LoggingConfig) -> Dict[str, Any]:
    """dictConfig 字典；同时创建日志目录"""
    log_dir = Path(config.log_dir).resolve() / "billing"
    log_dir.mkdir(parents=True, exist_ok=True)

    global_level = config.global_level.upper()
    handlers = ["console", "billing_file", "error_file"]

    loggers: Dict[str, Any] = {
        BASE_LOGGER_NAME: {"level": global_level, "handlers": handlers, "propagate": False},
        "backend": {"level": global_level, "handlers": handlers, "propagate": False},
        "uvicorn": {"level": "INFO", "handlers": ["console", "error_file"], "propagate": False},
        "uvicorn.access": {"level": "INFO", "handlers": ["console"], "propagate": False},
    }
    for module, level in config.module_levels.items():
        # 子 logger 交给 FinalRound 的 handlers 输出，只单独设置级别
        loggers[f"{BASE_LOGGER_NAME}.{module}"] = {"level": level.upper()}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"billing_context": {"()": BillingContextFilter}},
        "formatters": {
            "console": {"format": "%(levelname)-7s %(name)s event=%(event_id)s | %(message)s"},
            "detailed": {
                "format": (
                    "%(asctime)s | %(levelname)s | %(name)s | user=%(user_id)s "
                    "sub=%(subscription_id)s event=%(event_id)s endpoint=%(endpoint)s | "
                    "%(module)s:%(lineno)d | %(message)s"
                ),
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": config.console_level.upper(),
                "formatter": "console",
                "stream": "ext://sys.stdout",
                "filters": ["billing_context"],
            },
            "billing_file": _file_handler(log_dir, "billing.log", config.file_level.upper()),
            "error_file": _file_handler(log_dir, "error.log", "ERROR"),
        },
        "loggers": loggers,
        "root": {"level": "WARNING", "handlers": ["console"]},
    }


def configure_logging(config: Optional[LoggingConfig] = None, force: bool = False) -> None:
    """
    统一日志配置入口

    FR_LOGGING_ENABLED=false 时什么也不做（测试环境）。已有 root handlers 且
    未指定 force 时保持现状。
    """
    if os.getenv("FR_LOGGING_ENABLED", "true").lower() != "true":
        return
    if logging.getLogger().handlers and not force:
        return

    config = config or get_settings().logging
    try:
        logging.config.dictConfig(build_logging_config(config))
    except (ValueError, OSError) as e:
        sys.stderr.write(f"Failed to configure logging: {e}\n")
        logging.basicConfig(level=logging.INFO)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_module_logger(module: str, level: Optional[str] = None) -> logging.Logger:
    """`FinalRound.{module}` logger, e.g. FinalRound.webhook"""
    logger = logging.getLogger(f"{BASE_LOGGER_NAME}.{module}")
    if level:
        logger.setLevel(level.upper())
    return logger
