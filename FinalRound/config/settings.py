"""
统一配置管理

Typed configuration for the billing backend with environment overrides.
Naming convention: FR_{MODULE}_{KEY}, plus the processor's conventional
PAYPAL_* and MAILGUN_* variables.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()


PAYPAL_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


@dataclass
class LoggingConfig:
    """日志配置"""
    global_level: str = "INFO"
    console_level: str = "INFO"
    file_level: str = "DEBUG"
    log_dir: str = "logs"

    # 模块级别配置
    module_levels: Dict[str, str] = field(default_factory=lambda: {
        "billing": "INFO",
        "webhook": "INFO",
        "gateway": "INFO",
        "database": "WARNING",
        "notify": "INFO",
    })


@dataclass
class DatabaseConfig:
    """数据库配置"""
    url: str = ""
    echo: bool = False

    def __post_init__(self):
        self.url = os.getenv("DATABASE_URL", self.url)
        self.echo = os.getenv("FR_DB_ECHO", str(self.echo)).lower() == "true"


@dataclass
class PayPalConfig:
    """PayPal 配置

    `mode` selects the REST API host; the two plan ids form the static
    plan-id -> tier table.
    """
    mode: str = "sandbox"
    client_id: str = ""
    client_secret: str = ""
    webhook_id: str = ""
    plan_id_pro: str = ""
    plan_id_pro_plus: str = ""
    timeout: float = 15.0
    retries: int = 2

    def __post_init__(self):
        self.mode = os.getenv("PAYPAL_MODE", self.mode).strip().lower() or "sandbox"
        self.client_id = os.getenv("PAYPAL_CLIENT_ID", self.client_id).strip()
        self.client_secret = os.getenv("PAYPAL_CLIENT_SECRET", self.client_secret).strip()
        self.webhook_id = os.getenv("PAYPAL_WEBHOOK_ID", self.webhook_id).strip()
        self.plan_id_pro = os.getenv("PAYPAL_PLAN_ID_PRO", self.plan_id_pro).strip()
        self.plan_id_pro_plus = os.getenv("PAYPAL_PLAN_ID_PRO_PLUS", self.plan_id_pro_plus).strip()
        self.timeout = float(os.getenv("FR_PAYPAL_TIMEOUT", str(self.timeout)))
        self.retries = int(os.getenv("FR_PAYPAL_RETRIES", str(self.retries)))

    @property
    def base_url(self) -> str:
        return PAYPAL_BASE_URLS["live"] if self.mode == "live" else PAYPAL_BASE_URLS["sandbox"]

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.plan_id_pro and self.plan_id_pro_plus)

    def plan_ids(self) -> Dict[str, str]:
        return {"pro": self.plan_id_pro, "pro_plus": self.plan_id_pro_plus}


@dataclass
class EmailConfig:
    """邮件配置 (Mailgun)"""
    api_key: str = ""
    domain: str = ""
    sender: str = "FinalRound <noreply@finalround.app>"
    base_url: str = "https://api.mailgun.net"
    timeout: float = 10.0
    max_retries: int = 2

    def __post_init__(self):
        self.api_key = os.getenv("MAILGUN_API_KEY", self.api_key).strip()
        self.domain = os.getenv("MAILGUN_DOMAIN", self.domain).strip()
        self.sender = os.getenv("MAILGUN_FROM", self.sender)
        self.base_url = os.getenv("MAILGUN_BASE_URL", self.base_url).rstrip("/")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.domain)


@dataclass
class BillingConfig:
    """计费核心配置"""
    broadcast_timeout: float = 2.0
    write_retries: int = 5
    ledger_max_page_size: int = 100
    plans_path: str = field(default_factory=lambda: os.path.join(
        os.path.dirname(__file__), "plans.yaml"
    ))

    def __post_init__(self):
        self.broadcast_timeout = float(
            os.getenv("FR_BILLING_BROADCAST_TIMEOUT", str(self.broadcast_timeout))
        )
        self.write_retries = int(os.getenv("FR_BILLING_WRITE_RETRIES", str(self.write_retries)))
        self.plans_path = os.getenv("FR_BILLING_PLANS_PATH", self.plans_path)


@dataclass
class Settings:
    """
    统一配置类

    使用 dataclass 提供类型安全的配置访问，支持环境变量覆盖
    """
    environment: str = field(default_factory=lambda: os.getenv("FR_APP_ENV", "development"))
    jwt_secret_key: str = field(default_factory=lambda: os.getenv("JWT_SECRET_KEY", ""))

    # 子配置
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    paypal: PayPalConfig = field(default_factory=PayPalConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)

    def __post_init__(self):
        # 从环境变量覆盖日志配置
        self.logging.global_level = os.getenv("FR_LOG_LEVEL", os.getenv("LOG_LEVEL", self.logging.global_level))
        self.logging.console_level = os.getenv("CONSOLE_LOG_LEVEL", self.logging.console_level)
        self.logging.file_level = os.getenv("FILE_LOG_LEVEL", self.logging.file_level)
        self.logging.log_dir = os.getenv("FR_PATH_LOGS", self.logging.log_dir)

        for module in list(self.logging.module_levels):
            level = os.getenv(f"FR_LOG_{module.upper()}")
            if level:
                self.logging.module_levels[module] = level.upper()


# 全局设置实例
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Optional[Settings]) -> None:
    """设置全局配置实例 (None resets to lazy reload)"""
    global _settings
    _settings = settings
