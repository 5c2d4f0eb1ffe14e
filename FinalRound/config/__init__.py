"""
配置模块

集中管理全局配置（Settings / plan limits）。
"""

from .settings import (
    BillingConfig,
    DatabaseConfig,
    EmailConfig,
    LoggingConfig,
    PayPalConfig,
    Settings,
    get_settings,
    set_settings,
)

__all__ = [
    "Settings",
    "get_settings",
    "set_settings",
    "LoggingConfig",
    "DatabaseConfig",
    "PayPalConfig",
    "EmailConfig",
    "BillingConfig",
]
