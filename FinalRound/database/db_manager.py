"""
DBManager - 数据库连接管理

Process-wide engine/session factory, created lazily on first use so that
importing the package never opens a connection. The web layer constructs
it on startup and disposes it on shutdown.
"""

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from FinalRound.config.settings import get_settings
from FinalRound.observability.logging import LogModule, get_module_logger
from FinalRound.utils.exceptions import ConfigException, DatabaseException

logger = get_module_logger(LogModule.DATABASE)

SUPPORTED_URL_PREFIXES = ("postgresql://", "postgresql+psycopg2://", "postgres://", "sqlite")


class DBManager:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(DBManager, cls).__new__(cls)
            cls._instance.engine = None
            cls._instance.SessionLocal = None
        return cls._instance

    def _create_engine(self, url: str, **engine_kwargs) -> None:
        for alias in ("postgresql+asyncpg://", "postgres://"):
            if url.startswith(alias):
                url = "postgresql://" + url[len(alias):]
        if not url.startswith(SUPPORTED_URL_PREFIXES):
            raise DatabaseException(f"Unsupported database URL scheme: {url.split(':', 1)[0]}")

        try:
            engine_kwargs.setdefault("echo", get_settings().database.echo)
            if url.startswith("postgres"):
                engine_kwargs.setdefault("pool_pre_ping", True)
            self.engine = create_engine(url, **engine_kwargs)
            self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to create database engine: {e}") from e

    def _ensure_engine(self) -> None:
        """懒加载创建数据库 Engine 和 Session，避免导入即连接"""
        if self.engine is not None and self.SessionLocal is not None:
            return

        url = get_settings().database.url
        if not url:
            raise ConfigException("DATABASE_URL is not configured")
        self._create_engine(url)

    def get_session(self) -> Session:
        self._ensure_engine()
        return self.SessionLocal()

    def dispose(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Database engine disposed")
        self.engine = None
        self.SessionLocal = None


__all__ = ["DBManager"]
