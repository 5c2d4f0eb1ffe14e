from sqlalchemy.orm import Session

from .db_manager import DBManager


def SessionLocal() -> Session:
    """新会话，绑定到进程级 DBManager 的 engine"""
    return DBManager().get_session()
