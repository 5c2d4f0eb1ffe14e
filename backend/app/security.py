"""
Security Core - 认证依赖

Bearer JWT 校验与 FastAPI 依赖。Tokens are minted by the FinalRound
account service (HS256, `sub` = user id); billing only verifies them.
`create_access_token` exists for tests and local tooling.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from FinalRound.config.settings import get_settings
from FinalRound.database.models import User
from FinalRound.database.session import SessionLocal
from FinalRound.utils.exceptions import ConfigException

ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL = timedelta(days=1)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


def _signing_key() -> str:
    key = get_settings().jwt_secret_key
    if not key:
        raise ConfigException("JWT_SECRET_KEY is not configured")
    return key


def create_access_token(claims: Dict[str, Any], ttl: Optional[timedelta] = None) -> str:
    payload = dict(claims)
    payload["exp"] = datetime.now(timezone.utc) + (ttl or DEFAULT_TOKEN_TTL)
    return jwt.encode(payload, _signing_key(), algorithm=ALGORITHM)


def user_id_from_token(token: Optional[str]) -> Optional[int]:
    """
    Token -> user id。签名无效、过期或 sub 非整数时返回 None；
    密钥未配置时抛 ConfigException。
    """
    if not token:
        return None
    try:
        claims = jwt.decode(token, _signing_key(), algorithms=[ALGORITHM])
        return int(claims["sub"])
    except (JWTError, KeyError, TypeError, ValueError):
        return None


# ============================================
# FastAPI 依赖注入
# ============================================

def get_db() -> Iterator[Session]:
    try:
        session = SessionLocal()
    except ConfigException as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    try:
        yield session
    finally:
        session.close()


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    session: Session = Depends(get_db),
) -> User:
    try:
        user_id = user_id_from_token(token)
    except ConfigException as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    user = session.get(User, user_id) if user_id is not None else None
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Admin-only routes (manual refunds)."""
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user
