"""
Password hashing and JWT bearer tokens for job owners.

A token's subject is the owner's email; every job and result is scoped to
it. Tokens are accepted from the ``Authorization`` header or, for browser
clients, from the ``access_token`` cookie set at login.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from configs.config import get_config
from src.database.user_repository import UserRepository

logger = logging.getLogger(__name__)
cfg = get_config()

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token", auto_error=False)

ACCESS_TOKEN_COOKIE = "access_token"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(email: str, expires_delta: Optional[timedelta] = None) -> str:
    """Signed token for ``email``, valid for ``ACCESS_TOKEN_EXPIRE_MINUTES`` by default."""
    expire = datetime.utcnow() + (
        expires_delta or timedelta(minutes=cfg.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    claims = {"sub": email.lower(), "exp": expire, "iat": datetime.utcnow()}
    return jwt.encode(claims, cfg.JWT_SECRET_KEY, algorithm=cfg.JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[str]:
    """Email carried by a valid token, or None."""
    try:
        payload = jwt.decode(token, cfg.JWT_SECRET_KEY, algorithms=[cfg.JWT_ALGORITHM])
    except JWTError as exc:
        logger.debug("Rejected access token: %s", exc)
        return None
    return payload.get("sub")


def authenticate_user(email: str, password: str) -> Optional[Dict[str, Any]]:
    """The stored user when ``password`` matches, else None."""
    user = UserRepository().get_user_by_email(email)
    if not user or not user.get("hashed_password"):
        return None
    if not verify_password(password, user["hashed_password"]):
        return None
    return user


async def get_current_user(
    request: Request, token: Optional[str] = Depends(oauth2_scheme)
) -> Dict[str, Any]:
    """Dependency resolving the authenticated job owner."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    token = token or request.cookies.get(ACCESS_TOKEN_COOKIE)
    if not token:
        raise credentials_exception

    email = decode_access_token(token)
    if email is None:
        raise credentials_exception

    user = UserRepository().get_user_by_email(email=email)
    if user is None:
        raise credentials_exception
    user.pop("hashed_password", None)
    return user
