"""Password hashing and access tokens for rental accounts.

Tokens carry only the account id (``sub``) and email. Roles are never read
from the token; they are resolved from ``user_roles`` on every request.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, status
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import get_settings
from .models import User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
settings = get_settings()

TOKEN_TYPE = "access"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def issue_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.utcnow()
    claims = {
        "sub": str(user.id),
        "email": user.email,
        "type": TOKEN_TYPE,
        "iat": now,
        "exp": now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes)),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> int:
    """Validate ``token`` and return the account id it was issued for."""

    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise _unauthorized("Invalid token") from exc
    if claims.get("type") != TOKEN_TYPE:
        raise _unauthorized("Invalid token type")
    try:
        return int(claims["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise _unauthorized("Malformed subject in token") from exc


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    user = db.scalars(select(User).where(User.email == email.strip().lower())).first()
    if not user or not verify_password(password, user.hashed_password):
        logger.warning("failed login for %s", email)
        return None
    return user
