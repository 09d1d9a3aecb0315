"""Reusable FastAPI dependencies for auth and database access."""
from typing import Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from .auth import decode_access_token
from .database import get_db
from .models import RoleEnum, User
from .roles import ADMIN_ROLES, BACK_OFFICE_ROLES, resolve_role
from .schemas import Identity

oauth_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_current_user(token: str = Depends(oauth_scheme), db: Session = Depends(get_db)) -> User:
    user = db.get(User, decode_access_token(token))
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled")
    return user


def get_identity(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Identity:
    """Request-scoped identity with the role resolved from the role table."""

    return Identity(user_id=current_user.id, email=current_user.email, role=resolve_role(db, current_user.id))


def allow_roles(*roles: RoleEnum) -> Callable[[Identity], Identity]:
    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if identity.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return identity

    return dependency


require_back_office = allow_roles(*BACK_OFFICE_ROLES)
require_admin = allow_roles(*ADMIN_ROLES)
