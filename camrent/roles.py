"""Role resolution: every identity maps to exactly one effective role."""
from __future__ import annotations

from typing import Iterable, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import RoleEnum, UserRole

ROLE_PRIORITY: dict[RoleEnum, int] = {
    RoleEnum.SUPERADMIN: 4,
    RoleEnum.ADMIN: 3,
    RoleEnum.STAFF: 2,
    RoleEnum.CUSTOMER: 1,
}

DEFAULT_ROLE = RoleEnum.CUSTOMER
BACK_OFFICE_ROLES = frozenset({RoleEnum.STAFF, RoleEnum.ADMIN, RoleEnum.SUPERADMIN})
ADMIN_ROLES = frozenset({RoleEnum.ADMIN, RoleEnum.SUPERADMIN})


def role_priority(role: RoleEnum) -> int:
    return ROLE_PRIORITY[RoleEnum(role)]


def highest_role(roles: Iterable[RoleEnum]) -> RoleEnum:
    """Pick the highest-priority role, falling back to ``customer`` for an empty set."""

    return max((RoleEnum(role) for role in roles), key=role_priority, default=DEFAULT_ROLE)


def resolve_role(db: Session, user_id: int) -> RoleEnum:
    """Return the single effective role held by ``user_id``.

    Missing role rows resolve to the default role instead of raising.
    """

    held = db.scalars(select(UserRole.role).where(UserRole.user_id == user_id)).all()
    return highest_role(held)


def effective_role_rows(rows: Iterable[UserRole]) -> List[UserRole]:
    """Keep one row per user: the one holding that user's highest role.

    Input order is preserved for the rows that survive.
    """

    rows = list(rows)
    best: dict[int, UserRole] = {}
    for row in rows:
        current = best.get(row.user_id)
        if current is None or role_priority(row.role) > role_priority(current.role):
            best[row.user_id] = row
    winners = {id(row) for row in best.values()}
    return [row for row in rows if id(row) in winners]


def is_back_office(role: RoleEnum) -> bool:
    return role in BACK_OFFICE_ROLES


def is_admin(role: RoleEnum) -> bool:
    return role in ADMIN_ROLES
