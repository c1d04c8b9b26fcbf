from __future__ import annotations

from typing import Iterable

from . import models
from .services.errors import PermissionDenied
from .states import UserRole

# purpose: role checks for quality decisions and template authoring
# status: active

QP_ROLES = (UserRole.QP.value, UserRole.ADMIN.value)


def has_role(user: models.User, roles: Iterable[str]) -> bool:
    return (user.role or UserRole.OPERATOR.value) in set(roles)


def require_role(user: models.User, roles: Iterable[str], action: str) -> None:
    roles = tuple(roles)
    if not has_role(user, roles):
        raise PermissionDenied(
            f"User {user.email} (role {user.role}) may not {action}; requires one of {', '.join(roles)}"
        )
