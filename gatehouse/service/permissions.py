"""Role and ownership based access decisions.

Roles form an explicit total order; each role maps to a fixed permission set.
Decisions are pure functions over the role table so they can run anywhere an
``Identity`` is available.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, TypeVar

T = TypeVar("T")

ADMIN_ROLE = "admin"


class Permission(str, Enum):
    USER_CREATE = "user:create"
    USER_READ = "user:read"
    USER_UPDATE = "user:update"
    USER_DELETE = "user:delete"
    USER_LIST = "user:list"

    BOOKING_CREATE = "booking:create"
    BOOKING_READ = "booking:read"
    BOOKING_UPDATE = "booking:update"
    BOOKING_DELETE = "booking:delete"
    BOOKING_LIST = "booking:list"
    BOOKING_ASSIGN = "booking:assign"

    PAYMENT_PROCESS = "payment:process"
    PAYMENT_REFUND = "payment:refund"
    PAYMENT_VIEW = "payment:view"

    ANALYTICS_VIEW = "analytics:view"
    ANALYTICS_EXPORT = "analytics:export"

    ADMIN_PANEL = "admin:panel"
    ADMIN_SETTINGS = "admin:settings"
    ADMIN_USERS = "admin:users"
    ADMIN_ROLES = "admin:roles"

    CONTENT_CREATE = "content:create"
    CONTENT_UPDATE = "content:update"
    CONTENT_DELETE = "content:delete"
    CONTENT_PUBLISH = "content:publish"

    REPORT_VIEW = "report:view"
    REPORT_CREATE = "report:create"
    REPORT_EXPORT = "report:export"

    SESSION_READ = "session:read"
    SESSION_REVOKE = "session:revoke"


ROLE_HIERARCHY: Dict[str, int] = {
    "customer": 0,
    "mover": 1,
    "shiftlead": 2,
    "manager": 3,
    ADMIN_ROLE: 4,
}

_MOVER: FrozenSet[Permission] = frozenset(
    {
        Permission.BOOKING_READ,
        Permission.BOOKING_UPDATE,
        Permission.BOOKING_LIST,
        Permission.USER_READ,
        Permission.USER_UPDATE,
        Permission.SESSION_READ,
        Permission.SESSION_REVOKE,
    }
)

ROLE_PERMISSIONS: Dict[str, FrozenSet[Permission]] = {
    "customer": frozenset(
        {
            Permission.BOOKING_CREATE,
            Permission.BOOKING_READ,
            Permission.BOOKING_UPDATE,
            Permission.PAYMENT_VIEW,
            Permission.USER_READ,
            Permission.USER_UPDATE,
            Permission.SESSION_READ,
            Permission.SESSION_REVOKE,
        }
    ),
    "mover": _MOVER,
    "shiftlead": _MOVER | {Permission.BOOKING_ASSIGN, Permission.REPORT_VIEW},
    "manager": frozenset(
        {
            Permission.BOOKING_CREATE,
            Permission.BOOKING_READ,
            Permission.BOOKING_UPDATE,
            Permission.BOOKING_DELETE,
            Permission.BOOKING_LIST,
            Permission.BOOKING_ASSIGN,
            Permission.USER_CREATE,
            Permission.USER_READ,
            Permission.USER_UPDATE,
            Permission.USER_LIST,
            Permission.PAYMENT_VIEW,
            Permission.ANALYTICS_VIEW,
            Permission.REPORT_VIEW,
            Permission.REPORT_CREATE,
            Permission.SESSION_READ,
            Permission.SESSION_REVOKE,
        }
    ),
    ADMIN_ROLE: frozenset(Permission),
}


def _as_permission(permission: Any) -> Optional[Permission]:
    try:
        return Permission(permission)
    except ValueError:
        return None


def get_role_permissions(role: Optional[str]) -> FrozenSet[Permission]:
    return ROLE_PERMISSIONS.get(role or "", frozenset())


def has_permission(role: Optional[str], permission: Any) -> bool:
    perm = _as_permission(permission)
    if perm is None:
        return False
    if role == ADMIN_ROLE:
        return True
    return perm in get_role_permissions(role)


def has_any_permission(role: Optional[str], permissions: Iterable[Any]) -> bool:
    return any(has_permission(role, p) for p in permissions)


def has_all_permissions(role: Optional[str], permissions: Iterable[Any]) -> bool:
    return all(has_permission(role, p) for p in permissions)


def check_ownership(subject_id: Optional[str], owner_id: Optional[str]) -> bool:
    if subject_id is None or owner_id is None:
        return False
    return str(subject_id) == str(owner_id)


def can_access_resource(
    role: Optional[str],
    permission: Any,
    subject_id: Optional[str],
    owner_id: Optional[str],
) -> bool:
    if not has_permission(role, permission):
        return False
    return role == ADMIN_ROLE or check_ownership(subject_id, owner_id)


def _owner_of(item: Any, owner_key: str) -> Optional[str]:
    if isinstance(item, Mapping):
        return item.get(owner_key)
    return getattr(item, owner_key, None)


def filter_by_permission(
    items: Iterable[T],
    role: Optional[str],
    subject_id: Optional[str],
    permission: Any,
    owner_key: str = "owner_id",
) -> List[T]:
    """Return the rows of ``items`` the subject may see.

    Works on mappings and on objects exposing ``owner_key`` as an attribute.
    """
    items = list(items)
    if role == ADMIN_ROLE:
        return items
    if not has_permission(role, permission):
        return []
    return [item for item in items if check_ownership(subject_id, _owner_of(item, owner_key))]


def role_level(role: Optional[str]) -> int:
    """Position in the hierarchy; unknown roles rank below every known one."""
    return ROLE_HIERARCHY.get(role or "", -1)


def has_higher_privilege(role_a: Optional[str], role_b: Optional[str]) -> bool:
    return role_level(role_a) > role_level(role_b)


def get_permitted_actions(role: Optional[str], resource_type: str) -> List[str]:
    prefix = f"{resource_type}:"
    return sorted(
        perm.value[len(prefix):]
        for perm in get_role_permissions(role)
        if perm.value.startswith(prefix)
    )


__all__ = [
    "ADMIN_ROLE",
    "Permission",
    "ROLE_HIERARCHY",
    "ROLE_PERMISSIONS",
    "can_access_resource",
    "check_ownership",
    "filter_by_permission",
    "get_permitted_actions",
    "get_role_permissions",
    "has_all_permissions",
    "has_any_permission",
    "has_higher_privilege",
    "has_permission",
    "role_level",
]
