from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from gatehouse.logging import get_correlation_id, get_logger, sanitize_error_message
from gatehouse.service.sanitize import mask_email, mask_ip, mask_phone
from gatehouse.storage.common import AuthStore
from gatehouse.storage.models import AuditChange, AuditEntry

logger = get_logger(__name__)

MASK = "***masked***"
MAX_USER_AGENT_LENGTH = 255
SENSITIVE_FIELDS = frozenset(
    {"password", "token", "secret", "api_key", "ssn", "card_number", "cvv", "pin"}
)


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"
    LOGIN = "login"
    LOGOUT = "logout"
    PERMISSION_CHANGE = "permission_change"
    ROLE_CHANGE = "role_change"
    PASSWORD_CHANGE = "password_change"
    SETTINGS_CHANGE = "settings_change"
    EXPORT = "export"
    IMPORT = "import"
    SESSION_REVOKE = "session_revoke"


def _is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SENSITIVE_FIELDS)


def _plain(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return str(value)


def mask_value(name: str, value: Any) -> Any:
    """Mask a single field value according to its name."""
    if value is None:
        return None
    if _is_sensitive(name):
        return MASK
    if isinstance(value, Mapping):
        return {str(k): mask_value(str(k), v) for k, v in value.items()}
    lowered = name.lower()
    if isinstance(value, str):
        if "email" in lowered:
            return mask_email(value)
        if "phone" in lowered:
            return mask_phone(value)
    return _plain(value)


def diff_changes(
    before: Mapping[str, Any], after: Mapping[str, Any], *, ignore: Iterable[str] = ()
) -> List[AuditChange]:
    """Field-level diff between two snapshots of a resource."""
    skipped = set(ignore)
    changes = []
    for name in sorted(set(before) | set(after)):
        if name in skipped:
            continue
        old, new = before.get(name), after.get(name)
        if old != new:
            changes.append(AuditChange(field=name, old=old, new=new))
    return changes


class AuditLogger:
    """Append-only audit trail of security-relevant actions.

    Recording never raises; a failed write is logged and dropped so that the
    audited operation itself still completes.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    async def record(
        self,
        action: AuditAction,
        resource_type: str,
        *,
        actor_id: Optional[str] = None,
        role: Optional[str] = None,
        resource_id: Optional[str] = None,
        changes: Sequence[AuditChange] = (),
        success: bool = True,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        try:
            entry = AuditEntry(
                actor_id=actor_id,
                role=role,
                action=AuditAction(action).value,
                resource_type=resource_type,
                resource_id=resource_id,
                changes=tuple(
                    AuditChange(
                        field=c.field,
                        old=mask_value(c.field, c.old),
                        new=mask_value(c.field, c.new),
                    )
                    for c in changes
                ),
                success=success,
                ip_address=mask_ip(ip_address),
                user_agent=(user_agent or "")[:MAX_USER_AGENT_LENGTH] or None,
                correlation_id=get_correlation_id(),
                error_message=sanitize_error_message(error_message) if error_message else None,
            )
            await self.store.append_audit(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=str(action),
                resource_type=resource_type,
                error=str(exc),
            )
            return None
        return entry

    async def list_entries(
        self, *, actor_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEntry]:
        return await self.store.list_audit(actor_id=actor_id, limit=limit)


__all__ = ["AuditAction", "AuditLogger", "MASK", "diff_changes", "mask_value"]
