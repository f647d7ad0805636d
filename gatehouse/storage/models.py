from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class RevocationReason(str, Enum):
    LOGOUT = "logout"
    REVOKED = "revoked"
    EXPIRED = "expired"
    SECURITY = "security"
    ROTATED = "rotated"


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _Record:
    """JSON round-tripping shared by the persisted records."""

    _datetime_fields: Tuple[str, ...] = ()
    _tuple_fields: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)  # type: ignore[call-overload]
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, Enum):
                data[key] = value.value
            elif isinstance(value, tuple):
                data[key] = list(value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        values = {k: v for k, v in data.items() if k in known}
        for name in cls._datetime_fields:
            if name in values:
                values[name] = _parse_dt(values[name])
        for name in cls._tuple_fields:
            if name in values:
                values[name] = tuple(values[name] or ())
        return cls(**values)


@dataclass(frozen=True)
class User(_Record):
    id: str
    email: str
    role: str = "customer"
    created_at: datetime = field(default_factory=utcnow)

    _datetime_fields = ("created_at",)

    @classmethod
    def new(cls, email: str, role: str = "customer") -> "User":
        return cls(id=str(uuid.uuid4()), email=email.strip().lower(), role=role)


@dataclass(frozen=True)
class Credential(_Record):
    user_id: str
    password_hash: str
    password_history: Tuple[str, ...] = ()
    last_changed_at: datetime = field(default_factory=utcnow)
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None

    _datetime_fields = ("last_changed_at", "locked_until")
    _tuple_fields = ("password_history",)


@dataclass(frozen=True)
class TokenRecord(_Record):
    """Server-side shadow of an issued token; only the hash is ever stored."""

    token_hash: str
    user_id: str
    fingerprint: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    session_id: Optional[str] = None

    _datetime_fields = ("issued_at", "expires_at")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        data = {**data, "kind": TokenKind(data["kind"])}
        return super().from_dict(data)


@dataclass(frozen=True)
class RevocationEntry(_Record):
    token_hash: str
    user_id: str
    reason: RevocationReason
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    _datetime_fields = ("expires_at", "created_at")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RevocationEntry":
        data = {**data, "reason": RevocationReason(data["reason"])}
        return super().from_dict(data)


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: str
    ip_address: str
    device_fingerprint: str
    platform: Optional[str] = None
    browser: Optional[str] = None


@dataclass(frozen=True)
class Session(_Record):
    id: str
    user_id: str
    token_hash: str
    device_fingerprint: str
    ip_address: str
    user_agent: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    refresh_token_hash: Optional[str] = None
    access_expires_at: Optional[datetime] = None
    platform: Optional[str] = None
    browser: Optional[str] = None
    is_active: bool = True
    revoked_reason: Optional[str] = None
    # monotonically increasing per store; tie-breaker for eviction order
    seq: int = 0

    _datetime_fields = ("created_at", "last_activity", "expires_at", "access_expires_at")

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        device: DeviceInfo,
        expires_at: datetime,
        *,
        refresh_token_hash: Optional[str] = None,
        access_expires_at: Optional[datetime] = None,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            device_fingerprint=device.device_fingerprint,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            platform=device.platform,
            browser=device.browser,
            created_at=now,
            last_activity=now,
            expires_at=expires_at,
            refresh_token_hash=refresh_token_hash,
            access_expires_at=access_expires_at,
        )

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now


@dataclass(frozen=True)
class AuditChange:
    field: str
    old: Any = None
    new: Any = None


@dataclass(frozen=True)
class AuditEntry(_Record):
    actor_id: Optional[str]
    role: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    changes: Tuple[AuditChange, ...] = ()
    success: bool = True
    timestamp: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    correlation_id: Optional[str] = None
    error_message: Optional[str] = None

    _datetime_fields = ("timestamp",)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        changes = tuple(AuditChange(**c) for c in data.get("changes") or ())
        return super().from_dict({**data, "changes": changes})


@dataclass
class RateLimitBucket:
    """Mutated in place, only under the rate limiter lock."""

    key: str
    tokens: float
    last_refill: float
    capacity: float
    refill_rate: float

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def is_full(self, now: float) -> bool:
        return self.tokens + max(0.0, now - self.last_refill) * self.refill_rate >= self.capacity

    def retry_after(self, cost: float = 1.0) -> float:
        missing = cost - self.tokens
        if missing <= 0:
            return 0.0
        return missing / self.refill_rate
