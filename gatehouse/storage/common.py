"""Store contract and helpers shared between the memory and Redis backends."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Protocol

from gatehouse.storage.models import (
    AuditEntry,
    Credential,
    RevocationEntry,
    Session,
    TokenRecord,
    User,
)


class AuthStore(Protocol):
    """Persistence operations the engine needs.

    Every method may raise ``StoreUnavailableError``; lookups honor
    ``expires_at`` so callers never see an expired revocation, token shadow
    or session as live.
    """

    async def create_user(self, user: User) -> User: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def get_credential(self, user_id: str) -> Optional[Credential]: ...

    async def save_credential(self, credential: Credential) -> Credential: ...

    async def record_token(self, record: TokenRecord) -> TokenRecord: ...

    async def list_user_tokens(self, user_id: str) -> List[TokenRecord]: ...

    async def add_revocation(self, entry: RevocationEntry) -> bool: ...

    async def get_revocation(self, token_hash: str) -> Optional[RevocationEntry]: ...

    async def insert_session(self, session: Session) -> Session: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def get_session_by_token(self, token_hash: str) -> Optional[Session]: ...

    async def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[Session]: ...

    async def save_session(self, session: Session) -> Session: ...

    async def append_audit(self, entry: AuditEntry) -> None: ...

    async def list_audit(
        self, *, actor_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEntry]: ...

    async def sweep_expired(self, now: Optional[datetime] = None) -> int: ...

    async def close(self) -> None: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    return expires_at is not None and as_utc(expires_at) <= now
