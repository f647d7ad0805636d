from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Set

from gatehouse.logging import get_logger
from gatehouse.storage.common import is_expired, normalize_email
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    AuditEntry,
    Credential,
    RevocationEntry,
    Session,
    TokenRecord,
    User,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Expiry is lazy: reads skip anything past ``expires_at`` and
    ``sweep_expired`` reclaims the memory periodically.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.tokens: Dict[str, TokenRecord] = {}
        self.revocations: Dict[str, RevocationEntry] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_log: List[AuditEntry] = []
        self._user_tokens: Dict[str, Set[str]] = {}
        self._session_by_token: Dict[str, str] = {}
        self._session_seq = itertools.count(1)
        self._data_lock = threading.RLock()

    # Users -----------------------------------------------------------------

    async def create_user(self, user: User) -> User:
        email = normalize_email(user.email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user already exists", {"field": "id"})
            stored = replace(user, email=email)
            self.users[stored.id] = stored
            return stored

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        target = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == target), None)

    # Credentials -----------------------------------------------------------

    async def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            return self.credentials.get(user_id)

    async def save_credential(self, credential: Credential) -> Credential:
        with self._data_lock:
            self.credentials[credential.user_id] = credential
            return credential

    # Token shadows ---------------------------------------------------------

    async def record_token(self, record: TokenRecord) -> TokenRecord:
        with self._data_lock:
            self.tokens[record.token_hash] = record
            self._user_tokens.setdefault(record.user_id, set()).add(record.token_hash)
            return record

    async def list_user_tokens(self, user_id: str) -> List[TokenRecord]:
        now = utcnow()
        with self._data_lock:
            hashes = self._user_tokens.get(user_id, set())
            records = [self.tokens[h] for h in hashes if h in self.tokens]
            return [r for r in records if not is_expired(r.expires_at, now)]

    # Revocation ------------------------------------------------------------

    async def add_revocation(self, entry: RevocationEntry) -> bool:
        now = utcnow()
        with self._data_lock:
            existing = self.revocations.get(entry.token_hash)
            if existing is not None and not is_expired(existing.expires_at, now):
                return False
            self.revocations[entry.token_hash] = entry
            return True

    async def get_revocation(self, token_hash: str) -> Optional[RevocationEntry]:
        now = utcnow()
        with self._data_lock:
            entry = self.revocations.get(token_hash)
            if entry is None:
                return None
            if is_expired(entry.expires_at, now):
                del self.revocations[token_hash]
                return None
            return entry

    # Sessions --------------------------------------------------------------

    async def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "id"})
            stored = replace(session, seq=next(self._session_seq))
            self.sessions[stored.id] = stored
            self._index_session(stored)
            return stored

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self._live_or_drop(self.sessions.get(session_id))

    async def get_session_by_token(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._session_by_token.get(token_hash)
            if session_id is None:
                return None
            return self._live_or_drop(self.sessions.get(session_id))

    async def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[Session]:
        now = utcnow()
        with self._data_lock:
            results = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and not is_expired(s.expires_at, now)
            ]
        if active_only:
            results = [s for s in results if s.is_active]
        return sorted(results, key=lambda s: s.seq)

    async def save_session(self, session: Session) -> Session:
        with self._data_lock:
            previous = self.sessions.get(session.id)
            if previous is None:
                raise ConstraintViolation("session not found", {"field": "id"})
            stored = replace(session, seq=previous.seq)
            for token_hash in (previous.token_hash, previous.refresh_token_hash):
                if token_hash:
                    self._session_by_token.pop(token_hash, None)
            self.sessions[stored.id] = stored
            self._index_session(stored)
            return stored

    def _index_session(self, session: Session) -> None:
        for token_hash in (session.token_hash, session.refresh_token_hash):
            if token_hash:
                self._session_by_token[token_hash] = session.id

    def _live_or_drop(self, session: Optional[Session]) -> Optional[Session]:
        if session is None:
            return None
        if is_expired(session.expires_at, utcnow()):
            self._drop_session(session)
            return None
        return session

    def _drop_session(self, session: Session) -> None:
        self.sessions.pop(session.id, None)
        for token_hash in (session.token_hash, session.refresh_token_hash):
            if token_hash and self._session_by_token.get(token_hash) == session.id:
                del self._session_by_token[token_hash]

    # Audit -----------------------------------------------------------------

    async def append_audit(self, entry: AuditEntry) -> None:
        with self._data_lock:
            self.audit_log.append(entry)

    async def list_audit(
        self, *, actor_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEntry]:
        with self._data_lock:
            entries = [
                e for e in self.audit_log if actor_id is None or e.actor_id == actor_id
            ]
        return list(reversed(entries))[:limit]

    # Maintenance -----------------------------------------------------------

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        removed = 0
        with self._data_lock:
            for token_hash, entry in list(self.revocations.items()):
                if is_expired(entry.expires_at, now):
                    del self.revocations[token_hash]
                    removed += 1
            for token_hash, record in list(self.tokens.items()):
                if is_expired(record.expires_at, now):
                    del self.tokens[token_hash]
                    self._user_tokens.get(record.user_id, set()).discard(token_hash)
                    removed += 1
            for session in list(self.sessions.values()):
                if is_expired(session.expires_at, now):
                    self._drop_session(session)
                    removed += 1
        if removed:
            self.logger.info("memory_store_swept", removed=removed)
        return removed

    async def close(self) -> None:
        return None
