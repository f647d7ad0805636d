from __future__ import annotations

import contextlib
import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from gatehouse.logging import get_logger
from gatehouse.storage.common import as_utc, is_expired, normalize_email
from gatehouse.storage.errors import ConstraintViolation, StoreUnavailableError
from gatehouse.storage.models import (
    AuditEntry,
    Credential,
    RevocationEntry,
    Session,
    TokenRecord,
    User,
    utcnow,
)

logger = get_logger(__name__)


class RedisStore:
    """Redis-backed store; expiry is native (``EX``) rather than swept."""

    KEY_PREFIX = "gh"
    AUDIT_MAX_ENTRIES = 10_000

    # Atomic refill + consume for one bucket
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tostring(tokens), 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def _key(self, *parts: str) -> str:
        return ":".join((self.KEY_PREFIX, *parts))

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 for ``EX``."""
        return max(1, int((as_utc(expires_at) - datetime.now(timezone.utc)).total_seconds()))

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error("redis_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailableError(operation, exc) from exc

    @staticmethod
    def _dump(record: Any) -> str:
        return json.dumps(record.to_dict(), separators=(",", ":"))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    # Users -----------------------------------------------------------------

    async def create_user(self, user: User) -> User:
        email = normalize_email(user.email)
        stored = User(id=user.id, email=email, role=user.role, created_at=user.created_at)
        async with self._guard("create_user"):
            claimed = await self.client.set(self._key("user_email", email), user.id, nx=True)
            if not claimed:
                raise ConstraintViolation("email already exists", {"field": "email"})
            await self.client.set(self._key("user", user.id), self._dump(stored))
        return stored

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._guard("get_user"):
            raw = await self.client.get(self._key("user", user_id))
        return User.from_dict(json.loads(raw)) if raw else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        async with self._guard("get_user_by_email"):
            user_id = await self.client.get(self._key("user_email", normalize_email(email)))
        if not user_id:
            return None
        return await self.get_user(user_id)

    # Credentials -----------------------------------------------------------

    async def get_credential(self, user_id: str) -> Optional[Credential]:
        async with self._guard("get_credential"):
            raw = await self.client.get(self._key("credential", user_id))
        return Credential.from_dict(json.loads(raw)) if raw else None

    async def save_credential(self, credential: Credential) -> Credential:
        async with self._guard("save_credential"):
            await self.client.set(
                self._key("credential", credential.user_id), self._dump(credential)
            )
        return credential

    # Token shadows ---------------------------------------------------------

    async def record_token(self, record: TokenRecord) -> TokenRecord:
        ttl = self._ttl_seconds(record.expires_at)
        index_key = self._key("user_tokens", record.user_id)
        async with self._guard("record_token"):
            pipe = self.client.pipeline(transaction=True)
            pipe.set(self._key("token", record.token_hash), self._dump(record), ex=ttl)
            pipe.sadd(index_key, record.token_hash)
            # keep the index alive as long as its longest-lived member
            pipe.expire(index_key, ttl, gt=True)
            pipe.expire(index_key, ttl, nx=True)
            await pipe.execute()
        return record

    async def list_user_tokens(self, user_id: str) -> List[TokenRecord]:
        index_key = self._key("user_tokens", user_id)
        async with self._guard("list_user_tokens"):
            hashes = sorted(await self.client.smembers(index_key))
            if not hashes:
                return []
            raws = await self.client.mget([self._key("token", h) for h in hashes])
            stale = [h for h, raw in zip(hashes, raws) if raw is None]
            if stale:
                await self.client.srem(index_key, *stale)
        now = utcnow()
        records = [TokenRecord.from_dict(json.loads(raw)) for raw in raws if raw]
        return [r for r in records if not is_expired(r.expires_at, now)]

    # Revocation ------------------------------------------------------------

    async def add_revocation(self, entry: RevocationEntry) -> bool:
        async with self._guard("add_revocation"):
            created = await self.client.set(
                self._key("revoked", entry.token_hash),
                self._dump(entry),
                ex=self._ttl_seconds(entry.expires_at),
                nx=True,
            )
        return bool(created)

    async def get_revocation(self, token_hash: str) -> Optional[RevocationEntry]:
        async with self._guard("get_revocation"):
            raw = await self.client.get(self._key("revoked", token_hash))
        if not raw:
            return None
        entry = RevocationEntry.from_dict(json.loads(raw))
        return None if is_expired(entry.expires_at, utcnow()) else entry

    # Sessions --------------------------------------------------------------

    async def insert_session(self, session: Session) -> Session:
        async with self._guard("insert_session"):
            seq = await self.client.incr(self._key("session_seq"))
            stored = Session.from_dict({**session.to_dict(), "seq": int(seq)})
            created = await self.client.set(
                self._key("session", stored.id),
                self._dump(stored),
                ex=self._ttl_seconds(stored.expires_at),
                nx=True,
            )
            if not created:
                raise ConstraintViolation("session already exists", {"field": "id"})
            await self._index_session(stored)
        return stored

    async def _index_session(
        self, session: Session, previous: Optional[Session] = None
    ) -> None:
        ttl = self._ttl_seconds(session.expires_at)
        user_key = self._key("user_sessions", session.user_id)
        pipe = self.client.pipeline(transaction=True)
        if previous is not None:
            for token_hash in (previous.token_hash, previous.refresh_token_hash):
                if token_hash:
                    pipe.delete(self._key("session_token", token_hash))
        for token_hash in (session.token_hash, session.refresh_token_hash):
            if token_hash:
                pipe.set(self._key("session_token", token_hash), session.id, ex=ttl)
        pipe.sadd(user_key, session.id)
        pipe.expire(user_key, ttl, gt=True)
        pipe.expire(user_key, ttl, nx=True)
        await pipe.execute()

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self._guard("get_session"):
            raw = await self.client.get(self._key("session", session_id))
        if not raw:
            return None
        session = Session.from_dict(json.loads(raw))
        return None if is_expired(session.expires_at, utcnow()) else session

    async def get_session_by_token(self, token_hash: str) -> Optional[Session]:
        async with self._guard("get_session_by_token"):
            session_id = await self.client.get(self._key("session_token", token_hash))
        if not session_id:
            return None
        return await self.get_session(session_id)

    async def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[Session]:
        user_key = self._key("user_sessions", user_id)
        async with self._guard("list_user_sessions"):
            ids = sorted(await self.client.smembers(user_key))
            if not ids:
                return []
            raws = await self.client.mget([self._key("session", i) for i in ids])
            stale = [i for i, raw in zip(ids, raws) if raw is None]
            if stale:
                await self.client.srem(user_key, *stale)
        now = utcnow()
        sessions = [Session.from_dict(json.loads(raw)) for raw in raws if raw]
        sessions = [s for s in sessions if not is_expired(s.expires_at, now)]
        if active_only:
            sessions = [s for s in sessions if s.is_active]
        return sorted(sessions, key=lambda s: s.seq)

    async def save_session(self, session: Session) -> Session:
        async with self._guard("save_session"):
            raw = await self.client.get(self._key("session", session.id))
            if not raw:
                raise ConstraintViolation("session not found", {"field": "id"})
            previous = Session.from_dict(json.loads(raw))
            stored = Session.from_dict({**session.to_dict(), "seq": previous.seq})
            await self.client.set(
                self._key("session", stored.id),
                self._dump(stored),
                ex=self._ttl_seconds(stored.expires_at),
            )
            await self._index_session(stored, previous)
        return stored

    # Audit -----------------------------------------------------------------

    async def append_audit(self, entry: AuditEntry) -> None:
        key = self._key("audit")
        async with self._guard("append_audit"):
            pipe = self.client.pipeline(transaction=True)
            pipe.rpush(key, self._dump(entry))
            pipe.ltrim(key, -self.AUDIT_MAX_ENTRIES, -1)
            await pipe.execute()

    async def list_audit(
        self, *, actor_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEntry]:
        async with self._guard("list_audit"):
            raws = await self.client.lrange(self._key("audit"), 0, -1)
        entries = [AuditEntry.from_dict(json.loads(raw)) for raw in reversed(raws)]
        if actor_id is not None:
            entries = [e for e in entries if e.actor_id == actor_id]
        return entries[:limit]

    # Maintenance -----------------------------------------------------------

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        # Redis expires keys itself; index sets are pruned lazily on read
        return 0

    # Rate limiting ---------------------------------------------------------

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so caller-controlled values cannot collide on delimiters."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def check_rate_limit(
        self,
        key: str,
        *,
        capacity: float,
        refill_rate: float,
        cost: int = 1,
    ) -> Tuple[bool, float, int]:
        """Consume from a Redis token bucket.

        Returns ``(allowed, remaining_tokens, retry_after_seconds)``.
        """
        safe_key = self._key(self._normalize_rate_key(key))
        async with self._guard("check_rate_limit"):
            allowed, tokens, reset_after = await self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, capacity, max(1, cost)],
            )
        return bool(int(allowed)), max(0.0, float(tokens)), int(reset_after or 0)

    async def reset_rate_limit(self, key: str) -> None:
        async with self._guard("reset_rate_limit"):
            await self.client.delete(self._key(self._normalize_rate_key(key)))


__all__ = ["RedisStore"]
