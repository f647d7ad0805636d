from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar, Union
from urllib.parse import urlparse, urlunparse

from gatehouse.config import Settings, get_settings
from gatehouse.logging import get_logger
from gatehouse.service.audit import AuditLogger
from gatehouse.service.auth import AuthService
from gatehouse.service.credentials import CredentialService
from gatehouse.service.csrf import CsrfGuard
from gatehouse.service.engine import SecurityEngine
from gatehouse.service.errors import RequestTimeoutError
from gatehouse.service.rate_limit import RateLimiter
from gatehouse.service.revocation import RevocationRegistry
from gatehouse.service.sessions import SessionRegistry
from gatehouse.service.tokens import TokenService
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.redis_cache import RedisStore

logger = get_logger(__name__)

T = TypeVar("T")


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


async def run_with_deadline(awaitable: Awaitable[T], seconds: float) -> T:
    """Await ``awaitable`` for at most ``seconds``.

    Raises ``RequestTimeoutError`` on expiry. Writes the cancelled work already
    made are kept.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        logger.warning("request_deadline_exceeded", timeout_seconds=seconds)
        raise RequestTimeoutError(
            "request timed out", detail={"timeout_seconds": seconds}
        ) from exc


class Runtime:
    """Holds the store and service instances shared by every request."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )
        self.store: Union[MemoryStore, RedisStore] = self._build_store()

        self.revocation = RevocationRegistry(self.store)
        self.sessions = SessionRegistry(
            self.store, self.revocation, max_sessions=self.settings.max_sessions
        )
        self.credentials = CredentialService(self.settings, self.store)
        self.tokens = TokenService(self.settings, self.store, self.revocation, self.sessions)
        self.audit = AuditLogger(self.store)
        self.csrf = CsrfGuard(self.settings)
        self.limiter = RateLimiter(
            self.settings,
            backend=self.store if isinstance(self.store, RedisStore) else None,
        )
        self.auth = AuthService(
            self.settings,
            self.store,
            self.credentials,
            self.tokens,
            self.sessions,
            self.revocation,
            self.audit,
        )
        self.engine = SecurityEngine(self.settings, self.auth, self.csrf, self.limiter)
        logger.info("runtime_init_completed")

    def _build_store(self) -> Union[MemoryStore, RedisStore]:
        if self.settings.use_memory_store:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryStore()
        if not self.settings.redis_url:
            raise RuntimeError(
                "REDIS_URL is required unless USE_MEMORY_STORE=true"
            )
        store = RedisStore(self.settings.redis_url)
        try:
            store.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="redis",
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
            )
            raise
        logger.info(
            "runtime_store_initialized",
            store_type="redis",
            redis_url=_mask_url_password(self.settings.redis_url),
        )
        return store

    async def sweep_once(self) -> int:
        removed = await self.store.sweep_expired()
        idle_buckets = await self.limiter.prune()
        if removed or idle_buckets:
            logger.info(
                "expired_records_swept", removed=removed, idle_buckets=idle_buckets
            )
        return removed

    async def sweep_forever(self) -> None:
        """Periodic expiry sweep; store faults are logged and retried next round."""
        interval = self.settings.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.error("expired_records_sweep_failed", error=str(exc))

    async def close(self) -> None:
        await self.store.close()
        logger.info("runtime_closed")


__all__ = ["Runtime", "run_with_deadline"]
