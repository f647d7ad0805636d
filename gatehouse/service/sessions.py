from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional, Union

from gatehouse.logging import get_logger
from gatehouse.service.revocation import RevocationRegistry
from gatehouse.storage.common import AuthStore
from gatehouse.storage.models import DeviceInfo, RevocationReason, Session

logger = get_logger(__name__)


class SessionRegistry:
    """Per-user device sessions with a concurrency cap.

    The cap is enforced by evicting the least recently active session before
    a new one is admitted. Two logins racing on separate workers can each see
    room for themselves, so the cap may be exceeded by one until the next
    login for that user.
    """

    def __init__(
        self, store: AuthStore, revocation: RevocationRegistry, *, max_sessions: int = 3
    ) -> None:
        self.store = store
        self.revocation = revocation
        self.max_sessions = max_sessions

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def create_session(
        self,
        user_id: str,
        token_hash: str,
        device_info: DeviceInfo,
        expires_at: datetime,
        max_sessions: Optional[int] = None,
        *,
        refresh_token_hash: Optional[str] = None,
        access_expires_at: Optional[datetime] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        cap = max_sessions or self.max_sessions
        active = await self.store.list_user_sessions(user_id)
        overflow = len(active) - cap + 1
        if overflow > 0:
            by_activity = sorted(active, key=lambda s: (s.last_activity, s.seq))
            for victim in by_activity[:overflow]:
                await self._deactivate(victim, RevocationReason.SECURITY, "evicted")
                logger.info(
                    "session_evicted",
                    user_id=user_id,
                    session_id=victim.id,
                    max_sessions=cap,
                )
        session = Session.new(
            user_id,
            token_hash,
            device_info,
            expires_at,
            refresh_token_hash=refresh_token_hash,
            access_expires_at=access_expires_at,
            session_id=session_id,
            now=self._now(),
        )
        stored = await self.store.insert_session(session)
        logger.info("session_created", user_id=user_id, session_id=stored.id)
        return stored

    async def get_session(self, session_id: str) -> Optional[Session]:
        return await self.store.get_session(session_id)

    async def get_active_sessions(self, user_id: str) -> List[Session]:
        return await self.store.list_user_sessions(user_id, active_only=True)

    async def count_active_sessions(self, user_id: str) -> int:
        return len(await self.get_active_sessions(user_id))

    async def update_activity(self, token_hash: str) -> Optional[Session]:
        """Mark engagement on the session bound to ``token_hash``.

        ``expires_at`` is fixed at creation; only ``last_activity`` moves.
        """
        session = await self.store.get_session_by_token(token_hash)
        if session is None or not session.is_live(self._now()):
            return None
        return await self.store.save_session(replace(session, last_activity=self._now()))

    async def rebind_tokens(
        self,
        session: Session,
        token_hash: str,
        refresh_token_hash: str,
        access_expires_at: datetime,
    ) -> Session:
        """Point a session at the pair issued by a refresh rotation."""
        return await self.store.save_session(
            replace(
                session,
                token_hash=token_hash,
                refresh_token_hash=refresh_token_hash,
                access_expires_at=access_expires_at,
                last_activity=self._now(),
            )
        )

    async def revoke_session(
        self,
        token_hash: str,
        reason: Union[RevocationReason, str] = RevocationReason.LOGOUT,
    ) -> bool:
        session = await self.store.get_session_by_token(token_hash)
        if session is None or not session.is_active:
            return False
        await self._deactivate(session, RevocationReason(reason), "revoked")
        return True

    async def revoke_session_by_id(
        self,
        session_id: str,
        reason: Union[RevocationReason, str] = RevocationReason.REVOKED,
    ) -> bool:
        session = await self.store.get_session(session_id)
        if session is None or not session.is_active:
            return False
        await self._deactivate(session, RevocationReason(reason), "revoked")
        return True

    async def revoke_all_user_sessions(
        self,
        user_id: str,
        reason: Union[RevocationReason, str] = RevocationReason.REVOKED,
    ) -> int:
        reason = RevocationReason(reason)
        count = 0
        for session in await self.store.list_user_sessions(user_id, active_only=True):
            await self._deactivate(session, reason, "revoked")
            count += 1
        logger.warning(
            "user_sessions_revoked", user_id=user_id, reason=reason.value, count=count
        )
        return count

    async def _deactivate(
        self, session: Session, reason: RevocationReason, label: str
    ) -> Session:
        # tokens are revoked before the session record is written
        access_expiry = session.access_expires_at or session.expires_at
        await self.revocation.blacklist_token(
            session.token_hash, session.user_id, reason, access_expiry
        )
        if session.refresh_token_hash:
            await self.revocation.blacklist_token(
                session.refresh_token_hash, session.user_id, reason, session.expires_at
            )
        return await self.store.save_session(
            replace(session, is_active=False, revoked_reason=f"{label}:{reason.value}")
        )
