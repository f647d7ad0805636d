from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Union

from gatehouse.logging import get_logger
from gatehouse.storage.common import AuthStore, as_utc
from gatehouse.storage.models import RevocationEntry, RevocationReason

logger = get_logger(__name__)

# Token verification tolerates this much clock skew past `exp`
CLOCK_SKEW_LEEWAY = timedelta(seconds=120)


def hash_token(token: str) -> str:
    """Stable storage key for a bearer value; the value itself is never stored."""
    return hashlib.sha256(token.encode()).hexdigest()


class RevocationRegistry:
    """Authoritative kill-switch for token hashes.

    Entries live as long as the token they kill can still verify, which is
    its expiry plus the clock skew leeway.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def is_blacklisted(self, token_hash: str) -> bool:
        return await self.store.get_revocation(token_hash) is not None

    async def blacklist_token(
        self,
        token_hash: str,
        user_id: str,
        reason: Union[RevocationReason, str],
        expires_at: datetime,
    ) -> bool:
        """Insert a revocation entry if none is live yet.

        Returns ``True`` when this call created the entry, which lets refresh
        rotation claim a token exactly once. A token past its expiry and the
        skew leeway can no longer verify, needs no entry and is reported as
        claimed.
        """
        reason = RevocationReason(reason)
        expires_at = as_utc(expires_at) + CLOCK_SKEW_LEEWAY
        if expires_at <= self._now():
            return True
        created = await self.store.add_revocation(
            RevocationEntry(
                token_hash=token_hash,
                user_id=user_id,
                reason=reason,
                expires_at=expires_at,
                created_at=self._now(),
            )
        )
        if created:
            logger.info(
                "token_blacklisted",
                user_id=user_id,
                reason=reason.value,
                hash_prefix=token_hash[:12],
            )
        return created

    async def revoke_all_user_tokens(
        self, user_id: str, reason: Union[RevocationReason, str] = RevocationReason.REVOKED
    ) -> int:
        """Blacklist every still-valid token issued to ``user_id``."""
        reason = RevocationReason(reason)
        count = 0
        for record in await self.store.list_user_tokens(user_id):
            if await self.blacklist_token(record.token_hash, user_id, reason, record.expires_at):
                count += 1
        logger.warning("user_tokens_revoked", user_id=user_id, reason=reason.value, count=count)
        return count
