from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.revocation import CLOCK_SKEW_LEEWAY, RevocationRegistry, hash_token
from gatehouse.service.sessions import SessionRegistry
from gatehouse.storage.common import AuthStore
from gatehouse.storage.models import RevocationReason, TokenKind, TokenRecord

logger = get_logger(__name__)

# claims the service owns; caller payload cannot override them
_RESERVED_CLAIMS = frozenset(
    {"iss", "aud", "sub", "sid", "iat", "exp", "jti", "fgp", "token_type"}
)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    fingerprint: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    access_hash: str
    refresh_hash: str
    session_id: Optional[str] = None


class TokenService:
    """Issues, verifies and rotates HS256 tokens bound to a device fingerprint."""

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        revocation: RevocationRegistry,
        sessions: SessionRegistry,
    ) -> None:
        self.settings = settings
        self.store = store
        self.revocation = revocation
        self.sessions = sessions
        self._clock_skew_leeway = CLOCK_SKEW_LEEWAY

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # Fingerprint -------------------------------------------------------------

    def fingerprint(self, user_agent: Optional[str], ip: Optional[str]) -> str:
        """Keyed one-way hash of the request context a token is bound to."""
        material = f"{user_agent or ''}\n{ip or ''}".encode()
        return hmac.new(
            self.settings.fingerprint_secret.encode(), material, hashlib.sha256
        ).hexdigest()

    # JWT encoding ------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Signature, algorithm, issuer, audience and expiry checks only."""
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    # Issuance ----------------------------------------------------------------

    async def generate_token_pair(
        self,
        payload: Mapping[str, Any],
        user_agent: Optional[str],
        ip: Optional[str],
    ) -> TokenPair:
        """Issue an access/refresh pair carrying ``payload`` and a fingerprint.

        ``payload`` must contain ``sub``; ``sid`` binds the pair to a session.
        Only hashes of the issued tokens are recorded.
        """
        subject = payload.get("sub")
        if not subject:
            raise ValueError("token payload requires a subject")
        now = self._now()
        fgp = self.fingerprint(user_agent, ip)
        session_id = payload.get("sid")
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_exp = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        base = {k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS}
        base.update(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": str(subject),
                "iat": int(now.timestamp()),
                "fgp": fgp,
            }
        )
        if session_id:
            base["sid"] = session_id

        access_token = self._encode_jwt(
            {
                **base,
                "token_type": TokenKind.ACCESS.value,
                "jti": str(uuid.uuid4()),
                "exp": int(access_exp.timestamp()),
            }
        )
        refresh_token = self._encode_jwt(
            {
                **base,
                "token_type": TokenKind.REFRESH.value,
                "jti": str(uuid.uuid4()),
                "exp": int(refresh_exp.timestamp()),
            }
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            fingerprint=fgp,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            access_hash=hash_token(access_token),
            refresh_hash=hash_token(refresh_token),
            session_id=session_id,
        )
        for token_hash, kind, expires_at in (
            (pair.access_hash, TokenKind.ACCESS, access_exp),
            (pair.refresh_hash, TokenKind.REFRESH, refresh_exp),
        ):
            await self.store.record_token(
                TokenRecord(
                    token_hash=token_hash,
                    user_id=str(subject),
                    fingerprint=fgp,
                    kind=kind,
                    issued_at=now,
                    expires_at=expires_at,
                    session_id=session_id,
                )
            )
        return pair

    # Verification ------------------------------------------------------------

    async def verify_token(
        self,
        token: str,
        user_agent: Optional[str],
        ip: Optional[str],
        *,
        expected_type: str = TokenKind.ACCESS.value,
    ) -> Optional[dict[str, Any]]:
        """Return the claims of a usable token, else ``None``.

        Order matters: signature and expiry, then the revocation registry,
        then the fingerprint recomputed from the current request context.
        """
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != expected_type:
            return None
        if await self.revocation.is_blacklisted(hash_token(token)):
            logger.info("token_rejected_blacklisted", token_type=expected_type)
            return None
        claimed = payload.get("fgp")
        current = self.fingerprint(user_agent, ip)
        if not isinstance(claimed, str) or not hmac.compare_digest(
            claimed.encode(), current.encode()
        ):
            logger.warning(
                "token_fingerprint_mismatch",
                user_id=payload.get("sub"),
                token_type=expected_type,
            )
            return None
        return payload

    async def revoke_token(
        self,
        token: str,
        reason: RevocationReason = RevocationReason.LOGOUT,
        *,
        user_id: Optional[str] = None,
    ) -> bool:
        """Blacklist a presented token until its own expiry.

        Only the signature is checked, so a token bound to another device can
        still be killed. With ``user_id`` set, tokens of other subjects are
        ignored.
        """
        claims = self._decode_jwt(token)
        if not claims or not claims.get("sub"):
            return False
        if user_id is not None and claims["sub"] != user_id:
            return False
        expires_at = datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc)
        await self.revocation.blacklist_token(
            hash_token(token), claims["sub"], reason, expires_at
        )
        return True

    async def refresh_access_token(
        self,
        refresh_token: str,
        user_agent: Optional[str],
        ip: Optional[str],
    ) -> Optional[TokenPair]:
        """Rotate a refresh token into a new pair.

        The old refresh hash is claimed in the revocation registry with reason
        ``rotated`` before anything is issued. The claim is insert-if-absent,
        so of two concurrent calls with the same token only one proceeds.
        """
        claims = await self.verify_token(
            refresh_token, user_agent, ip, expected_type=TokenKind.REFRESH.value
        )
        if claims is None:
            return None
        user = await self.store.get_user(claims["sub"])
        if user is None:
            return None
        session = None
        session_id = claims.get("sid")
        if session_id:
            session = await self.sessions.get_session(session_id)
            if session is None or not session.is_live(self._now()):
                return None

        old_hash = hash_token(refresh_token)
        old_exp = datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc)
        if old_exp <= self._now():
            # inside the skew leeway there is nothing left to claim
            return None
        claimed = await self.revocation.blacklist_token(
            old_hash, user.id, RevocationReason.ROTATED, old_exp
        )
        if not claimed:
            logger.warning("refresh_token_reuse_rejected", user_id=user.id)
            return None

        pair = await self.generate_token_pair(
            {"sub": user.id, "role": user.role, "email": user.email, "sid": session_id},
            user_agent,
            ip,
        )
        if session is not None:
            # the previous access token is retired with the rotation
            await self.revocation.blacklist_token(
                session.token_hash,
                user.id,
                RevocationReason.ROTATED,
                session.access_expires_at or session.expires_at,
            )
            await self.sessions.rebind_tokens(
                session, pair.access_hash, pair.refresh_hash, pair.access_expires_at
            )
        logger.info("refresh_token_rotated", user_id=user.id, session_id=session_id)
        return pair
