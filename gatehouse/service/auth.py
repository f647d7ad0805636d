from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Optional, Tuple, Union

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.audit import AuditAction, AuditLogger, diff_changes
from gatehouse.service.context import Identity, RequestContext
from gatehouse.service.credentials import CredentialService
from gatehouse.service.errors import AuthenticationError, ConflictError, ValidationError
from gatehouse.service.permissions import ROLE_HIERARCHY
from gatehouse.service.revocation import RevocationRegistry, hash_token
from gatehouse.service.sanitize import MAX_EMAIL_LENGTH, is_valid_email, mask_email
from gatehouse.service.sessions import SessionRegistry
from gatehouse.service.tokens import TokenPair, TokenService
from gatehouse.storage.common import AuthStore, normalize_email
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import (
    Credential,
    DeviceInfo,
    RevocationReason,
    Session,
    User,
)

logger = get_logger(__name__)

# shared by every login failure
_LOGIN_FAILED = "invalid email or password"

_PLATFORMS = (
    ("android", "Android"),
    ("iphone", "iOS"),
    ("ipad", "iOS"),
    ("windows", "Windows"),
    ("mac os", "macOS"),
    ("linux", "Linux"),
)
_BROWSERS = (
    ("edg/", "Edge"),
    ("opr/", "Opera"),
    ("chrome/", "Chrome"),
    ("firefox/", "Firefox"),
    ("safari/", "Safari"),
)


def _session_state(session: Optional[Session]) -> dict:
    if session is None:
        return {}
    return {"is_active": session.is_active, "revoked_reason": session.revoked_reason}


def _credential_state(credential: Optional[Credential]) -> dict:
    if credential is None:
        return {}
    return {
        "password_hash": credential.password_hash,
        "last_changed_at": credential.last_changed_at.isoformat(),
    }


def describe_device(user_agent: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Coarse ``(platform, browser)`` labels for session listings."""
    ua = (user_agent or "").lower()
    platform = next((label for marker, label in _PLATFORMS if marker in ua), None)
    browser = next((label for marker, label in _BROWSERS if marker in ua), None)
    return platform, browser


@dataclass(frozen=True)
class LoginResult:
    user: User
    session: Session
    tokens: TokenPair
    password_change_required: bool = False


class AuthService:
    """Registration, login, rotation and logout over the security primitives."""

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        credentials: CredentialService,
        tokens: TokenService,
        sessions: SessionRegistry,
        revocation: RevocationRegistry,
        audit: AuditLogger,
    ) -> None:
        self.settings = settings
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.sessions = sessions
        self.revocation = revocation
        self.audit = audit
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    def _burn_verification(self, password: str) -> None:
        """Spend one hash verification so unknown emails cost the same as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self.credentials.hash_password(uuid.uuid4().hex)
        self.credentials.verify_password(password, self._dummy_hash)

    async def _session(self, session_id: Optional[str]) -> Optional[Session]:
        return await self.sessions.get_session(session_id) if session_id else None

    async def record_denied(
        self,
        identity: Identity,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str] = None,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Audit a state change refused by the permission check."""
        await self.audit.record(
            action,
            resource_type,
            actor_id=identity.user_id,
            role=identity.role,
            resource_id=resource_id,
            success=False,
            ip_address=ip,
            user_agent=user_agent,
            error_message="permission_denied",
        )

    # Registration ----------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        role: str = "customer",
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        email = normalize_email(email or "")
        if len(email) > MAX_EMAIL_LENGTH or not is_valid_email(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        if role not in ROLE_HIERARCHY:
            raise ValidationError("unknown role", detail={"field": "role"})
        result = self.credentials.validate_password(password)
        if not result.is_valid:
            raise ValidationError(
                "password does not meet policy", detail={"errors": result.errors}
            )
        user = User.new(email, role)
        try:
            user = await self.store.create_user(user)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered") from exc
        await self.store.save_credential(self.credentials.new_credential(user.id, password))
        self.logger.info("user_registered", user_id=user.id, role=role)
        await self.audit.record(
            AuditAction.CREATE,
            "user",
            actor_id=user.id,
            role=role,
            resource_id=user.id,
            ip_address=ip,
            user_agent=user_agent,
        )
        return user

    # Login -----------------------------------------------------------------

    async def _login_failed(
        self,
        reason: str,
        email: str,
        *,
        user: Optional[User] = None,
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> AuthenticationError:
        self.logger.warning(
            "login_failed",
            reason=reason,
            account=mask_email(email),
            user_id=user.id if user else None,
        )
        await self.audit.record(
            AuditAction.LOGIN,
            "authentication",
            actor_id=user.id if user else None,
            role=user.role if user else None,
            success=False,
            ip_address=ip,
            user_agent=user_agent,
            error_message=reason,
        )
        return AuthenticationError(_LOGIN_FAILED)

    async def login(
        self,
        email: str,
        password: str,
        user_agent: Optional[str],
        ip: Optional[str],
    ) -> LoginResult:
        email = normalize_email(email or "")
        user = await self.store.get_user_by_email(email)
        credential = await self.store.get_credential(user.id) if user else None
        if user is None or credential is None:
            self._burn_verification(password or "")
            raise await self._login_failed("unknown_user", email, ip=ip, user_agent=user_agent)

        if self.credentials.is_locked(credential):
            raise await self._login_failed(
                "locked", email, user=user, ip=ip, user_agent=user_agent
            )
        if not self.credentials.verify_password(password or "", credential.password_hash):
            await self.store.save_credential(self.credentials.record_failed_login(credential))
            raise await self._login_failed(
                "bad_password", email, user=user, ip=ip, user_agent=user_agent
            )

        credential = self.credentials.record_successful_login(credential)
        if self.credentials.needs_rehash(credential.password_hash):
            credential = replace(
                credential, password_hash=self.credentials.hash_password(password)
            )
        await self.store.save_credential(credential)

        session_id = str(uuid.uuid4())
        pair = await self.tokens.generate_token_pair(
            {"sub": user.id, "role": user.role, "email": user.email, "sid": session_id},
            user_agent,
            ip,
        )
        platform, browser = describe_device(user_agent)
        session = await self.sessions.create_session(
            user.id,
            pair.access_hash,
            DeviceInfo(
                user_agent=user_agent or "",
                ip_address=ip or "",
                device_fingerprint=pair.fingerprint,
                platform=platform,
                browser=browser,
            ),
            pair.refresh_expires_at,
            refresh_token_hash=pair.refresh_hash,
            access_expires_at=pair.access_expires_at,
            session_id=session_id,
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        await self.audit.record(
            AuditAction.LOGIN,
            "authentication",
            actor_id=user.id,
            role=user.role,
            resource_id=session.id,
            ip_address=ip,
            user_agent=user_agent,
        )
        return LoginResult(
            user=user,
            session=session,
            tokens=pair,
            password_change_required=self.credentials.requires_password_change(credential),
        )

    # Rotation and logout ---------------------------------------------------

    async def refresh(
        self, refresh_token: str, user_agent: Optional[str], ip: Optional[str]
    ) -> TokenPair:
        pair = await self.tokens.refresh_access_token(refresh_token or "", user_agent, ip)
        if pair is None:
            raise AuthenticationError()
        return pair

    async def logout(
        self,
        identity: Identity,
        refresh_token: Optional[str] = None,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """End the session behind ``identity``; a presented refresh token dies too."""
        before = await self._session(identity.session_id)
        if identity.token_hash:
            ended = await self.sessions.revoke_session(identity.token_hash, RevocationReason.LOGOUT)
        elif identity.session_id:
            ended = await self.sessions.revoke_session_by_id(
                identity.session_id, RevocationReason.LOGOUT
            )
        else:
            ended = False
        if refresh_token:
            await self.tokens.revoke_token(
                refresh_token, RevocationReason.LOGOUT, user_id=identity.user_id
            )
        self.logger.info("logout", user_id=identity.user_id, session_id=identity.session_id)
        await self.audit.record(
            AuditAction.LOGOUT,
            "session",
            actor_id=identity.user_id,
            role=identity.role,
            resource_id=identity.session_id,
            changes=diff_changes(
                _session_state(before), _session_state(await self._session(identity.session_id))
            ),
            ip_address=ip,
            user_agent=user_agent,
        )
        return ended

    async def logout_everywhere(
        self,
        user_id: str,
        reason: Union[RevocationReason, str] = RevocationReason.REVOKED,
        *,
        actor: Optional[Identity] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Kill every session and every outstanding token of ``user_id``."""
        reason = RevocationReason(reason)
        count = await self.sessions.revoke_all_user_sessions(user_id, reason)
        await self.revocation.revoke_all_user_tokens(user_id, reason)
        await self.audit.record(
            AuditAction.SESSION_REVOKE,
            "user",
            actor_id=actor.user_id if actor else user_id,
            role=actor.role if actor else None,
            resource_id=user_id,
            changes=diff_changes({"active_sessions": count}, {"active_sessions": 0}),
            ip_address=ip,
            user_agent=user_agent,
        )
        return count

    async def revoke_user_session(
        self,
        identity: Identity,
        session_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Revoke a single session by id on behalf of ``identity``.

        Callers authorize the action first; ownership is not rechecked here.
        """
        before = await self._session(session_id)
        revoked = await self.sessions.revoke_session_by_id(session_id, RevocationReason.REVOKED)
        if revoked:
            await self.audit.record(
                AuditAction.SESSION_REVOKE,
                "session",
                actor_id=identity.user_id,
                role=identity.role,
                resource_id=session_id,
                changes=diff_changes(
                    _session_state(before), _session_state(await self._session(session_id))
                ),
                ip_address=ip,
                user_agent=user_agent,
            )
        return revoked

    async def change_password(
        self,
        identity: Identity,
        current: str,
        new: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Credential:
        """Change the caller's password and end every other session."""
        before = await self.store.get_credential(identity.user_id)
        try:
            credential = await self.credentials.change_password(identity.user_id, current, new)
        except ValidationError as exc:
            await self.audit.record(
                AuditAction.PASSWORD_CHANGE,
                "user",
                actor_id=identity.user_id,
                role=identity.role,
                resource_id=identity.user_id,
                success=False,
                ip_address=ip,
                user_agent=user_agent,
                error_message=exc.message,
            )
            raise
        for session in await self.sessions.get_active_sessions(identity.user_id):
            if session.id != identity.session_id:
                await self.sessions.revoke_session_by_id(session.id, RevocationReason.SECURITY)
        await self.audit.record(
            AuditAction.PASSWORD_CHANGE,
            "user",
            actor_id=identity.user_id,
            role=identity.role,
            resource_id=identity.user_id,
            changes=diff_changes(_credential_state(before), _credential_state(credential)),
            ip_address=ip,
            user_agent=user_agent,
        )
        return credential

    # Request authentication ------------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, request: RequestContext, ip: Optional[str] = None) -> Optional[Identity]:
        """Resolve the bearer token on ``request`` into an ``Identity``.

        The token must verify for this device, belong to an existing user and
        be the current access token of a live session.
        """
        token = self._extract_bearer(request.header("authorization"))
        if not token:
            return None
        client = ip if ip is not None else request.client_ip
        claims = await self.tokens.verify_token(token, request.user_agent, client)
        if claims is None:
            return None
        user = await self.store.get_user(claims["sub"])
        if user is None:
            return None
        token_hash = hash_token(token)
        session = await self.sessions.update_activity(token_hash)
        if session is None or session.user_id != user.id:
            return None
        return Identity(
            user_id=user.id,
            role=user.role,
            email=user.email,
            session_id=session.id,
            token_hash=token_hash,
        )


__all__ = ["AuthService", "LoginResult", "describe_device"]
