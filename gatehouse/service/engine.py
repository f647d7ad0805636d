from __future__ import annotations

from typing import Any, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.audit import AuditAction
from gatehouse.service.auth import AuthService
from gatehouse.service.context import Identity, RequestContext
from gatehouse.service.csrf import CsrfGuard
from gatehouse.service.errors import (
    AuthenticationError,
    AuthorizationError,
    RateLimitError,
    ValidationError,
)
from gatehouse.service.permissions import can_access_resource, has_permission
from gatehouse.service.rate_limit import (
    RateLimitDecision,
    RateLimiter,
    client_ip,
    resolve_rate_key,
)
from gatehouse.service.sanitize import sanitize_input

logger = get_logger(__name__)

_UNSET = object()


class SecurityEngine:
    """Single entry point for the checks a protected request passes through.

    ``authenticate``, ``authorize``, ``check_csrf`` and ``check_rate`` return
    verdicts; the ``require_*`` variants raise the matching ``ServiceError``
    for callers that prefer exceptions, such as the HTTP pipeline.
    """

    def __init__(
        self,
        settings: Settings,
        auth: AuthService,
        csrf: CsrfGuard,
        limiter: RateLimiter,
    ) -> None:
        self.settings = settings
        self.auth = auth
        self.csrf = csrf
        self.limiter = limiter

    def client_ip(self, request: RequestContext) -> str:
        return client_ip(request, self.settings.trust_forwarded_for)

    def resolve_rate_key(self, request: RequestContext) -> str:
        return resolve_rate_key(request, self.settings.trust_forwarded_for)

    # Verdicts ---------------------------------------------------------------

    async def authenticate(self, request: RequestContext) -> Optional[Identity]:
        return await self.auth.authenticate(request, self.client_ip(request))

    def authorize(
        self,
        identity: Optional[Identity],
        permission: Any,
        resource_owner: Any = _UNSET,
    ) -> bool:
        """Role check, plus ownership when ``resource_owner`` is given.

        Admins pass the ownership test for every resource.
        """
        if identity is None:
            return False
        if resource_owner is _UNSET:
            allowed = has_permission(identity.role, permission)
        else:
            allowed = can_access_resource(
                identity.role, permission, identity.user_id, resource_owner
            )
        if not allowed:
            logger.warning(
                "permission_denied",
                user_id=identity.user_id,
                role=identity.role,
                permission=getattr(permission, "value", str(permission)),
                owner_id=None if resource_owner is _UNSET else resource_owner,
            )
        return allowed

    def check_csrf(self, request: RequestContext) -> bool:
        return self.csrf.check(request)

    async def check_rate(self, key: str) -> RateLimitDecision:
        return await self.limiter.check(key)

    def sanitize(self, body: Any) -> dict:
        if not isinstance(body, dict):
            raise ValidationError("request body must be a JSON object")
        return sanitize_input(body)

    # Raising variants -------------------------------------------------------

    async def require_identity(self, request: RequestContext) -> Identity:
        identity = await self.authenticate(request)
        if identity is None:
            raise AuthenticationError()
        return identity

    def require_permission(
        self, identity: Optional[Identity], permission: Any, resource_owner: Any = _UNSET
    ) -> Identity:
        if identity is None:
            raise AuthenticationError()
        if not self.authorize(identity, permission, resource_owner):
            raise AuthorizationError("insufficient permissions")
        return identity

    async def require_mutation(
        self,
        identity: Optional[Identity],
        permission: Any,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str] = None,
        resource_owner: Any = _UNSET,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Identity:
        """``require_permission`` for state changes; a denial is audited first."""
        if identity is None:
            raise AuthenticationError()
        if not self.authorize(identity, permission, resource_owner):
            await self.auth.record_denied(
                identity, action, resource_type, resource_id, ip=ip, user_agent=user_agent
            )
            raise AuthorizationError("insufficient permissions")
        return identity

    def require_csrf(self, request: RequestContext) -> None:
        if not self.check_csrf(request):
            raise AuthorizationError("csrf validation failed", error_code="csrf_failed")

    async def enforce_rate(self, request: RequestContext) -> Optional[RateLimitDecision]:
        """Consume one request for the caller; ``None`` on exempt paths."""
        if self.limiter.is_exempt(request.path):
            return None
        decision = await self.check_rate(self.resolve_rate_key(request))
        if not decision.allowed:
            raise RateLimitError(retry_after=decision.retry_after)
        return decision


__all__ = ["SecurityEngine"]
