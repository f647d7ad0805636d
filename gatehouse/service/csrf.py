from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from typing import Optional
from urllib.parse import urlsplit

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.context import RequestContext

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
BODY_FIELD = "_csrf"
# tolerated clock drift for timestamps issued by another node
_FUTURE_SKEW_MS = 120_000


class CsrfGuard:
    """Stateless double-submit CSRF protection.

    Encoded tokens have the form ``token:timestamp_ms:signature`` where the
    signature is an HMAC-SHA256 over ``token:timestamp_ms``. Nothing is stored
    server-side; validity is rebuilt from the signature and the timestamp.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secret = settings.csrf_secret.encode()
        self.max_age_ms = settings.csrf_token_ttl_seconds * 1000
        self.cookie_name = settings.csrf_cookie_name
        self.header_name = settings.csrf_header_name

    def _now_ms(self) -> int:
        return int(time.time() * 1000)

    def _signature(self, token: str, timestamp: str) -> str:
        return hmac.new(self._secret, f"{token}:{timestamp}".encode(), hashlib.sha256).hexdigest()

    def generate_token(self) -> str:
        return secrets.token_hex(32)

    def encode_token(self, token: str, *, timestamp_ms: Optional[int] = None) -> str:
        timestamp = str(self._now_ms() if timestamp_ms is None else timestamp_ms)
        return f"{token}:{timestamp}:{self._signature(token, timestamp)}"

    def issue(self) -> str:
        return self.encode_token(self.generate_token())

    def verify_token(self, encoded: Optional[str]) -> bool:
        if not encoded or not isinstance(encoded, str):
            return False
        parts = encoded.split(":")
        if len(parts) != 3:
            return False
        token, timestamp, signature = parts
        if not token or not timestamp.isdigit():
            return False
        expected = self._signature(token, timestamp)
        if not hmac.compare_digest(expected.encode(), signature.encode()):
            return False
        age_ms = self._now_ms() - int(timestamp)
        if age_ms > self.max_age_ms or age_ms < -_FUTURE_SKEW_MS:
            return False
        return True

    def verify_double_submit(
        self, header_value: Optional[str], cookie_value: Optional[str]
    ) -> bool:
        if not header_value or not cookie_value:
            return False
        return hmac.compare_digest(header_value.encode(), cookie_value.encode())

    def verify_origin(
        self, origin: Optional[str], referer: Optional[str], host: Optional[str]
    ) -> bool:
        """Compare the Origin (or Referer) host against the allow-list.

        Requests carrying neither header pass; browsers omit them in several
        legitimate cases.
        """
        source = origin or referer
        if not source:
            return True
        source_host = urlsplit(source).netloc.lower()
        allowed = {urlsplit(o).netloc.lower() for o in self.settings.csrf_allowed_origins}
        if host:
            allowed.add(host.lower())
        return source_host in allowed

    def check(self, request: RequestContext) -> bool:
        """Admit or deny ``request``; safe methods and exempt paths always pass."""
        if request.method in SAFE_METHODS or request.path in self.settings.csrf_exempt_paths:
            return True

        submitted = request.header(self.header_name)
        if not submitted and isinstance(request.body, dict):
            body_value = request.body.get(BODY_FIELD)
            submitted = body_value if isinstance(body_value, str) else None
        cookie_value = request.cookies.get(self.cookie_name)

        if not self.verify_double_submit(submitted, cookie_value):
            logger.warning(
                "csrf_double_submit_failed",
                path=request.path,
                method=request.method,
                header_present=bool(submitted),
                cookie_present=bool(cookie_value),
            )
            return False
        if not self.verify_token(cookie_value):
            logger.warning("csrf_token_invalid", path=request.path, method=request.method)
            return False

        if not self.verify_origin(
            request.header("origin"), request.header("referer"), request.host
        ):
            logger.warning(
                "csrf_origin_mismatch",
                path=request.path,
                origin=request.header("origin"),
                enforced=self.settings.csrf_enforce_origin,
            )
            if self.settings.csrf_enforce_origin:
                return False
        return True
