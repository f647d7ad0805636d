from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class RequestContext:
    """Framework-neutral view of an incoming request.

    Header names are stored lower-cased; use :meth:`header` for lookups.
    """

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    client_ip: Optional[str] = None
    body: Optional[Mapping[str, Any]] = None

    @classmethod
    def build(
        cls,
        method: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        cookies: Optional[Mapping[str, str]] = None,
        client_ip: Optional[str] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> "RequestContext":
        return cls(
            method=method.upper(),
            path=path,
            headers={k.lower(): v for k, v in (headers or {}).items()},
            cookies=dict(cookies or {}),
            client_ip=client_ip,
            body=body,
        )

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @property
    def user_agent(self) -> str:
        return self.header("user-agent") or ""

    @property
    def host(self) -> Optional[str]:
        return self.header("host")


@dataclass(frozen=True)
class Identity:
    """Who a request is acting as, resolved from a verified access token."""

    user_id: str
    role: str
    email: Optional[str] = None
    session_id: Optional[str] = None
    token_hash: Optional[str] = None
