"""Input sanitization applied to every externally supplied value.

Two families live here: structural cleaning of document-query-shaped input
(``sanitize_object``) and markup/format helpers for individual strings.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Any, Iterable, Optional, Tuple
from urllib.parse import urlsplit

from gatehouse.service.errors import ValidationError

MAX_DEPTH = 20
MAX_EMAIL_LENGTH = 254
MAX_FILENAME_LENGTH = 255
MAX_SEARCH_LENGTH = 200
MAX_PAGE_SIZE = 100

# Fields whose values are secrets and must reach the credential layer verbatim
SECRET_FIELDS = frozenset(
    {"password", "current_password", "new_password", "refresh_token", "token"}
)

_HTML_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
}
_HTML_ESCAPE_TABLE = str.maketrans(_HTML_ESCAPES)

_OPERATOR_LITERAL = re.compile(r"^\$[A-Za-z_]+$")
_BLOCK_TAGS = re.compile(
    r"<(script|style)\b[^>]*>.*?</\1\s*>|<(script|style)\b[^>]*/?>",
    re.IGNORECASE | re.DOTALL,
)
_EVENT_HANDLERS = re.compile(
    r"""\s*\bon[a-z]+\s*=\s*(?:"[^"]*"|'[^']*'|[^\s>]+)""", re.IGNORECASE
)
_SCRIPT_SCHEMES = re.compile(r"\b(?:javascript|vbscript)\s*:", re.IGNORECASE)
_DATA_SCHEME = re.compile(r"\bdata\s*:(?!\s*image/)", re.IGNORECASE)
_TAG = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_EMAIL = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@"
    r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$"
)
_PHONE_CHARS = re.compile(r"^[\d\s().+-]+$")
_FILENAME_FORBIDDEN = re.compile(r'\.\.|[/\\<>:"|?*]')
_SEARCH_FORBIDDEN = re.compile(r"[${}<>]")

_STRIPPED = object()


def _is_operator_key(key: Any) -> bool:
    return not isinstance(key, str) or key.startswith("$")


def _clean(value: Any, depth: int) -> Any:
    if depth > MAX_DEPTH:
        raise ValidationError("input nested too deeply", detail={"max_depth": MAX_DEPTH})
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            if _is_operator_key(key):
                continue
            result = _clean(item, depth + 1)
            if result is not _STRIPPED:
                cleaned[key] = result
        # an object made only of operators disappears along with its key
        if value and not cleaned:
            return _STRIPPED
        return cleaned
    if isinstance(value, (list, tuple)):
        return [r for r in (_clean(item, depth + 1) for item in value) if r is not _STRIPPED]
    if isinstance(value, str):
        value = remove_null_bytes(value)
        if _OPERATOR_LITERAL.match(value.strip()):
            return _STRIPPED
    return value


def sanitize_object(value: Any) -> Any:
    """Remove query operators from arbitrarily nested input.

    >>> sanitize_object({"a": 1, "b": {"$gt": 5}})
    {'a': 1}
    """
    result = _clean(value, 0)
    if result is _STRIPPED:
        return {} if isinstance(value, dict) else None
    return result


def is_clean(value: Any, _depth: int = 0) -> bool:
    """True when no operator keys appear anywhere in ``value``."""
    if _depth > MAX_DEPTH:
        return False
    if isinstance(value, dict):
        return all(
            not _is_operator_key(k) and is_clean(v, _depth + 1) for k, v in value.items()
        )
    if isinstance(value, (list, tuple)):
        return all(is_clean(item, _depth + 1) for item in value)
    return True


def sanitize_input(data: Any, *, passthrough: Iterable[str] = SECRET_FIELDS) -> Any:
    """Boundary cleaning: drop operators, then neutralize markup in strings.

    Values under ``passthrough`` keys are left byte-for-byte intact apart from
    operator stripping.
    """
    skip = frozenset(passthrough)

    def _walk(value: Any, key: Optional[str]) -> Any:
        if isinstance(value, dict):
            return {k: _walk(v, k) for k, v in value.items()}
        if isinstance(value, list):
            return [_walk(item, key) for item in value]
        if isinstance(value, str) and key not in skip:
            return strip_dangerous_markup(value)
        return value

    return _walk(sanitize_object(data), None)


def remove_null_bytes(text: str) -> str:
    return text.replace("\x00", "")


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def escape_html(text: str) -> str:
    return text.translate(_HTML_ESCAPE_TABLE)


def _strip_once(text: str) -> str:
    text = _BLOCK_TAGS.sub("", text)
    text = _EVENT_HANDLERS.sub("", text)
    text = _SCRIPT_SCHEMES.sub("", text)
    return _DATA_SCHEME.sub("", text)


def _until_stable(strip, text: str) -> str:
    # a removal can splice the surrounding text into a new match
    while True:
        stripped = strip(text)
        if stripped == text:
            return text
        text = stripped


def strip_dangerous_markup(text: str) -> str:
    """Drop script/style blocks, inline handlers and script-capable URI schemes."""
    return _until_stable(_strip_once, text)


def strip_html_tags(text: str) -> str:
    return _until_stable(lambda t: _TAG.sub("", _BLOCK_TAGS.sub("", t)), text)


def sanitize_string(text: str) -> str:
    if not isinstance(text, str):
        return ""
    return escape_html(strip_dangerous_markup(remove_null_bytes(text))).strip()


def is_valid_email(email: str) -> bool:
    if not isinstance(email, str) or len(email) > MAX_EMAIL_LENGTH:
        return False
    return bool(_EMAIL.match(email))


def is_valid_phone(phone: str) -> bool:
    """US-style numbers: 10 digits, or 11 with a leading country code 1."""
    if not isinstance(phone, str) or not _PHONE_CHARS.match(phone):
        return False
    digits = re.sub(r"\D", "", phone)
    return len(digits) == 10 or (len(digits) == 11 and digits.startswith("1"))


def is_valid_url(url: str) -> bool:
    if not isinstance(url, str) or _CONTROL_CHARS.search(url) or " " in url:
        return False
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def sanitize_url(url: str) -> Optional[str]:
    stripped = url.strip() if isinstance(url, str) else ""
    return stripped if is_valid_url(stripped) else None


def sanitize_filename(filename: str) -> str:
    cleaned = _FILENAME_FORBIDDEN.sub("", filename or "")
    # removing one ".." can join two dots into another
    while ".." in cleaned:
        cleaned = cleaned.replace("..", "")
    cleaned = _CONTROL_CHARS.sub("", cleaned).strip()
    return cleaned[:MAX_FILENAME_LENGTH] or "file"


def sanitize_search_input(text: str) -> str:
    if not isinstance(text, str):
        return ""
    return _SEARCH_FORBIDDEN.sub("", remove_null_bytes(text)).strip()[:MAX_SEARCH_LENGTH]


def escape_regex(text: str) -> str:
    return re.escape(text)


def sanitize_integer(
    value: Any, *, minimum: Optional[int] = None, maximum: Optional[int] = None
) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    if minimum is not None and number < minimum:
        return None
    if maximum is not None and number > maximum:
        return None
    return number


def sanitize_pagination(
    page: Any = None, limit: Any = None, *, default_limit: int = 20
) -> Tuple[int, int]:
    page_num = sanitize_integer(page, minimum=1) or 1
    size = sanitize_integer(limit)
    if size is None:
        size = default_limit
    return page_num, max(1, min(size, MAX_PAGE_SIZE))


def mask_email(email: str) -> str:
    local, sep, domain = (email or "").partition("@")
    if not sep or not local:
        return "***"
    return f"{local[0]}***@{domain}"


def mask_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) < 4:
        return "***"
    return f"***-***-{digits[-4:]}"


def mask_ip(ip: Optional[str]) -> Optional[str]:
    """Hide the host part: last IPv4 octet, or everything past the /64 for IPv6."""
    if not ip:
        return ip
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return "invalid"
    if addr.version == 4:
        return ".".join(ip.split(".")[:3] + ["xxx"])
    groups = addr.exploded.split(":")[:4]
    return ":".join(groups) + "::xxxx"


__all__ = [
    "SECRET_FIELDS",
    "escape_html",
    "escape_regex",
    "is_clean",
    "is_valid_email",
    "is_valid_phone",
    "is_valid_url",
    "mask_email",
    "mask_ip",
    "mask_phone",
    "normalize_whitespace",
    "remove_null_bytes",
    "sanitize_filename",
    "sanitize_input",
    "sanitize_integer",
    "sanitize_object",
    "sanitize_pagination",
    "sanitize_search_input",
    "sanitize_string",
    "sanitize_url",
    "strip_dangerous_markup",
    "strip_html_tags",
]
