from __future__ import annotations

import hashlib
import hmac
import math
import secrets
import string
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import NotFoundError, ValidationError
from gatehouse.storage.common import AuthStore
from gatehouse.storage.models import Credential

logger = get_logger(__name__)

COMMON_PASSWORDS = frozenset(
    {
        "password", "123456", "12345678", "qwerty", "abc123", "monkey",
        "1234567", "letmein", "trustno1", "dragon", "baseball", "iloveyou",
        "master", "sunshine", "ashley", "bailey", "passw0rd", "shadow",
        "123123", "654321", "superman", "qazwsx", "michael", "football",
        "password1", "password123", "admin", "welcome", "login", "admin123",
        "root", "toor",
    }
)

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?`~"
_SEQUENCES = ("abcdefghijklmnopqrstuvwxyz", "0123456789", "qwertyuiop", "asdfghjkl")


class CredentialHashError(Exception):
    """The stored hash is malformed or from an unsupported scheme.

    Distinct from a wrong password, which is a plain ``False``.
    """


@dataclass(frozen=True)
class PasswordValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    score: int = 0
    is_strong: bool = False


def _starts_with_sequence(candidate: str, run: int = 3) -> bool:
    head = candidate[:run].lower()
    if len(head) < run:
        return False
    return any(head in seq or head in seq[::-1] for seq in _SEQUENCES)


def _strength(checks_passed: int, candidate: str) -> int:
    score = checks_passed
    if candidate and len(set(candidate)) == 1:
        score -= 2
    if _starts_with_sequence(candidate):
        score -= 1
    return max(0, min(4, math.floor(score * 0.8)))


class CredentialService:
    """Password policy, hashing and history for the credential lifecycle."""

    def __init__(self, settings: Settings, store: Optional[AuthStore] = None) -> None:
        self.settings = settings
        self.store = store
        self.min_length = settings.password_min_length
        self.max_length = settings.password_max_length
        self.history_size = settings.password_history_size
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # Policy ----------------------------------------------------------------

    def validate_password(
        self, candidate: str, history: Sequence[str] = ()
    ) -> PasswordValidation:
        """Check ``candidate`` against the password policy.

        Never raises; every rule violation is reported in ``errors``. A
        history entry that cannot be parsed is skipped and logged.
        """
        if not isinstance(candidate, str):
            return PasswordValidation(is_valid=False, errors=["Password is required"])

        errors: List[str] = []
        checks = {
            "length": len(candidate) >= self.min_length,
            "lowercase": any(c.islower() for c in candidate),
            "uppercase": any(c.isupper() for c in candidate),
            "digit": any(c.isdigit() for c in candidate),
            "special": any(c in SPECIAL_CHARACTERS for c in candidate),
        }
        if not checks["length"]:
            errors.append(f"Password must be at least {self.min_length} characters long")
        if len(candidate) > self.max_length:
            errors.append(f"Password must not exceed {self.max_length} characters")
        if not checks["lowercase"]:
            errors.append("Password must contain at least one lowercase letter")
        if not checks["uppercase"]:
            errors.append("Password must contain at least one uppercase letter")
        if not checks["digit"]:
            errors.append("Password must contain at least one number")
        if not checks["special"]:
            errors.append("Password must contain at least one special character")
        if candidate.lower() in COMMON_PASSWORDS:
            errors.append("Password is too common; choose a less predictable one")
        if history and self._matches_history_safely(candidate, history):
            errors.append(
                f"Password must not match any of your last {self.history_size} passwords"
            )

        score = _strength(sum(checks.values()), candidate)
        is_strong = score >= 3
        if not is_strong and not errors:
            errors.append("Password is too weak")
        return PasswordValidation(
            is_valid=not errors and is_strong,
            errors=errors,
            score=score,
            is_strong=is_strong,
        )

    def _matches_history_safely(self, candidate: str, history: Sequence[str]) -> bool:
        try:
            return self.check_password_history(candidate, history)
        except CredentialHashError:
            logger.warning("password_history_entry_unreadable")
            return False

    # Hashing ---------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        """Return whether ``password`` matches; raise on an unusable hash."""
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.error("password_hash_unusable", error_type=type(exc).__name__)
            raise CredentialHashError("stored password hash is unusable") from exc

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return True

    def check_password_history(self, password: str, history_hashes: Sequence[str]) -> bool:
        """True when ``password`` matches any of ``history_hashes``."""
        return any(self.verify_password(password, h) for h in history_hashes)

    # Lifecycle -------------------------------------------------------------

    def new_credential(self, user_id: str, password: str) -> Credential:
        return Credential(
            user_id=user_id,
            password_hash=self.hash_password(password),
            last_changed_at=self._now(),
        )

    def history_for(self, credential: Credential) -> List[str]:
        """Hashes a new password must not repeat: the current one plus history."""
        return [*credential.password_history, credential.password_hash]

    def rotate(self, credential: Credential, new_password: str) -> Credential:
        """Return a credential holding ``new_password`` with FIFO-bounded history."""
        history = self.history_for(credential)[-self.history_size:] if self.history_size else []
        return replace(
            credential,
            password_hash=self.hash_password(new_password),
            password_history=tuple(history),
            last_changed_at=self._now(),
            failed_attempts=0,
            locked_until=None,
        )

    async def change_password(self, user_id: str, current: str, new: str) -> Credential:
        """Verify ``current``, validate ``new`` (history included) and persist.

        Raises ``ValidationError`` for a wrong current password or a policy
        violation and ``NotFoundError`` when the user has no credential.
        """
        if self.store is None:
            raise RuntimeError("change_password requires a credential store")
        credential = await self.store.get_credential(user_id)
        if credential is None:
            raise NotFoundError("credential not found")
        if not self.verify_password(current, credential.password_hash):
            logger.warning("password_change_rejected", user_id=user_id, reason="current_mismatch")
            raise ValidationError("current password is incorrect")
        result = self.validate_password(new, self.history_for(credential))
        if not result.is_valid:
            raise ValidationError(
                "password does not meet policy", detail={"errors": result.errors}
            )
        updated = await self.store.save_credential(self.rotate(credential, new))
        logger.info("password_changed", user_id=user_id)
        return updated

    def requires_password_change(self, credential: Credential) -> bool:
        age = self._now() - credential.last_changed_at
        return age > timedelta(days=self.settings.password_max_age_days)

    # Lockout ---------------------------------------------------------------

    def is_locked(self, credential: Credential) -> bool:
        return credential.locked_until is not None and credential.locked_until > self._now()

    def record_failed_login(self, credential: Credential) -> Credential:
        attempts = credential.failed_attempts + 1
        locked_until: Optional[datetime] = credential.locked_until
        if attempts >= self.settings.max_login_attempts:
            locked_until = self._now() + timedelta(minutes=self.settings.lockout_minutes)
            attempts = 0
            logger.warning(
                "credential_locked",
                user_id=credential.user_id,
                lockout_minutes=self.settings.lockout_minutes,
            )
        return replace(credential, failed_attempts=attempts, locked_until=locked_until)

    def record_successful_login(self, credential: Credential) -> Credential:
        if credential.failed_attempts == 0 and credential.locked_until is None:
            return credential
        return replace(credential, failed_attempts=0, locked_until=None)

    # Generators ------------------------------------------------------------

    def generate_secure_password(self, length: int = 16) -> str:
        length = max(length, self.min_length)
        pools = (string.ascii_lowercase, string.ascii_uppercase, string.digits, "!@#$%^&*")
        alphabet = "".join(pools)
        while True:
            chars = [secrets.choice(pool) for pool in pools]
            chars += [secrets.choice(alphabet) for _ in range(length - len(pools))]
            secrets.SystemRandom().shuffle(chars)
            candidate = "".join(chars)
            if self.validate_password(candidate).is_valid:
                return candidate


def generate_reset_token() -> str:
    return secrets.token_hex(32)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def verify_reset_token(token: str, token_hash: str) -> bool:
    return hmac.compare_digest(hash_reset_token(token), token_hash)


__all__ = [
    "COMMON_PASSWORDS",
    "CredentialHashError",
    "CredentialService",
    "PasswordValidation",
    "generate_reset_token",
    "hash_reset_token",
    "verify_reset_token",
]
