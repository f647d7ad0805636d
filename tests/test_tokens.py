"""Unit tests for the token service.

Tests for:
- Pair issuance and claim contents
- Signature, algorithm, issuer and expiry checks
- Device fingerprint binding
- Blacklisting and refresh rotation
"""

import asyncio
import base64
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_settings
from gatehouse.service.revocation import RevocationRegistry, hash_token
from gatehouse.service.sessions import SessionRegistry
from gatehouse.service.tokens import TokenService
from gatehouse.storage.models import DeviceInfo, RevocationReason, TokenKind, User

UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"
IP = "203.0.113.10"


def _service(settings, store):
    revocation = RevocationRegistry(store)
    sessions = SessionRegistry(store, revocation, max_sessions=settings.max_sessions)
    return TokenService(settings, store, revocation, sessions)


@pytest.fixture
def tokens(settings, memory_store):
    return _service(settings, memory_store)


def _claims(token: str) -> dict:
    payload = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))


async def _user(store, email="sam@example.com"):
    return await store.create_user(User.new(email))


async def _login(tokens, store, user, session_id="s-1"):
    pair = await tokens.generate_token_pair(
        {"sub": user.id, "role": user.role, "sid": session_id}, UA, IP
    )
    await tokens.sessions.create_session(
        user.id,
        pair.access_hash,
        DeviceInfo(user_agent=UA, ip_address=IP, device_fingerprint=pair.fingerprint),
        pair.refresh_expires_at,
        refresh_token_hash=pair.refresh_hash,
        access_expires_at=pair.access_expires_at,
        session_id=session_id,
    )
    return pair


class TestIssuance:
    async def test_pair_carries_fingerprint_and_types(self, tokens, memory_store):
        pair = await tokens.generate_token_pair({"sub": "u1", "role": "customer"}, UA, IP)
        access, refresh = _claims(pair.access_token), _claims(pair.refresh_token)
        assert access["token_type"] == "access"
        assert refresh["token_type"] == "refresh"
        assert access["fgp"] == refresh["fgp"] == tokens.fingerprint(UA, IP)
        assert access["role"] == "customer"
        assert access["jti"] != refresh["jti"]
        assert access["exp"] < refresh["exp"]

    async def test_only_hashes_are_recorded(self, tokens, memory_store):
        pair = await tokens.generate_token_pair({"sub": "u1"}, UA, IP)
        assert set(memory_store.tokens) == {pair.access_hash, pair.refresh_hash}
        kinds = {r.kind for r in await memory_store.list_user_tokens("u1")}
        assert kinds == {TokenKind.ACCESS, TokenKind.REFRESH}

    async def test_payload_cannot_override_reserved_claims(self, tokens):
        pair = await tokens.generate_token_pair(
            {"sub": "u1", "exp": 1, "iss": "evil", "fgp": "forged", "token_type": "refresh"},
            UA,
            IP,
        )
        claims = await tokens.verify_token(pair.access_token, UA, IP)
        assert claims is not None
        assert claims["iss"] == "gatehouse"
        assert claims["token_type"] == "access"

    async def test_subject_required(self, tokens):
        with pytest.raises(ValueError):
            await tokens.generate_token_pair({"role": "customer"}, UA, IP)


class TestVerification:
    async def test_valid_token_verifies(self, tokens):
        pair = await tokens.generate_token_pair({"sub": "u1"}, UA, IP)
        claims = await tokens.verify_token(pair.access_token, UA, IP)
        assert claims["sub"] == "u1"

    async def test_wrong_type_rejected(self, tokens):
        pair = await tokens.generate_token_pair({"sub": "u1"}, UA, IP)
        assert await tokens.verify_token(pair.refresh_token, UA, IP) is None
        assert await tokens.verify_token(pair.access_token, UA, IP, expected_type="refresh") is None

    async def test_fingerprint_mismatch_rejected(self, tokens):
        pair = await tokens.generate_token_pair({"sub": "u1"}, UA, IP)
        assert await tokens.verify_token(pair.access_token, "curl/8.0", IP) is None
        assert await tokens.verify_token(pair.access_token, UA, "198.51.100.1") is None

    async def test_tampered_signature_rejected(self, tokens):
        pair = await tokens.generate_token_pair({"sub": "u1"}, UA, IP)
        header, payload, signature = pair.access_token.split(".")
        forged = f"{header}.{payload}.{signature}A"
        assert await tokens.verify_token(forged, UA, IP) is None

    async def test_other_secret_rejected(self, tokens, memory_store):
        other = _service(make_settings(jwt_secret="another-secret-that-is-long-enough-1234"), memory_store)
        pair = await other.generate_token_pair({"sub": "u1"}, UA, IP)
        assert await tokens.verify_token(pair.access_token, UA, IP) is None

    async def test_none_algorithm_rejected(self, tokens):
        pair = await tokens.generate_token_pair({"sub": "u1"}, UA, IP)
        _, payload, signature = pair.access_token.split(".")
        header = tokens._encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        assert await tokens.verify_token(f"{header}.{payload}.{signature}", UA, IP) is None

    async def test_garbage_rejected(self, tokens):
        assert await tokens.verify_token("not-a-jwt", UA, IP) is None
        assert await tokens.verify_token("a.b.c", UA, IP) is None
        assert await tokens.verify_token(None, UA, IP) is None

    async def test_expired_token_rejected(self, tokens):
        now = int(datetime.now(timezone.utc).timestamp())
        token = tokens._encode_jwt(
            {
                "iss": "gatehouse",
                "aud": "gatehouse-clients",
                "sub": "u1",
                "token_type": "access",
                "fgp": tokens.fingerprint(UA, IP),
                "iat": now - 3600,
                "exp": now - 600,
            }
        )
        assert await tokens.verify_token(token, UA, IP) is None

    async def test_blacklisted_token_rejected(self, tokens):
        pair = await tokens.generate_token_pair({"sub": "u1"}, UA, IP)
        await tokens.revocation.blacklist_token(
            pair.access_hash, "u1", RevocationReason.LOGOUT, pair.access_expires_at
        )
        assert await tokens.verify_token(pair.access_token, UA, IP) is None

    async def test_revoke_token_ignores_other_subjects(self, tokens):
        pair = await tokens.generate_token_pair({"sub": "u1"}, UA, IP)
        assert not await tokens.revoke_token(pair.refresh_token, user_id="u2")
        assert await tokens.revoke_token(pair.refresh_token, user_id="u1")
        assert await tokens.revocation.is_blacklisted(pair.refresh_hash)
        assert not await tokens.revoke_token("garbage")


class TestRefreshRotation:
    async def test_rotation_issues_new_pair_and_kills_old(self, tokens, memory_store):
        user = await _user(memory_store)
        pair = await _login(tokens, memory_store, user)

        rotated = await tokens.refresh_access_token(pair.refresh_token, UA, IP)

        assert rotated is not None
        assert rotated.refresh_token != pair.refresh_token
        assert rotated.session_id == "s-1"
        entry = await memory_store.get_revocation(pair.refresh_hash)
        assert entry.reason is RevocationReason.ROTATED
        assert await tokens.verify_token(pair.access_token, UA, IP) is None
        assert await tokens.verify_token(rotated.access_token, UA, IP) is not None
        session = await memory_store.get_session("s-1")
        assert session.token_hash == rotated.access_hash
        assert session.refresh_token_hash == rotated.refresh_hash

    async def test_reused_refresh_token_rejected(self, tokens, memory_store):
        user = await _user(memory_store)
        pair = await _login(tokens, memory_store, user)
        assert await tokens.refresh_access_token(pair.refresh_token, UA, IP) is not None
        assert await tokens.refresh_access_token(pair.refresh_token, UA, IP) is None

    async def test_concurrent_rotation_has_single_winner(self, tokens, memory_store):
        user = await _user(memory_store)
        pair = await _login(tokens, memory_store, user)
        results = await asyncio.gather(
            *(tokens.refresh_access_token(pair.refresh_token, UA, IP) for _ in range(5))
        )
        assert sum(1 for r in results if r is not None) == 1

    async def test_refresh_from_other_device_rejected(self, tokens, memory_store):
        user = await _user(memory_store)
        pair = await _login(tokens, memory_store, user)
        assert await tokens.refresh_access_token(pair.refresh_token, "curl/8.0", IP) is None
        assert not await tokens.revocation.is_blacklisted(pair.refresh_hash)

    async def test_refresh_for_revoked_session_rejected(self, tokens, memory_store):
        user = await _user(memory_store)
        pair = await _login(tokens, memory_store, user)
        memory_store.sessions["s-1"] = replace(memory_store.sessions["s-1"], is_active=False)
        assert await tokens.refresh_access_token(pair.refresh_token, UA, IP) is None

    async def test_refresh_for_deleted_user_rejected(self, tokens, memory_store):
        pair = await tokens.generate_token_pair({"sub": "ghost"}, UA, IP)
        assert await tokens.refresh_access_token(pair.refresh_token, UA, IP) is None

    async def test_refresh_inside_skew_window_rejected(self, tokens, memory_store):
        user = await _user(memory_store)
        now = int(datetime.now(timezone.utc).timestamp())
        token = tokens._encode_jwt(
            {
                "iss": "gatehouse",
                "aud": "gatehouse-clients",
                "sub": user.id,
                "token_type": "refresh",
                "fgp": tokens.fingerprint(UA, IP),
                "iat": now - 3600,
                "exp": now - 30,
            }
        )
        assert await tokens.verify_token(token, UA, IP, expected_type="refresh") is not None
        assert await tokens.refresh_access_token(token, UA, IP) is None

    async def test_logout_inside_skew_window_kills_token(self, tokens):
        now = int(datetime.now(timezone.utc).timestamp())
        token = tokens._encode_jwt(
            {
                "iss": "gatehouse",
                "aud": "gatehouse-clients",
                "sub": "u1",
                "token_type": "access",
                "fgp": tokens.fingerprint(UA, IP),
                "iat": now - 900,
                "exp": now - 60,
            }
        )
        assert await tokens.verify_token(token, UA, IP) is not None

        assert await tokens.revoke_token(token)

        assert await tokens.revocation.is_blacklisted(hash_token(token))
        assert await tokens.verify_token(token, UA, IP) is None


def test_fingerprint_is_keyed(settings):
    other = make_settings(fingerprint_secret="x" * 40)
    assert (
        TokenService(settings, None, None, None).fingerprint(UA, IP)
        != TokenService(other, None, None, None).fingerprint(UA, IP)
    )
    assert len(TokenService(settings, None, None, None).fingerprint(None, None)) == 64
    assert timedelta(seconds=120) == TokenService(settings, None, None, None)._clock_skew_leeway
