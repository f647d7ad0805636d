"""Unit tests for the auth service over the in-memory store.

Tests for:
- Registration validation and duplicates
- Login, lockout and uniform failure messages
- Request authentication against live sessions
- Logout, logout everywhere and password change
"""

import pytest

from conftest import STRONG_PASSWORD, make_settings
from gatehouse.service.audit import MASK
from gatehouse.service.auth import describe_device
from gatehouse.service.context import RequestContext
from gatehouse.service.errors import AuthenticationError, ConflictError, ValidationError
from gatehouse.service.runtime import Runtime
from gatehouse.storage.models import RevocationReason

UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15 Version/17.0 Safari/605.1.15"
IP = "198.51.100.20"


def _request(token, *, user_agent=UA, ip=IP):
    return RequestContext.build(
        "GET",
        "/v1/auth/me",
        headers={"Authorization": f"Bearer {token}", "User-Agent": user_agent},
        client_ip=ip,
    )


async def _registered(runtime, email="casey@example.com", role="customer"):
    return await runtime.auth.register(email, STRONG_PASSWORD, role)


class TestRegister:
    async def test_register_normalizes_email_and_stores_credential(self, runtime):
        user = await runtime.auth.register(" Casey@Example.com ", STRONG_PASSWORD)
        assert user.email == "casey@example.com"
        assert user.role == "customer"
        assert await runtime.store.get_credential(user.id) is not None
        assert runtime.store.audit_log[-1].action == "create"

    async def test_duplicate_email_conflicts(self, runtime):
        await _registered(runtime)
        with pytest.raises(ConflictError):
            await _registered(runtime, email="CASEY@example.com")

    async def test_invalid_email_rejected(self, runtime):
        with pytest.raises(ValidationError):
            await runtime.auth.register("not-an-email", STRONG_PASSWORD)

    async def test_weak_password_rejected_with_reasons(self, runtime):
        with pytest.raises(ValidationError) as excinfo:
            await runtime.auth.register("casey@example.com", "weak")
        assert excinfo.value.detail["errors"]

    async def test_unknown_role_rejected(self, runtime):
        with pytest.raises(ValidationError):
            await runtime.auth.register("casey@example.com", STRONG_PASSWORD, "overlord")


class TestLogin:
    async def test_login_issues_tokens_and_session(self, runtime):
        user = await _registered(runtime)
        result = await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        assert result.user.id == user.id
        assert result.session.user_id == user.id
        assert result.session.platform == "macOS"
        assert result.session.browser == "Safari"
        assert result.tokens.session_id == result.session.id
        assert not result.password_change_required

    async def test_unknown_user_and_bad_password_look_the_same(self, runtime):
        await _registered(runtime)
        with pytest.raises(AuthenticationError) as unknown:
            await runtime.auth.login("nobody@example.com", STRONG_PASSWORD, UA, IP)
        with pytest.raises(AuthenticationError) as wrong:
            await runtime.auth.login("casey@example.com", "Wrong-Horse-42!", UA, IP)
        assert unknown.value.message == wrong.value.message == "invalid email or password"

    async def test_lockout_blocks_correct_password(self):
        runtime = Runtime(make_settings(max_login_attempts=2))
        await _registered(runtime)
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                await runtime.auth.login("casey@example.com", "Wrong-Horse-42!", UA, IP)
        with pytest.raises(AuthenticationError):
            await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        failures = [e for e in runtime.store.audit_log if e.action == "login" and not e.success]
        assert [e.error_message for e in failures] == ["bad_password", "bad_password", "locked"]

    async def test_session_cap_enforced_across_logins(self, runtime):
        user = await _registered(runtime)
        results = [
            await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP) for _ in range(4)
        ]
        assert await runtime.sessions.count_active_sessions(user.id) == 3
        assert await runtime.auth.authenticate(_request(results[0].tokens.access_token)) is None
        assert await runtime.auth.authenticate(_request(results[3].tokens.access_token)) is not None


class TestAuthenticate:
    async def test_valid_bearer_resolves_identity(self, runtime):
        user = await _registered(runtime)
        result = await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        identity = await runtime.auth.authenticate(_request(result.tokens.access_token))
        assert identity.user_id == user.id
        assert identity.session_id == result.session.id
        assert identity.role == "customer"

    async def test_other_device_rejected(self, runtime):
        await _registered(runtime)
        result = await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        assert await runtime.auth.authenticate(_request(result.tokens.access_token, ip="192.0.2.1")) is None
        assert (
            await runtime.auth.authenticate(_request(result.tokens.access_token, user_agent="curl/8.0"))
            is None
        )

    async def test_missing_or_malformed_header(self, runtime):
        assert await runtime.auth.authenticate(RequestContext.build("GET", "/")) is None
        ctx = RequestContext.build("GET", "/", headers={"Authorization": "Basic abc"})
        assert await runtime.auth.authenticate(ctx) is None

    async def test_refresh_token_cannot_authenticate(self, runtime):
        await _registered(runtime)
        result = await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        assert await runtime.auth.authenticate(_request(result.tokens.refresh_token)) is None


class TestLogout:
    async def test_logout_kills_access_and_refresh(self, runtime):
        await _registered(runtime)
        result = await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        identity = await runtime.auth.authenticate(_request(result.tokens.access_token))

        assert await runtime.auth.logout(identity, result.tokens.refresh_token)

        assert await runtime.auth.authenticate(_request(result.tokens.access_token)) is None
        with pytest.raises(AuthenticationError):
            await runtime.auth.refresh(result.tokens.refresh_token, UA, IP)

    async def test_logout_everywhere(self, runtime):
        user = await _registered(runtime)
        results = [
            await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP) for _ in range(2)
        ]
        count = await runtime.auth.logout_everywhere(user.id, RevocationReason.SECURITY)
        assert count == 2
        changes = runtime.store.audit_log[-1].changes
        assert [(c.field, c.old, c.new) for c in changes] == [("active_sessions", 2, 0)]
        for result in results:
            assert await runtime.auth.authenticate(_request(result.tokens.access_token)) is None
            assert await runtime.revocation.is_blacklisted(result.tokens.refresh_hash)


class TestRevokeUserSession:
    async def test_revocation_records_field_diff(self, runtime):
        await _registered(runtime)
        result = await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        identity = await runtime.auth.authenticate(_request(result.tokens.access_token))

        assert await runtime.auth.revoke_user_session(identity, result.session.id)

        entry = runtime.store.audit_log[-1]
        assert entry.action == "session_revoke"
        assert entry.resource_id == result.session.id
        assert [(c.field, c.old, c.new) for c in entry.changes] == [
            ("is_active", True, False),
            ("revoked_reason", None, "revoked:revoked"),
        ]


class TestChangePassword:
    async def test_change_password_ends_other_sessions(self, runtime):
        await _registered(runtime)
        current = await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        other = await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        identity = await runtime.auth.authenticate(_request(current.tokens.access_token))

        await runtime.auth.change_password(identity, STRONG_PASSWORD, "Another-Horse-77!")

        assert await runtime.auth.authenticate(_request(current.tokens.access_token)) is not None
        assert await runtime.auth.authenticate(_request(other.tokens.access_token)) is None
        with pytest.raises(AuthenticationError):
            await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        assert await runtime.auth.login("casey@example.com", "Another-Horse-77!", UA, IP)

    async def test_change_records_masked_credential_diff(self, runtime):
        await _registered(runtime)
        result = await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        identity = await runtime.auth.authenticate(_request(result.tokens.access_token))

        await runtime.auth.change_password(identity, STRONG_PASSWORD, "Another-Horse-77!")

        entry = runtime.store.audit_log[-1]
        assert entry.action == "password_change"
        assert entry.success
        changes = {c.field: c for c in entry.changes}
        assert changes["password_hash"].old == MASK
        assert changes["password_hash"].new == MASK

    async def test_failed_change_is_audited(self, runtime):
        await _registered(runtime)
        result = await runtime.auth.login("casey@example.com", STRONG_PASSWORD, UA, IP)
        identity = await runtime.auth.authenticate(_request(result.tokens.access_token))
        with pytest.raises(ValidationError):
            await runtime.auth.change_password(identity, "Wrong-Horse-42!", "Another-Horse-77!")
        last = runtime.store.audit_log[-1]
        assert last.action == "password_change"
        assert not last.success


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        ("Mozilla/5.0 (Windows NT 10.0) Chrome/126.0 Safari/537.36", ("Windows", "Chrome")),
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Version/17.0 Safari/604.1", ("iOS", "Safari")),
        ("Mozilla/5.0 (Windows NT 10.0) Chrome/126.0 Safari/537.36 Edg/126.0", ("Windows", "Edge")),
        ("curl/8.0", (None, None)),
        (None, (None, None)),
    ],
)
def test_describe_device(user_agent, expected):
    assert describe_device(user_agent) == expected
