"""Unit tests for auth/service.py -- AuthOrchestrator flows.

Uses the per-test `stores` fixture from conftest: real SessionStore,
AccessDirectory and VerificationCodeStore on private in-memory databases,
wired exactly as api/main.py wires them. Collaborator failures are injected
with MagicMock.

Covers:
- login: validation order, uniform Unauthorized, unverified redirect with exactly
  one dispatch and no session, superseding logins on one device
- refresh: blank cookie, unknown session, cross-user token, expired token,
  missing owner, successful rotation
- logout, register, confirm_email, password reset
- access-token authentication and actor resolution
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from auth.errors import (
    Conflict,
    Forbidden,
    MissingCredentials,
    MissingDeviceId,
    NotFound,
    SessionExpired,
    Unauthorized,
    ValidationError,
    VerificationDispatchError,
)
from auth.models import DEFAULT_ROLE, DeviceMeta, Session, WriteResult
from auth.permissions import GUEST, AuthenticatedUser
from auth.service import AuthOrchestrator
from auth.tokens import SecretClass, TokenConfig, TokenIssuer, TokenStatus
from conftest import DEVICE, HASHER, PASSWORD, TEST_TOKEN_CONFIG, make_user

# ---------------------------------------------------------------------------
# login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_issues_tokens_and_stores_session(self, stores):
        user = make_user(stores.directory, "ok@example.com")
        meta = DeviceMeta(platform="iOS", origin="https://app.example.com", user_agent="pytest")

        result = stores.orchestrator.login("ok@example.com", PASSWORD, DEVICE, meta)

        assert not result.email_unverified
        assert stores.tokens.verify(result.access_token, SecretClass.ACCESS).user_id == user.id
        assert stores.tokens.verify(result.refresh_token, SecretClass.REFRESH).user_id == user.id
        assert [r.slug for r in result.user.roles] == [DEFAULT_ROLE]

        session = stores.sessions.get_active(user.id, DEVICE)
        assert session.access_token == result.access_token
        assert session.refresh_token == result.refresh_token
        assert session.platform == "iOS"
        assert session.user_agent == "pytest"

    def test_email_lookup_is_normalized(self, stores):
        make_user(stores.directory, "case@example.com")
        result = stores.orchestrator.login("  CASE@Example.com ", PASSWORD, DEVICE)
        assert result.access_token

    def test_missing_device_checked_first(self, stores):
        with pytest.raises(MissingDeviceId):
            stores.orchestrator.login(None, None, None)
        with pytest.raises(MissingDeviceId):
            stores.orchestrator.login("ok@example.com", PASSWORD, "")

    @pytest.mark.parametrize("email, password", [(None, PASSWORD), ("ok@example.com", None), ("", "")])
    def test_missing_credentials(self, stores, email, password):
        with pytest.raises(MissingCredentials):
            stores.orchestrator.login(email, password, DEVICE)

    def test_unknown_user_and_bad_password_look_identical(self, stores):
        make_user(stores.directory, "ok@example.com")

        with pytest.raises(Unauthorized) as unknown:
            stores.orchestrator.login("nobody@example.com", PASSWORD, DEVICE)
        with pytest.raises(Unauthorized) as wrong:
            stores.orchestrator.login("ok@example.com", "wrong-password", DEVICE)

        assert unknown.value.reason == "unknown_user"
        assert wrong.value.reason == "bad_password"
        assert unknown.value.message == wrong.value.message
        assert unknown.value.code == wrong.value.code

    def test_inactive_user_rejected(self, stores):
        user = make_user(stores.directory, "off@example.com", active=False)
        with pytest.raises(Unauthorized) as exc:
            stores.orchestrator.login("off@example.com", PASSWORD, DEVICE)
        assert exc.value.reason == "inactive"
        assert stores.sessions.get_active(user.id, DEVICE) is None

    def test_unverified_email_redirects_without_session(self, stores):
        user = make_user(stores.directory, "new@example.com", verified=False)

        result = stores.orchestrator.login("new@example.com", PASSWORD, DEVICE)

        assert result.email_unverified
        assert result.verify_redirect == "/verify-email?email=new%40example.com"
        assert result.access_token is None
        assert result.refresh_token is None
        assert stores.sessions.list_for_device(user.id, DEVICE) == []
        assert [to for to, _code in stores.outbox.sent] == ["new@example.com"]

    def test_unverified_dispatch_failure_issues_nothing(self, stores):
        user = make_user(stores.directory, "new@example.com", verified=False)
        stores.outbox.fail = True

        with pytest.raises(VerificationDispatchError):
            stores.orchestrator.login("new@example.com", PASSWORD, DEVICE)
        assert stores.sessions.list_for_device(user.id, DEVICE) == []

    def test_second_login_on_device_supersedes_first(self, stores):
        user = make_user(stores.directory, "twice@example.com")

        first = stores.orchestrator.login("twice@example.com", PASSWORD, DEVICE)
        second = stores.orchestrator.login("twice@example.com", PASSWORD, DEVICE)

        active = [s for s in stores.sessions.list_for_device(user.id, DEVICE) if s.active]
        assert len(active) == 1
        assert active[0].refresh_token == second.refresh_token
        with pytest.raises(Forbidden):
            stores.orchestrator.refresh(DEVICE, first.refresh_token)

    def test_login_on_second_device_keeps_first(self, stores):
        user = make_user(stores.directory, "two-dev@example.com")
        stores.orchestrator.login("two-dev@example.com", PASSWORD, "phone")
        stores.orchestrator.login("two-dev@example.com", PASSWORD, "laptop")
        assert {s.device_id for s in stores.orchestrator.list_devices(user.id)} == {"phone", "laptop"}

    def test_unknown_user_still_runs_password_comparison(self):
        hasher = MagicMock()
        hasher.dummy_hash = "dummy"
        users = MagicMock()
        users.find_by_email.return_value = None
        orchestrator = AuthOrchestrator(
            tokens=TokenIssuer(TEST_TOKEN_CONFIG),
            sessions=MagicMock(),
            permissions=MagicMock(),
            users=users,
            roles=MagicMock(),
            verification=MagicMock(),
            hasher=hasher,
        )

        with pytest.raises(Unauthorized):
            orchestrator.login("ghost@example.com", "pw", DEVICE)
        hasher.compare.assert_called_once_with("pw", "dummy")


# ---------------------------------------------------------------------------
# refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_success_rotates_access_token(self, stores):
        user = make_user(stores.directory, "r@example.com")
        login = stores.orchestrator.login("r@example.com", PASSWORD, DEVICE)

        result = stores.orchestrator.refresh(DEVICE, login.refresh_token)

        assert result.access_token != login.access_token
        assert stores.tokens.verify(result.access_token, SecretClass.ACCESS).user_id == user.id
        assert result.user.id == user.id
        session = stores.sessions.get_active(user.id, DEVICE)
        assert session.access_token == result.access_token
        assert session.refresh_token == login.refresh_token

    def test_missing_device(self, stores):
        with pytest.raises(MissingDeviceId):
            stores.orchestrator.refresh(None, "anything")

    @pytest.mark.parametrize("token", [None, "", "   "])
    def test_blank_token_is_session_expired(self, stores, token):
        with pytest.raises(SessionExpired):
            stores.orchestrator.refresh(DEVICE, token)

    def test_token_from_another_device_forbidden(self, stores):
        make_user(stores.directory, "r@example.com")
        login = stores.orchestrator.login("r@example.com", PASSWORD, DEVICE)
        with pytest.raises(Forbidden):
            stores.orchestrator.refresh("some-other-device", login.refresh_token)

    def test_token_of_another_user_forbidden_without_rotation(self, stores):
        """Session owned by A holds a refresh token minted for B."""
        owner = make_user(stores.directory, "a@example.com")
        other = make_user(stores.directory, "b@example.com")
        foreign_refresh = stores.tokens.issue_refresh(other.id)
        stores.sessions.replace_active_session(
            owner.id,
            DEVICE,
            Session(user_id=owner.id, device_id=DEVICE, access_token="access-a", refresh_token=foreign_refresh),
        )

        with pytest.raises(Forbidden):
            stores.orchestrator.refresh(DEVICE, foreign_refresh)
        assert stores.sessions.get_active(owner.id, DEVICE).access_token == "access-a"

    def test_expired_refresh_token_forbidden(self, stores):
        user = make_user(stores.directory, "old@example.com")
        stale = TokenIssuer(
            TokenConfig(
                access_secret=TEST_TOKEN_CONFIG.access_secret,
                refresh_secret=TEST_TOKEN_CONFIG.refresh_secret,
                refresh_ttl=timedelta(seconds=-10),
            )
        ).issue_refresh(user.id)
        stores.sessions.replace_active_session(
            user.id, DEVICE, Session(user_id=user.id, device_id=DEVICE, access_token="x", refresh_token=stale)
        )
        with pytest.raises(Forbidden):
            stores.orchestrator.refresh(DEVICE, stale)

    def test_session_of_missing_user_not_found(self, stores):
        token = stores.tokens.issue_refresh(4242)
        stores.sessions.replace_active_session(
            4242, DEVICE, Session(user_id=4242, device_id=DEVICE, access_token="x", refresh_token=token)
        )
        with pytest.raises(NotFound):
            stores.orchestrator.refresh(DEVICE, token)

    def test_refresh_after_logout_forbidden(self, stores):
        user = make_user(stores.directory, "bye@example.com")
        login = stores.orchestrator.login("bye@example.com", PASSWORD, DEVICE)
        stores.orchestrator.logout(user.id, DEVICE)
        with pytest.raises(Forbidden):
            stores.orchestrator.refresh(DEVICE, login.refresh_token)

    def test_lost_race_with_logout_forbidden(self, stores):
        """Session found, then deactivated before the rotation lands."""
        make_user(stores.directory, "race@example.com")
        login = stores.orchestrator.login("race@example.com", PASSWORD, DEVICE)
        sessions = MagicMock(wraps=stores.sessions)
        sessions.rotate_access_token.return_value = WriteResult.NOT_FOUND
        orchestrator = AuthOrchestrator(
            tokens=stores.tokens,
            sessions=sessions,
            permissions=MagicMock(),
            users=stores.directory,
            roles=MagicMock(),
            verification=stores.verification,
            hasher=HASHER,
        )
        with pytest.raises(Forbidden):
            orchestrator.refresh(DEVICE, login.refresh_token)


# ---------------------------------------------------------------------------
# logout
# ---------------------------------------------------------------------------


class TestLogout:
    def test_logout_deactivates_then_reports_not_found(self, stores):
        user = make_user(stores.directory, "out@example.com")
        stores.orchestrator.login("out@example.com", PASSWORD, DEVICE)

        assert stores.orchestrator.logout(user.id, DEVICE) is WriteResult.UPDATED
        assert stores.orchestrator.logout(user.id, DEVICE) is WriteResult.NOT_FOUND
        assert stores.sessions.get_active(user.id, DEVICE) is None

    def test_logout_requires_device(self, stores):
        with pytest.raises(MissingDeviceId):
            stores.orchestrator.logout(1, None)

    def test_store_failure_propagates(self):
        sessions = MagicMock()
        sessions.deactivate.side_effect = RuntimeError("db down")
        orchestrator = AuthOrchestrator(
            tokens=TokenIssuer(TEST_TOKEN_CONFIG),
            sessions=sessions,
            permissions=MagicMock(),
            users=MagicMock(),
            roles=MagicMock(),
            verification=MagicMock(),
            hasher=MagicMock(),
        )
        with pytest.raises(RuntimeError, match="db down"):
            orchestrator.logout(1, DEVICE)


# ---------------------------------------------------------------------------
# register / verification / password reset
# ---------------------------------------------------------------------------


class TestRegister:
    def test_creates_unverified_user_with_default_role(self, stores):
        user = stores.orchestrator.register("Fresh@Example.com", PASSWORD, PASSWORD)

        assert user.id is not None
        assert user.email == "fresh@example.com"
        assert user.email_verified is False
        assert user.password_hash != PASSWORD
        assert HASHER.compare(PASSWORD, user.password_hash)
        profile = stores.orchestrator.get_profile(user.id)
        assert [r.slug for r in profile.roles] == [DEFAULT_ROLE]

    def test_password_mismatch(self, stores):
        with pytest.raises(ValidationError):
            stores.orchestrator.register("x@example.com", PASSWORD, PASSWORD + "!")
        assert stores.directory.find_by_email("x@example.com") is None

    def test_repeat_for_unverified_returns_same_account(self, stores):
        first = stores.orchestrator.register("again@example.com", PASSWORD, PASSWORD)
        second = stores.orchestrator.register("again@example.com", "another-password", "another-password")
        assert second.id == first.id
        assert second.password_hash == first.password_hash

    def test_repeat_for_verified_conflicts(self, stores):
        make_user(stores.directory, "taken@example.com")
        with pytest.raises(Conflict):
            stores.orchestrator.register("taken@example.com", PASSWORD, PASSWORD)

    def test_concurrent_registration_returns_the_winner(self, stores, monkeypatch):
        winner = make_user(stores.directory, "race@example.com", verified=False)
        lookups = MagicMock(side_effect=[None, winner])
        monkeypatch.setattr(stores.directory, "find_by_email", lookups)

        user = stores.orchestrator.register("race@example.com", PASSWORD, PASSWORD)

        assert user.id == winner.id
        assert lookups.call_count == 2

    def test_concurrent_registration_of_verified_account_conflicts(self, stores, monkeypatch):
        winner = make_user(stores.directory, "race-verified@example.com")
        monkeypatch.setattr(stores.directory, "find_by_email", MagicMock(side_effect=[None, winner]))
        with pytest.raises(Conflict):
            stores.orchestrator.register("race-verified@example.com", PASSWORD, PASSWORD)

    def test_without_default_role_not_found(self, stores):
        default = stores.directory.find_by_slug(DEFAULT_ROLE)
        stores.directory.set_role_active(default.id, False)
        with pytest.raises(NotFound):
            stores.orchestrator.register("x@example.com", PASSWORD, PASSWORD)


class TestEmailVerification:
    def test_confirm_email_with_dispatched_code(self, stores):
        make_user(stores.directory, "v@example.com", verified=False)
        stores.orchestrator.login("v@example.com", PASSWORD, DEVICE)

        stores.orchestrator.confirm_email("v@example.com", stores.outbox.last_code_for("v@example.com"))

        assert stores.directory.find_by_email("v@example.com").email_verified is True
        assert not stores.orchestrator.login("v@example.com", PASSWORD, DEVICE).email_unverified

    def test_confirm_email_bad_code(self, stores):
        make_user(stores.directory, "v@example.com", verified=False)
        with pytest.raises(ValidationError):
            stores.orchestrator.confirm_email("v@example.com", "123456")
        assert stores.directory.find_by_email("v@example.com").email_verified is False


class TestPasswordReset:
    def test_unknown_email_is_silent(self, stores):
        stores.orchestrator.request_password_reset("nobody@example.com")
        assert stores.outbox.sent == []

    def test_reset_sets_password_and_verifies(self, stores):
        make_user(stores.directory, "p@example.com", verified=False)
        stores.orchestrator.request_password_reset("p@example.com")
        code = stores.outbox.last_code_for("p@example.com")

        stores.orchestrator.complete_password_reset("p@example.com", "brand-new-password", code)

        user = stores.directory.find_by_email("p@example.com")
        assert user.email_verified is True
        assert HASHER.compare("brand-new-password", user.password_hash)
        assert stores.orchestrator.login("p@example.com", "brand-new-password", DEVICE).access_token
        with pytest.raises(Unauthorized):
            stores.orchestrator.login("p@example.com", PASSWORD, DEVICE)

    def test_invalid_code_leaves_password(self, stores):
        make_user(stores.directory, "p@example.com")
        with pytest.raises(ValidationError):
            stores.orchestrator.complete_password_reset("p@example.com", "brand-new-password", "000000")
        assert HASHER.compare(PASSWORD, stores.directory.find_by_email("p@example.com").password_hash)

    def test_code_cannot_be_reused(self, stores):
        make_user(stores.directory, "p@example.com")
        stores.orchestrator.request_password_reset("p@example.com")
        code = stores.outbox.last_code_for("p@example.com")
        stores.orchestrator.complete_password_reset("p@example.com", "first-new-password", code)
        with pytest.raises(ValidationError):
            stores.orchestrator.complete_password_reset("p@example.com", "second-new-password", code)


# ---------------------------------------------------------------------------
# access tokens and actors
# ---------------------------------------------------------------------------


class TestAccessTokens:
    def test_authenticate_access_token(self, stores):
        user = make_user(stores.directory, "t@example.com")
        assert stores.orchestrator.authenticate_access_token(stores.tokens.issue_access(user.id)).id == user.id

    def test_expired_access_token_is_session_expired(self, stores):
        user = make_user(stores.directory, "t@example.com")
        expired = TokenIssuer(
            TokenConfig(
                access_secret=TEST_TOKEN_CONFIG.access_secret,
                refresh_secret=TEST_TOKEN_CONFIG.refresh_secret,
                access_ttl=timedelta(seconds=-10),
            )
        ).issue_access(user.id)
        assert stores.tokens.verify(expired, SecretClass.ACCESS).status is TokenStatus.EXPIRED
        with pytest.raises(SessionExpired):
            stores.orchestrator.authenticate_access_token(expired)

    def test_refresh_token_is_not_an_access_token(self, stores):
        user = make_user(stores.directory, "t@example.com")
        with pytest.raises(Unauthorized):
            stores.orchestrator.authenticate_access_token(stores.tokens.issue_refresh(user.id))

    def test_inactive_user_rejected(self, stores):
        user = make_user(stores.directory, "t@example.com", active=False)
        with pytest.raises(Unauthorized):
            stores.orchestrator.authenticate_access_token(stores.tokens.issue_access(user.id))

    def test_resolve_actor(self, stores):
        user = make_user(stores.directory, "t@example.com")
        assert stores.orchestrator.resolve_actor(None) is GUEST
        assert stores.orchestrator.resolve_actor(stores.tokens.issue_access(user.id)) == AuthenticatedUser(user.id)
