"""
auth/service.py -- AuthOrchestrator: login, refresh, logout, registration,
email verification and password reset flows.

Composition, not inheritance: TokenIssuer, SessionStore and PermissionResolver
are constructed independently and injected together with the collaborator
directories. Nothing here talks to HTTP; api/routes/v1/auth.py maps the
results and AuthError subclasses onto responses.

Session state machine per (user, device):
    NoSession --login--> Active --refresh--> Active (access token replaced)
    Active --logout | superseding login--> Disabled (terminal for that row)

Enumeration: unknown email and wrong password both raise Unauthorized with the
same message; only Unauthorized.reason (logged, never returned) differs. An
unknown email still pays for one bcrypt comparison against a dummy hash.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from urllib.parse import urlencode

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
from auth.interfaces import PasswordHasher, RoleDirectory, UserDirectory, VerificationService
from auth.models import DeviceMeta, Role, Session, UserRecord, WriteResult, normalize_email
from auth.permissions import GUEST, Actor, AuthenticatedUser, Decision, PermissionResolver
from auth.store import SessionStore
from auth.tokens import SecretClass, TokenIssuer, TokenStatus
from auth.verification import EMAIL_CODE

logger = logging.getLogger("devicegate.auth")

VERIFY_EMAIL_PATH = "/verify-email"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class UserProfile:
    """A user together with its resolved roles, in stored order."""

    id: int
    email: str
    email_verified: bool
    active: bool
    roles: list[Role] = field(default_factory=list)


@dataclass
class LoginResult:
    """Either a fresh token pair or a verification redirect, never both."""

    user: UserProfile | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    verify_redirect: str | None = None

    @property
    def email_unverified(self) -> bool:
        return self.verify_redirect is not None


@dataclass
class RefreshResult:
    access_token: str
    user: UserProfile


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AuthOrchestrator:
    def __init__(
        self,
        tokens: TokenIssuer,
        sessions: SessionStore,
        permissions: PermissionResolver,
        users: UserDirectory,
        roles: RoleDirectory,
        verification: VerificationService,
        hasher: PasswordHasher,
    ) -> None:
        self._tokens = tokens
        self._sessions = sessions
        self._permissions = permissions
        self._users = users
        self._roles = roles
        self._verification = verification
        self._hasher = hasher

    # ------------------------------------------------------------------
    # Login / refresh / logout
    # ------------------------------------------------------------------

    def login(
        self, email: str | None, password: str | None, device_id: str | None, device_meta: DeviceMeta | None = None
    ) -> LoginResult:
        if not device_id:
            raise MissingDeviceId()
        if not email or not password:
            raise MissingCredentials()

        user = self._users.find_by_email(email)
        if user is None:
            # Equalize timing -- do NOT return before running bcrypt.
            self._hasher.compare(password, self._hasher.dummy_hash)
            logger.info("Login rejected (unknown_user) on device %s", device_id)
            raise Unauthorized("unknown_user")
        if not self._hasher.compare(password, user.password_hash):
            logger.info("Login rejected (bad_password) for user %s on device %s", user.id, device_id)
            raise Unauthorized("bad_password")
        if not user.active:
            logger.info("Login rejected (inactive) for user %s on device %s", user.id, device_id)
            raise Unauthorized("inactive")

        if not user.email_verified:
            self._send_code(user)
            logger.info("Login deferred for user %s: email not verified", user.id)
            return LoginResult(verify_redirect=f"{VERIFY_EMAIL_PATH}?{urlencode({'email': user.email})}")

        meta = device_meta or DeviceMeta()
        access_token = self._tokens.issue_access(user.id)
        refresh_token = self._tokens.issue_refresh(user.id)
        self._sessions.replace_active_session(
            user.id,
            device_id,
            Session(
                user_id=user.id,
                device_id=device_id,
                access_token=access_token,
                refresh_token=refresh_token,
                platform=meta.platform,
                origin=meta.origin,
                user_agent=meta.user_agent,
            ),
        )
        logger.info("User %s logged in on device %s", user.id, device_id)
        return LoginResult(
            user=self._profile(user),
            access_token=access_token,
            refresh_token=refresh_token,
        )

    def refresh(self, device_id: str | None, refresh_token: str | None) -> RefreshResult:
        """Mint a new access token for the device session holding refresh_token.

        Every mismatch -- no active session for (token, device), bad signature,
        expired token, token owner differing from session owner, session
        deactivated between lookup and rotation -- is Forbidden, and no token
        is returned.
        """
        if not device_id:
            raise MissingDeviceId()
        if refresh_token is None or not refresh_token.strip():
            raise SessionExpired()

        session = self._sessions.find_active_by_refresh(refresh_token, device_id)
        if session is None:
            logger.info("Refresh rejected: no active session on device %s", device_id)
            raise Forbidden()
        user = self._users.find_by_id(session.user_id)
        if user is None:
            raise NotFound("User not found.")

        verification = self._tokens.verify(refresh_token, SecretClass.REFRESH)
        if not verification.ok or verification.user_id != user.id:
            logger.warning(
                "Refresh rejected for session %s: token %s, token user %s, session user %s",
                session.id,
                verification.status.value,
                verification.user_id,
                user.id,
            )
            raise Forbidden()

        access_token = self._tokens.issue_access(user.id)
        rotated = self._sessions.rotate_access_token(user.id, device_id, refresh_token, access_token)
        if rotated is WriteResult.NOT_FOUND:
            logger.info("Refresh lost a race with logout/login for user %s on device %s", user.id, device_id)
            raise Forbidden()
        return RefreshResult(access_token=access_token, user=self._profile(user))

    def logout(self, user_id: int, device_id: str | None) -> WriteResult:
        """Deactivate the device session. Store failures propagate unchanged."""
        if not device_id:
            raise MissingDeviceId()
        result = self._sessions.deactivate(user_id, device_id)
        logger.info("User %s logout on device %s: %s", user_id, device_id, result.value)
        return result

    # ------------------------------------------------------------------
    # Registration and verification
    # ------------------------------------------------------------------

    def register(self, email: str | None, password: str | None, confirm_password: str | None) -> UserRecord:
        """Create an account with the default role.

        Registering again with the email of a not-yet-verified account returns
        that account unchanged.
        """
        if not email or not password:
            raise MissingCredentials()
        if password != confirm_password:
            raise ValidationError("The password and confirmation password must be the same.")

        existing = self._users.find_by_email(email)
        if existing is not None:
            return self._existing_registration(existing)

        default_role = self._roles.get_default()
        if default_role is None:
            raise NotFound("Default role is not configured.")
        user = self._users.create(
            UserRecord(
                email=normalize_email(email),
                password_hash=self._hasher.hash(password),
                role_ids=[default_role.id],
            )
        )
        if user is None:
            # A concurrent registration for the same email won the insert.
            existing = self._users.find_by_email(email)
            if existing is None:
                raise Conflict()
            return self._existing_registration(existing)
        logger.info("Registered user %s", user.id)
        return user

    def confirm_email(self, email: str, code: str) -> None:
        if not self._verification.is_code_valid(EMAIL_CODE, code, normalize_email(email)):
            raise ValidationError("Invalid verify code.")
        user = self._users.find_by_email(email)
        if user is None:
            raise NotFound("User not found.")
        self._users.update_fields(user.id, email_verified=True)
        logger.info("Email verified for user %s", user.id)

    def request_password_reset(self, email: str) -> None:
        """Send a reset code if the account exists. Silent otherwise."""
        user = self._users.find_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return
        self._send_code(user)

    def complete_password_reset(self, email: str, new_password: str, verify_code: str) -> None:
        if not email or not new_password:
            raise MissingCredentials()
        if not self._verification.is_code_valid(EMAIL_CODE, verify_code, normalize_email(email)):
            raise ValidationError("Invalid verify code.")
        user = self._users.find_by_email(email)
        if user is None:
            raise NotFound("User not found.")
        self._users.update_fields(user.id, password_hash=self._hasher.hash(new_password), email_verified=True)
        logger.info("Password reset completed for user %s", user.id)

    # ------------------------------------------------------------------
    # Identity and access
    # ------------------------------------------------------------------

    def authenticate_access_token(self, token: str) -> UserRecord:
        """Resolve a bearer access token to its active user."""
        verification = self._tokens.verify(token, SecretClass.ACCESS)
        if verification.status is TokenStatus.EXPIRED:
            raise SessionExpired()
        if not verification.ok:
            raise Unauthorized("bad_token", "Authentication required.")
        user = self._users.find_by_id(verification.user_id)
        if user is None or not user.active:
            raise Unauthorized("inactive", "Authentication required.")
        return user

    def resolve_actor(self, access_token: str | None) -> Actor:
        if not access_token:
            return GUEST
        return AuthenticatedUser(self.authenticate_access_token(access_token).id)

    def authorize(self, actor: Actor, method: str, path: str) -> Decision:
        return self._permissions.authorize(actor, method, path)

    def get_profile(self, user_id: int) -> UserProfile:
        user = self._users.find_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return self._profile(user)

    def list_devices(self, user_id: int) -> list[Session]:
        return self._sessions.list_active(user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _profile(self, user: UserRecord) -> UserProfile:
        roles: list[Role] = []
        for role_id in user.role_ids:
            role = self._roles.find_by_id(role_id)
            if role is not None:
                roles.append(role)
        return UserProfile(
            id=user.id,
            email=user.email,
            email_verified=user.email_verified,
            active=user.active,
            roles=roles,
        )

    def _send_code(self, user: UserRecord) -> None:
        try:
            self._verification.send_email_code(user.email)
        except Exception as exc:
            logger.warning("Verification email for user %s could not be sent: %s", user.id, exc)
            raise VerificationDispatchError() from exc

    def _existing_registration(self, existing: UserRecord) -> UserRecord:
        if existing.email_verified:
            raise Conflict()
        logger.info("Registration repeated for unverified user %s", existing.id)
        return existing
