"""
API request and response models for devicegate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
auth/service.py, which own the internal domain representation. Route handlers
map between the two.

Wire format is camelCase (accessToken, confirmPassword, emailVerified). Models
accept either form on input (populate_by_name) and routes serialize with
model_dump(by_alias=True).
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import Role, Session
from auth.service import UserProfile

_HTTP_METHODS = r"^(GET|POST|PUT|PATCH|DELETE|HEAD|OPTIONS)$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class _CredentialsModel(BaseModel):
    """Bodies that carry a password. Passwords are taken byte for byte; only the
    identifying fields are trimmed."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("email", "verify_code", mode="before", check_fields=False)
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value


class _CamelResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(_CredentialsModel):
    """Body for POST /api/v1/auth.

    Both fields are optional at the schema level so that a missing credential
    produces the 400 missing_credentials error rather than a generic 422.
    """

    email: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=128)


class RegisterRequest(_CredentialsModel):
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=8, max_length=128)
    confirm_password: str = Field(max_length=128)


class VerifyEmailRequest(_CamelModel):
    email: str = Field(min_length=3, max_length=255)
    code: str = Field(min_length=1, max_length=16)


class PasswordResetRequest(_CamelModel):
    email: str = Field(min_length=3, max_length=255)


class PasswordResetConfirm(_CredentialsModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=8, max_length=128)
    verify_code: str = Field(min_length=1, max_length=16)


class AccessCheckRequest(_CamelModel):
    method: str = Field(pattern=_HTTP_METHODS)
    path: str = Field(min_length=1, max_length=512)


class GrantRequest(_CamelModel):
    role: str = Field(min_length=1, max_length=64)
    method: str = Field(pattern=_HTTP_METHODS)
    path: str = Field(min_length=1, max_length=512)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class RoleResponse(_CamelResponse):
    id: int
    slug: str
    name: str
    active: bool

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(id=role.id, slug=role.slug, name=role.name, active=role.active)


class UserResponse(_CamelResponse):
    id: int
    email: str
    email_verified: bool
    active: bool
    roles: list[RoleResponse] = Field(default_factory=list)

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "UserResponse":
        """Factory Method -- the mapping lives with the output model."""
        return cls(
            id=profile.id,
            email=profile.email,
            email_verified=profile.email_verified,
            active=profile.active,
            roles=[RoleResponse.from_role(r) for r in profile.roles],
        )


class AuthResponse(_CamelResponse):
    """Successful login or refresh. The refresh token is only ever in the cookie."""

    access_token: str
    user: UserResponse


class VerifyRedirectResponse(_CamelResponse):
    """Login with correct credentials on an unverified account."""

    redirect: str


class DeviceSessionResponse(_CamelResponse):
    device_id: str
    platform: Optional[str]
    origin: Optional[str]
    user_agent: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_session(cls, session: Session) -> "DeviceSessionResponse":
        return cls(
            device_id=session.device_id,
            platform=session.platform,
            origin=session.origin,
            user_agent=session.user_agent,
            created_at=session.created_at or "",
            updated_at=session.updated_at or "",
        )


class AccessCheckResponse(_CamelResponse):
    allowed: bool


class GrantResponse(_CamelResponse):
    role: str
    method: str
    path: str
    operation_id: int
    created: bool


class MessageResponse(_CamelResponse):
    message: str


class ErrorDetail(BaseModel):
    """Structured error payload. Included in all non-2xx responses."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope. All error responses use this shape."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
