"""
auth/interfaces.py -- Narrow collaborator contracts consumed by the auth core.

The orchestrator and the permission resolver depend only on these protocols.
auth/directory.py, auth/verification.py and auth/passwords.py provide the
production implementations; tests substitute stubs freely.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

from auth.models import ProtectedOperation, Role, UserRecord


class UserDirectory(Protocol):
    def find_by_email(self, email: str) -> Optional[UserRecord]: ...

    def find_by_id(self, user_id: int) -> Optional[UserRecord]: ...

    def create(self, user: UserRecord) -> Optional[UserRecord]: ...

    def update_fields(self, user_id: int, **fields: Any) -> bool: ...


class RoleDirectory(Protocol):
    def find_by_slug(self, slug: str) -> Optional[Role]: ...

    def find_by_id(self, role_id: int) -> Optional[Role]: ...

    def get_default(self) -> Optional[Role]: ...


class OperationDirectory(Protocol):
    def find_by_method_and_path(self, method: str, path: str) -> Optional[ProtectedOperation]: ...


class GrantDirectory(Protocol):
    def exists(self, role_id: int, operation_id: int) -> bool: ...


class VerificationService(Protocol):
    def send_email_code(self, email: str) -> None: ...

    def is_code_valid(self, type: str, code: str, origin: str) -> bool: ...


class PasswordHasher(Protocol):
    dummy_hash: str

    def hash(self, plain: str) -> str: ...

    def compare(self, plain: str, hashed: str) -> bool: ...
