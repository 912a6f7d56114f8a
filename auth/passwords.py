"""
auth/passwords.py -- bcrypt password hashing.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

Passwords longer than 72 bytes are silently truncated by bcrypt. The API layer
caps password fields at 128 characters.
"""

from __future__ import annotations

import bcrypt


class BcryptPasswordHasher:
    """PasswordHasher implementation backed by the bcrypt library."""

    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds
        # Compared against when the account does not exist so that response
        # time does not reveal whether an email is registered.
        self.dummy_hash = self.hash("devicegate_timing_dummy")

    def hash(self, plain: str) -> str:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    def compare(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext matches the hash. Malformed hashes compare False."""
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False
