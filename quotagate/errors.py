"""Exception types shared by the store, ledger and HTTP layers."""
from __future__ import annotations


class QuotaGateError(Exception):
    """Base class for service errors."""


class ConfigurationError(QuotaGateError):
    """Raised when the service configuration cannot be parsed."""


class StoreError(QuotaGateError):
    """Raised when the persistent store cannot complete an operation."""


class StoreCorruptedError(StoreError):
    """Raised when an existing store document cannot be decoded."""


class StoreWriteError(StoreError):
    """Raised when a snapshot could not be written to disk."""


class StoreLockedError(StoreError):
    """Raised when another process already owns the data directory."""


class UserNotFoundError(QuotaGateError, KeyError):
    """Raised when an operation targets a user that does not exist."""

    def __init__(self, user_id: str) -> None:
        super().__init__(user_id)
        self.user_id = user_id

    def __str__(self) -> str:
        return f"User {self.user_id!r} not found"


class DuplicateEmailError(QuotaGateError, ValueError):
    """Raised when an email address is already registered to another user."""

    def __init__(self, email: str) -> None:
        super().__init__(email)
        self.email = email

    def __str__(self) -> str:
        return "A user with that email already exists"


__all__ = [
    "QuotaGateError",
    "ConfigurationError",
    "StoreError",
    "StoreCorruptedError",
    "StoreWriteError",
    "StoreLockedError",
    "UserNotFoundError",
    "DuplicateEmailError",
]
