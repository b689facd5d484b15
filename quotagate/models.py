"""Domain models for users, settings and ledger results."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    # Node's toISOString() emits a trailing "Z" that older fromisoformat rejects
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class User:
    """Represents a user account held by the persistent store."""

    id: str
    email: str
    password_hash: str
    message_quota: int
    created_at: datetime
    updated_at: datetime
    name: Optional[str] = None
    avatar: Optional[str] = None

    def with_changes(self, **changes: Any) -> "User":
        """Return a copy with ``changes`` applied and ``updated_at`` refreshed."""

        changes.setdefault("updated_at", current_timestamp())
        return replace(self, **changes)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "password_hash": self.password_hash,
            "name": self.name,
            "avatar": self.avatar,
            "message_quota": self.message_quota,
            "created_at": _serialize_datetime(self.created_at),
            "updated_at": _serialize_datetime(self.updated_at),
        }

    @staticmethod
    def from_record(data: Dict[str, Any]) -> "User":
        """Create a :class:`User` from a stored JSON object."""

        password_hash = data.get("password_hash")
        if password_hash is None:
            # Users written by the first release stored the bcrypt hash as "password"
            password_hash = data.get("password")
        missing = [key for key in ("id", "email", "created_at") if not data.get(key)]
        if password_hash is None:
            missing.append("password_hash")
        if missing:
            raise ValueError(f"User record is missing fields: {', '.join(missing)}")

        created_at = _parse_datetime(str(data["created_at"]))
        updated_raw = data.get("updated_at")
        return User(
            id=str(data["id"]),
            email=str(data["email"]),
            password_hash=str(password_hash),
            name=data.get("name"),
            avatar=data.get("avatar"),
            message_quota=max(0, int(data.get("message_quota") or 0)),
            created_at=created_at,
            updated_at=_parse_datetime(str(updated_raw)) if updated_raw else created_at,
        )


@dataclass(frozen=True)
class SystemSettings:
    """Global settings applied when new users are created."""

    default_quota: int = 200

    def to_record(self) -> Dict[str, Any]:
        return {"defaultQuota": self.default_quota}

    @staticmethod
    def from_record(data: Dict[str, Any], *, default_quota: int = 200) -> "SystemSettings":
        raw = data.get("defaultQuota", default_quota)
        return SystemSettings(default_quota=max(0, int(raw)))


@dataclass(frozen=True)
class ConsumeResult:
    charged: bool
    remaining: int


@dataclass(frozen=True)
class RefundResult:
    remaining: int


@dataclass(frozen=True)
class TokenClaims:
    """Identity extracted from a verified session token."""

    user_id: str
    email: str
    issued_at: datetime
    expires_at: datetime


__all__ = [
    "User",
    "SystemSettings",
    "ConsumeResult",
    "RefundResult",
    "TokenClaims",
    "current_timestamp",
]
