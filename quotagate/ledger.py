"""Serialized quota accounting on top of the user store.

Every operation that reads a user record and writes it back runs while
holding that user's lock from :class:`~quotagate.locks.KeyedLock`. Locks are
FIFO, so operations on the same user complete in the order they were
enqueued and never interleave their read and write. Operations on
*different* users are deliberately not ordered relative to one another; they
only meet at the store's snapshot lock while the file is written.

Once an operation has been enqueued it always runs to completion, including
its save, even if the caller stops waiting for it (for example because the
HTTP client disconnected).

``refund`` is unconditional: it adds one unit without checking for a prior
``consume`` and without an upper bound. A client that crashes between
``consume`` and ``refund`` loses that unit; there is no reconciliation.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .errors import UserNotFoundError
from .locks import KeyedLock
from .models import ConsumeResult, RefundResult, SystemSettings, User, current_timestamp
from .store import UserStore

logger = logging.getLogger("quotagate.ledger")

T = TypeVar("T")

_UNSET: Any = object()


def _report_detached_failure(user_id: str, task: "asyncio.Future[Any]") -> None:
    """Log the outcome of an operation whose caller stopped waiting for it."""

    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Operation for user %s failed after its caller went away", user_id, exc_info=exc)


class QuotaLedger:
    """Owns every mutation of user records, including ``message_quota``."""

    def __init__(self, store: UserStore) -> None:
        self._store = store
        self._locks = KeyedLock()

    @property
    def pending_users(self) -> int:
        """Number of users with an operation currently running or queued."""

        return len(self._locks)

    async def _serialized(self, user_id: str, operation: Callable[[], Awaitable[T]]) -> T:
        async def run() -> T:
            async with self._locks.hold(user_id):
                return await operation()

        task = asyncio.ensure_future(run())
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(partial(_report_detached_failure, user_id))
            raise

    def _require(self, user_id: str) -> User:
        user = self._store.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_user(self, user_id: str) -> User:
        return self._require(user_id)

    def find_user_by_email(self, email: str) -> Optional[User]:
        return self._store.find_by_email(email)

    def list_users(self) -> List[User]:
        """Return every user, most recently created first."""

        return sorted(self._store.snapshot(), key=lambda user: user.created_at, reverse=True)

    async def get_quota(self, user_id: str) -> int:
        return self._require(user_id).message_quota

    def get_settings(self) -> SystemSettings:
        return self._store.settings

    # ------------------------------------------------------------------
    # Quota operations
    # ------------------------------------------------------------------
    async def consume(self, user_id: str) -> ConsumeResult:
        """Charge one unit if any remain; never lets the quota drop below zero."""

        async def operation() -> ConsumeResult:
            user = self._require(user_id)
            if user.message_quota <= 0:
                logger.info("Quota exhausted for user %s", user_id)
                return ConsumeResult(charged=False, remaining=0)
            updated = user.with_changes(message_quota=user.message_quota - 1)
            await self._store.put(updated, unique_email=False)
            return ConsumeResult(charged=True, remaining=updated.message_quota)

        return await self._serialized(user_id, operation)

    async def refund(self, user_id: str) -> RefundResult:
        async def operation() -> RefundResult:
            user = self._require(user_id)
            updated = user.with_changes(message_quota=user.message_quota + 1)
            await self._store.put(updated, unique_email=False)
            logger.info("Refunded one unit to user %s (now %d)", user_id, updated.message_quota)
            return RefundResult(remaining=updated.message_quota)

        return await self._serialized(user_id, operation)

    async def set_default_quota(self, value: int) -> SystemSettings:
        if value < 0:
            raise ValueError("Default quota must not be negative")
        settings = await self._store.save_settings(SystemSettings(default_quota=value))
        logger.info("Default quota for new users set to %d", value)
        return settings

    # ------------------------------------------------------------------
    # User lifecycle
    # ------------------------------------------------------------------
    async def create_user(
        self,
        *,
        email: str,
        password_hash: str,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        """Create a user seeded with the current default quota."""

        user_id = str(uuid.uuid4())

        async def operation() -> User:
            now = current_timestamp()
            user = User(
                id=user_id,
                email=email,
                password_hash=password_hash,
                name=name or None,
                avatar=avatar or None,
                message_quota=self._store.settings.default_quota,
                created_at=now,
                updated_at=now,
            )
            return await self._store.put(user)

        created = await self._serialized(user_id, operation)
        logger.info("Created user %s with quota %d", created.id, created.message_quota)
        return created

    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str],
        avatar: Optional[str],
    ) -> User:
        async def operation() -> User:
            user = self._require(user_id)
            updated = user.with_changes(name=name or None, avatar=avatar or None)
            return await self._store.put(updated, unique_email=False)

        return await self._serialized(user_id, operation)

    async def admin_update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        name: Any = _UNSET,
        password_hash: Optional[str] = None,
        message_quota: Optional[int] = None,
    ) -> User:
        """Apply an administrator's edit; ``message_quota`` is clamped at zero."""

        changes: Dict[str, Any] = {}
        if email:
            changes["email"] = email
        if name is not _UNSET:
            changes["name"] = name or None
        if password_hash:
            changes["password_hash"] = password_hash
        if message_quota is not None:
            changes["message_quota"] = max(0, int(message_quota))
        if not changes:
            raise ValueError("No fields to update")

        async def operation() -> User:
            user = self._require(user_id)
            updated = user.with_changes(**changes)
            return await self._store.put(updated, unique_email="email" in changes)

        return await self._serialized(user_id, operation)

    async def delete_user(self, user_id: str) -> None:
        async def operation() -> None:
            self._require(user_id)
            await self._store.delete(user_id)
            logger.info("Deleted user %s", user_id)

        await self._serialized(user_id, operation)


__all__ = ["QuotaLedger"]
