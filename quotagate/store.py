"""Whole-snapshot persistence for users and system settings."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import anyio
from filelock import FileLock, Timeout

from .errors import DuplicateEmailError, StoreCorruptedError, StoreLockedError, StoreWriteError
from .models import SystemSettings, User

logger = logging.getLogger("quotagate.store")

_USERS_FILE = "users.json"
_SETTINGS_FILE = "settings.json"
_LOCK_FILE = ".lock"


class UserStore:
    """Key-value view over the users and settings snapshots.

    Readers always see the last *committed* snapshot. Writers hold the
    snapshot lock, build a new snapshot, persist it and only then swap it in,
    so a failed write leaves memory and disk at the previous state.
    """

    def __init__(self, *, default_quota: int = 200) -> None:
        self._users: Dict[str, User] = {}
        self._initial_default_quota = default_quota
        self._settings = SystemSettings(default_quota=default_quota)
        # Guards both documents; a settings save never races a users save.
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def load(self) -> None:
        """Populate the in-memory snapshot from the backing documents."""

        users_doc = self._read_users()
        settings_doc = self._read_settings()

        users: Dict[str, User] = {}
        if users_doc is not None:
            raw_users = users_doc.get("users") if isinstance(users_doc, dict) else None
            if not isinstance(raw_users, list):
                raise StoreCorruptedError("Users document must contain a 'users' list")
            for index, item in enumerate(raw_users):
                if not isinstance(item, dict):
                    raise StoreCorruptedError(f"User entry #{index} is not an object")
                try:
                    user = User.from_record(item)
                except (TypeError, ValueError) as exc:
                    raise StoreCorruptedError(f"User entry #{index} is invalid: {exc}") from exc
                users[user.id] = user

        settings = SystemSettings(default_quota=self._initial_default_quota)
        if settings_doc is not None:
            if not isinstance(settings_doc, dict):
                raise StoreCorruptedError("Settings document must be an object")
            try:
                settings = SystemSettings.from_record(
                    settings_doc, default_quota=self._initial_default_quota
                )
            except (TypeError, ValueError) as exc:
                raise StoreCorruptedError(f"Settings document is invalid: {exc}") from exc

        self._users = users
        self._settings = settings
        logger.info("Loaded %d user(s); default quota is %d", len(users), settings.default_quota)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def find_by_email(self, email: str) -> Optional[User]:
        for user in self._users.values():
            if user.email == email:
                return user
        return None

    def snapshot(self) -> List[User]:
        return list(self._users.values())

    @property
    def settings(self) -> SystemSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def put(self, user: User, *, unique_email: bool = True) -> User:
        """Insert or replace ``user`` and persist the full users snapshot."""

        async with self._write_lock:
            if unique_email:
                existing = self.find_by_email(user.email)
                if existing is not None and existing.id != user.id:
                    raise DuplicateEmailError(user.email)
            users = dict(self._users)
            users[user.id] = user
            await self._commit_users(users)
        return user

    async def delete(self, user_id: str) -> bool:
        async with self._write_lock:
            if user_id not in self._users:
                return False
            users = dict(self._users)
            del users[user_id]
            await self._commit_users(users)
        return True

    async def save_settings(self, settings: SystemSettings) -> SystemSettings:
        async with self._write_lock:
            payload = settings.to_record()
            try:
                await anyio.to_thread.run_sync(self._write_settings, payload)
            except OSError as exc:
                logger.error("Failed to persist settings snapshot: %s", exc)
                raise StoreWriteError("Failed to persist settings") from exc
            self._settings = settings
        return settings

    async def _commit_users(self, users: Dict[str, User]) -> None:
        payload = {"users": [user.to_record() for user in users.values()]}
        try:
            await anyio.to_thread.run_sync(self._write_users, payload)
        except OSError as exc:
            logger.error("Failed to persist users snapshot: %s", exc)
            raise StoreWriteError("Failed to persist users") from exc
        self._users = users

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------
    def _read_users(self) -> Optional[Any]:
        raise NotImplementedError

    def _read_settings(self) -> Optional[Any]:
        raise NotImplementedError

    def _write_users(self, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _write_settings(self, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class JsonFileStore(UserStore):
    """Store the snapshots as ``users.json`` and ``settings.json`` in ``data_dir``.

    Every write replaces a whole document with this process's snapshot, so
    only one process may write a data directory at a time. Writers call
    :meth:`acquire` (or use :meth:`exclusive`) before :meth:`load`; a second
    process trying to do the same gets :class:`StoreLockedError` instead of
    silently overwriting the first one's changes.
    """

    def __init__(self, data_dir: Path, *, default_quota: int = 200) -> None:
        super().__init__(default_quota=default_quota)
        self._data_dir = data_dir
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._dir_lock = FileLock(str(self.lock_path), timeout=0, thread_local=False)

    @property
    def users_path(self) -> Path:
        return self._data_dir / _USERS_FILE

    @property
    def settings_path(self) -> Path:
        return self._data_dir / _SETTINGS_FILE

    @property
    def lock_path(self) -> Path:
        return self._data_dir / _LOCK_FILE

    @property
    def is_locked(self) -> bool:
        return self._dir_lock.is_locked

    def acquire(self) -> None:
        """Take exclusive ownership of the data directory or fail immediately."""

        try:
            self._dir_lock.acquire()
        except Timeout as exc:
            raise StoreLockedError(
                f"{self._data_dir} is in use by another quotagate process; stop it or use the admin API"
            ) from exc
        logger.debug("Acquired data directory lock %s", self.lock_path)

    def release(self) -> None:
        if self._dir_lock.is_locked:
            self._dir_lock.release()
            logger.debug("Released data directory lock %s", self.lock_path)

    @contextmanager
    def exclusive(self) -> Iterator["JsonFileStore"]:
        """Hold the directory lock and load the current documents for the block."""

        self.acquire()
        try:
            self.load()
            yield self
        finally:
            self.release()

    def _read_users(self) -> Optional[Any]:
        return self._read_json(self.users_path)

    def _read_settings(self) -> Optional[Any]:
        return self._read_json(self.settings_path)

    def _write_users(self, payload: Dict[str, Any]) -> None:
        self._write_json(self.users_path, payload)

    def _write_settings(self, payload: Dict[str, Any]) -> None:
        self._write_json(self.settings_path, payload)

    @staticmethod
    def _read_json(path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StoreCorruptedError(f"Could not read {path}: {exc}") from exc

    @staticmethod
    def _write_json(path: Path, payload: Dict[str, Any]) -> None:
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, path)
        except BaseException:
            with suppress(OSError):
                os.unlink(temp_name)
            raise


class MemoryStore(UserStore):
    """Keep the snapshots in memory; used by tests and throwaway instances."""

    def __init__(
        self,
        *,
        users: Optional[List[User]] = None,
        settings: Optional[SystemSettings] = None,
        default_quota: int = 200,
    ) -> None:
        super().__init__(default_quota=default_quota)
        self.users_document: Optional[Dict[str, Any]] = None
        self.settings_document: Optional[Dict[str, Any]] = None
        if users is not None:
            self.users_document = {"users": [user.to_record() for user in users]}
        if settings is not None:
            self.settings_document = settings.to_record()
        self.load()

    def _read_users(self) -> Optional[Any]:
        return self.users_document

    def _read_settings(self) -> Optional[Any]:
        return self.settings_document

    def _write_users(self, payload: Dict[str, Any]) -> None:
        self.users_document = payload

    def _write_settings(self, payload: Dict[str, Any]) -> None:
        self.settings_document = payload


__all__ = ["UserStore", "JsonFileStore", "MemoryStore"]
