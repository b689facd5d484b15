"""Credential issuance and message-quota metering service."""

from __future__ import annotations

from typing import Any

from .config import ServiceConfig, load_config
from .ledger import QuotaLedger
from .store import JsonFileStore, MemoryStore


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the HTTP application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "JsonFileStore",
    "MemoryStore",
    "QuotaLedger",
    "ServiceConfig",
    "create_app",
    "load_config",
]
