"""Configuration management for the quota service."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .errors import ConfigurationError

logger = logging.getLogger("quotagate.config")

DEV_JWT_SECRET = "quotagate-secret-key-change-in-production"
DEV_ADMIN_PASSWORD = "admin123"

_ENV_KEYS: Dict[str, str] = {
    "host": "QUOTAGATE_HOST",
    "port": "QUOTAGATE_PORT",
    "jwt_secret": "QUOTAGATE_JWT_SECRET",
    "admin_password": "QUOTAGATE_ADMIN_PASSWORD",
    "data_dir": "QUOTAGATE_DATA_DIR",
    "token_ttl_hours": "QUOTAGATE_TOKEN_TTL_HOURS",
    "default_quota": "QUOTAGATE_DEFAULT_QUOTA",
    "cors_origins": "QUOTAGATE_CORS_ORIGINS",
    "log_level": "QUOTAGATE_LOG_LEVEL",
}


def _default_data_dir() -> Path:
    return (Path(__file__).resolve().parent.parent / "data").resolve(strict=False)


def _as_int(name: str, value: object, *, minimum: int) -> int:
    try:
        number = int(str(value).strip())
    except ValueError as exc:
        raise ConfigurationError(f"Invalid integer value {value!r} for {name}") from exc
    if number < minimum:
        raise ConfigurationError(f"{name} must be at least {minimum}, got {number}")
    return number


def _as_path(value: object, base_path: Path | None) -> Path:
    raw = Path(str(value)).expanduser()
    if not raw.is_absolute() and base_path is not None:
        raw = base_path / raw
    return raw.resolve(strict=False)


def _as_origins(value: object) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(",")
    origins = tuple(item.strip() for item in items if item.strip())
    return origins or ("*",)


@dataclass(frozen=True)
class ServiceConfig:
    """Runtime settings for the HTTP service, the store and the credential manager."""

    host: str = "0.0.0.0"
    port: int = 3016
    jwt_secret: str = DEV_JWT_SECRET
    admin_password: str = DEV_ADMIN_PASSWORD
    data_dir: Path = field(default_factory=_default_data_dir)
    token_ttl: timedelta = timedelta(days=7)
    default_quota: int = 200
    cors_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @property
    def uses_development_secrets(self) -> bool:
        return self.jwt_secret == DEV_JWT_SECRET or self.admin_password == DEV_ADMIN_PASSWORD

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "ServiceConfig":
        """Create a :class:`ServiceConfig` from raw key/value data.

        Keys that are absent keep their development defaults. Relative
        ``data_dir`` values are resolved against ``base_path``.
        """

        unknown = set(data) - set(_ENV_KEYS)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        config = ServiceConfig()
        changes: Dict[str, object] = {}
        if data.get("host"):
            changes["host"] = str(data["host"]).strip()
        if data.get("port") is not None:
            port = _as_int("port", data["port"], minimum=1)
            if port > 65535:
                raise ConfigurationError(f"port must be at most 65535, got {port}")
            changes["port"] = port
        if data.get("jwt_secret"):
            changes["jwt_secret"] = str(data["jwt_secret"])
        if data.get("admin_password"):
            changes["admin_password"] = str(data["admin_password"])
        if data.get("data_dir"):
            changes["data_dir"] = _as_path(data["data_dir"], base_path)
        if data.get("token_ttl_hours") is not None:
            hours = _as_int("token_ttl_hours", data["token_ttl_hours"], minimum=1)
            changes["token_ttl"] = timedelta(hours=hours)
        if data.get("default_quota") is not None:
            changes["default_quota"] = _as_int("default_quota", data["default_quota"], minimum=0)
        if data.get("cors_origins"):
            changes["cors_origins"] = _as_origins(data["cors_origins"])
        if data.get("log_level"):
            level = str(data["log_level"]).strip().upper()
            if not isinstance(logging.getLevelName(level), int):
                raise ConfigurationError(f"Unknown log level {level!r}")
            changes["log_level"] = level
        return replace(config, **changes)


def load_config_file(config_path: Path) -> Dict[str, object]:
    """Load configuration keys from a YAML file."""
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file {config_path} is not valid YAML") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
    return raw


def resolve_config_path(env_value: Optional[str]) -> Optional[Path]:
    """Resolve the path to the optional configuration file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    candidate = (Path(__file__).resolve().parent.parent / "config" / "quotagate.yaml").resolve(strict=False)
    return candidate if candidate.exists() else None


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    *,
    config_path: Optional[Path] = None,
) -> ServiceConfig:
    """Build the service configuration; environment variables override the file."""

    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get("QUOTAGATE_CONFIG"))

    merged: Dict[str, object] = {}
    base_path: Path | None = None
    if path is not None:
        merged.update(load_config_file(path))
        base_path = path.parent

    for key, env_name in _ENV_KEYS.items():
        value = env.get(env_name)
        if value is not None and value.strip() != "":
            merged[key] = _as_path(value, None) if key == "data_dir" else value

    config = ServiceConfig.from_dict(merged, base_path=base_path)
    if config.uses_development_secrets:
        logger.warning(
            "Development secrets are in use. Set QUOTAGATE_JWT_SECRET and"
            " QUOTAGATE_ADMIN_PASSWORD before exposing the service."
        )
    return config


__all__ = ["ServiceConfig", "load_config", "load_config_file", "resolve_config_path"]
