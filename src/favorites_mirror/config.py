from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigError(ValueError):
    """Raised when configuration is invalid."""


@dataclass(slots=True)
class ApiSettings:
    type: str = "e621"
    base_url: str = "https://e621.net"
    page_size: int = 75
    timeout_seconds: int = 30
    before_id_inclusive: bool = False
    login_env_var: str = "E621_LOGIN"
    api_key_env_var: str = "E621_API_KEY"


@dataclass(slots=True)
class RateLimitSettings:
    min_interval: float = 1.0
    backoff_base: float = 2.0
    backoff_ceiling: float = 300.0
    jitter: float = 0.25


@dataclass(slots=True)
class RetrySettings:
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0
    max_throttles: int = 10


@dataclass(slots=True)
class StorageSettings:
    verify_checksums: bool = False


@dataclass(slots=True)
class AppConfig:
    api: ApiSettings = field(default_factory=ApiSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    log_level: str = "INFO"


@dataclass(frozen=True, slots=True)
class SyncSettings:
    """Validated per-run values handed over by the command line layer."""

    user_id: int
    root: Path
    verbose: bool = False


def _as_bool(value: Any, *, field_name: str) -> bool:
    if isinstance(value, bool):
        return value

    if isinstance(value, int) and value in {0, 1}:
        return bool(value)

    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes", "on"}:
            return True
        if normalized in {"false", "0", "no", "off"}:
            return False

    raise ConfigError(f"{field_name} must be a boolean")


def _as_int(value: Any, *, field_name: str, minimum: int | None = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be an integer")

    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be an integer") from exc

    if minimum is not None and parsed < minimum:
        raise ConfigError(f"{field_name} must be >= {minimum}")
    return parsed


def _as_float(value: Any, *, field_name: str, minimum: float | None = None) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a number")

    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be a number") from exc

    if minimum is not None and parsed < minimum:
        raise ConfigError(f"{field_name} must be >= {minimum}")
    return parsed


def _section(parsed: dict[str, Any], name: str) -> dict[str, Any]:
    raw = parsed.get(name, {}) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{name} must be a mapping")
    return raw


def _as_string(value: Any, default: str) -> str:
    return str(value if value is not None else default).strip() or default


def load_config(path: str | Path | None) -> AppConfig:
    if path is None:
        return AppConfig()

    config_path = Path(path).expanduser().resolve()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        parsed = yaml.safe_load(handle) or {}

    if not isinstance(parsed, dict):
        raise ConfigError("Config root must be a mapping")

    defaults = ApiSettings()
    raw_api = _section(parsed, "api")
    api_settings = ApiSettings(
        type=_as_string(raw_api.get("type"), defaults.type),
        base_url=_as_string(raw_api.get("base_url"), defaults.base_url).rstrip("/"),
        page_size=_as_int(
            raw_api.get("page_size", defaults.page_size),
            field_name="api.page_size",
            minimum=1,
        ),
        timeout_seconds=_as_int(
            raw_api.get("timeout_seconds", defaults.timeout_seconds),
            field_name="api.timeout_seconds",
            minimum=1,
        ),
        before_id_inclusive=_as_bool(
            raw_api.get("before_id_inclusive", defaults.before_id_inclusive),
            field_name="api.before_id_inclusive",
        ),
        login_env_var=_as_string(raw_api.get("login_env_var"), defaults.login_env_var),
        api_key_env_var=_as_string(raw_api.get("api_key_env_var"), defaults.api_key_env_var),
    )

    raw_rate_limit = _section(parsed, "rate_limit")
    rate_defaults = RateLimitSettings()
    rate_limit_settings = RateLimitSettings(
        min_interval=_as_float(
            raw_rate_limit.get("min_interval", rate_defaults.min_interval),
            field_name="rate_limit.min_interval",
            minimum=1.0,
        ),
        backoff_base=_as_float(
            raw_rate_limit.get("backoff_base", rate_defaults.backoff_base),
            field_name="rate_limit.backoff_base",
            minimum=0.0,
        ),
        backoff_ceiling=_as_float(
            raw_rate_limit.get("backoff_ceiling", rate_defaults.backoff_ceiling),
            field_name="rate_limit.backoff_ceiling",
            minimum=0.0,
        ),
        jitter=_as_float(
            raw_rate_limit.get("jitter", rate_defaults.jitter),
            field_name="rate_limit.jitter",
            minimum=0.0,
        ),
    )
    if rate_limit_settings.jitter > 1.0:
        raise ConfigError("rate_limit.jitter must be <= 1.0")

    raw_retry = _section(parsed, "retry")
    retry_defaults = RetrySettings()
    retry_settings = RetrySettings(
        max_attempts=_as_int(
            raw_retry.get("max_attempts", retry_defaults.max_attempts),
            field_name="retry.max_attempts",
            minimum=1,
        ),
        base_delay=_as_float(
            raw_retry.get("base_delay", retry_defaults.base_delay),
            field_name="retry.base_delay",
            minimum=0.0,
        ),
        max_delay=_as_float(
            raw_retry.get("max_delay", retry_defaults.max_delay),
            field_name="retry.max_delay",
            minimum=0.0,
        ),
        max_throttles=_as_int(
            raw_retry.get("max_throttles", retry_defaults.max_throttles),
            field_name="retry.max_throttles",
            minimum=0,
        ),
    )

    raw_storage = _section(parsed, "storage")
    storage_settings = StorageSettings(
        verify_checksums=_as_bool(
            raw_storage.get("verify_checksums", False),
            field_name="storage.verify_checksums",
        ),
    )

    return AppConfig(
        api=api_settings,
        rate_limit=rate_limit_settings,
        retry=retry_settings,
        storage=storage_settings,
        log_level=str(parsed.get("log_level", "INFO")).upper(),
    )
