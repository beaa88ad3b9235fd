"""Application configuration utilities for the enrichment pipeline."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

DEFAULT_DATABASE_URL = "sqlite+pysqlite:///./data/navimuse.db"
DEFAULT_LOG_LEVEL = "INFO"

DEFAULT_BATCH_SIZE = 10
MAX_BATCH_SIZE = 50
DEFAULT_IMMEDIATE_MAX_ITEMS = 20
DEFAULT_FETCH_LIMIT = 100_000
DEFAULT_WATCHDOG_INTERVAL_S = 60
DEFAULT_RATE_LIMIT_COOLDOWN_S = 120
DEFAULT_QUOTA_RESUME_HOUR_UTC = 8

DEFAULT_AI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_AI_MODEL = "gpt-4o-mini"
DEFAULT_AI_TEMPERATURE = 0.7
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_EMBEDDING_DIMENSIONS = 1024
DEFAULT_PROVIDER_TIMEOUT_MS = 60_000

DEFAULT_CATALOG_PAGE_SIZE = 500
DEFAULT_CATALOG_TIMEOUT_MS = 10_000

_SQLITE_ALLOWED_PREFIXES = (
    "sqlite",
    "sqlite+aiosqlite",
    "sqlite+pysqlite",
)

_RUNTIME_ENV_CACHE: dict[str, str] | None = None


def _load_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    env_values: dict[str, str] = {}
    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        env_values[key.strip()] = value.strip().strip('"').strip("'")
    return env_values


def load_runtime_env(
    *,
    env_file: str | os.PathLike[str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Load runtime environment values applying .env before explicit environment."""

    env: dict[str, str] = {}
    source = dict(base_env or os.environ)

    path = Path(env_file) if env_file is not None else Path(".env")
    if path.exists() and path.is_file():
        env.update(_load_env_file(path))

    env.update({key: str(value) for key, value in source.items() if value is not None})
    return env


def get_runtime_env() -> Mapping[str, str]:
    """Return the cached runtime environment mapping."""

    global _RUNTIME_ENV_CACHE
    if _RUNTIME_ENV_CACHE is None:
        _RUNTIME_ENV_CACHE = load_runtime_env()
    return _RUNTIME_ENV_CACHE


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Override the cached runtime environment (primarily for testing)."""

    global _RUNTIME_ENV_CACHE
    if runtime_env is None:
        _RUNTIME_ENV_CACHE = None
    else:
        _RUNTIME_ENV_CACHE = dict(runtime_env)


def get_env(name: str, default: str | None = None) -> str | None:
    """Return an environment variable honoring ENV > .env > defaults."""

    env = get_runtime_env()
    return env.get(name, default)


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    level: str
    log_file: str | None = None


@dataclass(slots=True, frozen=True)
class DatabaseConfig:
    url: str


@dataclass(slots=True, frozen=True)
class ProviderConfig:
    """Connection settings for the OpenAI compatible metadata/embedding endpoints."""

    base_url: str
    api_key: str | None
    model: str
    temperature: float
    embedding_base_url: str
    embedding_api_key: str | None
    embedding_model: str
    embedding_dimensions: int
    timeout_ms: int

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> ProviderConfig:
        base_url = (_env_value(env, "AI_BASE_URL") or DEFAULT_AI_BASE_URL).strip()
        api_key = (_env_value(env, "AI_API_KEY") or "").strip() or None
        embedding_base_url = (_env_value(env, "EMBEDDING_BASE_URL") or base_url).strip()
        embedding_api_key = (_env_value(env, "EMBEDDING_API_KEY") or "").strip() or api_key
        return cls(
            base_url=base_url,
            api_key=api_key,
            model=(_env_value(env, "AI_MODEL") or DEFAULT_AI_MODEL).strip(),
            temperature=_bounded_float(
                env.get("AI_TEMPERATURE"),
                default=DEFAULT_AI_TEMPERATURE,
                minimum=0.0,
                maximum=2.0,
            ),
            embedding_base_url=embedding_base_url,
            embedding_api_key=embedding_api_key,
            embedding_model=(
                _env_value(env, "EMBEDDING_MODEL") or DEFAULT_EMBEDDING_MODEL
            ).strip(),
            embedding_dimensions=_bounded_int(
                env.get("EMBEDDING_DIMENSIONS"),
                default=DEFAULT_EMBEDDING_DIMENSIONS,
                minimum=1,
            ),
            timeout_ms=_bounded_int(
                env.get("PROVIDER_TIMEOUT_MS"),
                default=DEFAULT_PROVIDER_TIMEOUT_MS,
                minimum=100,
            ),
        )


@dataclass(slots=True, frozen=True)
class CatalogConfig:
    """Subsonic compatible catalog server used by the sync adapter."""

    base_url: str | None
    username: str | None
    password: str | None
    page_size: int
    timeout_ms: int

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.username and self.password)

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> CatalogConfig:
        return cls(
            base_url=(_env_value(env, "NAVIDROME_URL") or "").strip() or None,
            username=(_env_value(env, "NAVIDROME_USER") or "").strip() or None,
            password=_env_value(env, "NAVIDROME_PASS") or None,
            page_size=_bounded_int(
                env.get("NAVIDROME_PAGE_SIZE"),
                default=DEFAULT_CATALOG_PAGE_SIZE,
                minimum=1,
                maximum=500,
            ),
            timeout_ms=_bounded_int(
                env.get("NAVIDROME_TIMEOUT_MS"),
                default=DEFAULT_CATALOG_TIMEOUT_MS,
                minimum=100,
            ),
        )


@dataclass(slots=True, frozen=True)
class QueueConfig:
    """Worker settings for one pipeline queue."""

    concurrency: int
    rate_limit_max: int
    rate_limit_window_s: float
    max_attempts: int
    backoff_base_ms: int
    jitter_pct: int
    poll_interval_ms: int

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, Any],
        *,
        prefix: str,
        rate_limit_max: int,
    ) -> QueueConfig:
        return cls(
            concurrency=_bounded_int(
                env.get(f"{prefix}_CONCURRENCY"), default=1, minimum=1, maximum=16
            ),
            rate_limit_max=_bounded_int(
                env.get(f"{prefix}_RATE_LIMIT_MAX"), default=rate_limit_max, minimum=1
            ),
            rate_limit_window_s=_bounded_float(
                env.get(f"{prefix}_RATE_LIMIT_WINDOW_S"), default=60.0, minimum=0.001
            ),
            max_attempts=_bounded_int(
                env.get(f"{prefix}_MAX_ATTEMPTS"), default=3, minimum=1, maximum=20
            ),
            backoff_base_ms=_bounded_int(
                env.get(f"{prefix}_BACKOFF_BASE_MS"), default=5_000, minimum=0
            ),
            jitter_pct=_bounded_int(
                env.get(f"{prefix}_JITTER_PCT"), default=20, minimum=0, maximum=100
            ),
            poll_interval_ms=_bounded_int(
                env.get(f"{prefix}_POLL_INTERVAL_MS"), default=1_000, minimum=10
            ),
        )


@dataclass(slots=True, frozen=True)
class PipelineConfig:
    batch_size: int
    immediate_max_items: int
    fetch_limit: int
    full: QueueConfig
    metadata: QueueConfig
    embedding: QueueConfig
    watchdog_interval_s: float
    rate_limit_cooldown_s: int
    quota_resume_hour_utc: int

    def queue(self, mode: str) -> QueueConfig:
        value = str(getattr(mode, "value", mode))
        if value == "full":
            return self.full
        if value == "metadata":
            return self.metadata
        if value == "embedding":
            return self.embedding
        raise KeyError(f"Unknown pipeline mode: {value}")

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> PipelineConfig:
        return cls(
            batch_size=_bounded_int(
                env.get("PIPELINE_BATCH_SIZE"),
                default=DEFAULT_BATCH_SIZE,
                minimum=1,
                maximum=MAX_BATCH_SIZE,
            ),
            immediate_max_items=_bounded_int(
                env.get("PIPELINE_IMMEDIATE_MAX_ITEMS"),
                default=DEFAULT_IMMEDIATE_MAX_ITEMS,
                minimum=1,
            ),
            fetch_limit=_bounded_int(
                env.get("PIPELINE_FETCH_LIMIT"), default=DEFAULT_FETCH_LIMIT, minimum=1
            ),
            full=QueueConfig.from_env(env, prefix="PIPELINE_FULL", rate_limit_max=4),
            metadata=QueueConfig.from_env(env, prefix="PIPELINE_METADATA", rate_limit_max=4),
            embedding=QueueConfig.from_env(
                env, prefix="PIPELINE_EMBEDDING", rate_limit_max=10
            ),
            watchdog_interval_s=_bounded_float(
                env.get("PIPELINE_WATCHDOG_INTERVAL_S"),
                default=float(DEFAULT_WATCHDOG_INTERVAL_S),
                minimum=0.01,
            ),
            rate_limit_cooldown_s=_bounded_int(
                env.get("PIPELINE_RATE_LIMIT_COOLDOWN_S"),
                default=DEFAULT_RATE_LIMIT_COOLDOWN_S,
                minimum=0,
            ),
            quota_resume_hour_utc=_bounded_int(
                env.get("PIPELINE_QUOTA_RESUME_HOUR_UTC"),
                default=DEFAULT_QUOTA_RESUME_HOUR_UTC,
                minimum=0,
                maximum=23,
            ),
        )


@dataclass(slots=True, frozen=True)
class AppConfig:
    database: DatabaseConfig
    logging: LoggingConfig
    provider: ProviderConfig
    catalog: CatalogConfig
    pipeline: PipelineConfig
    watchdog_enabled: bool


def _env_value(env: Mapping[str, Any], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    return str(value)


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _bounded_float(
    value: Any,
    *,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        resolved = float(value)
    except (TypeError, ValueError):
        resolved = default
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _normalise_sqlite_database_url(candidate: str | None) -> str:
    from app.errors import ValidationAppError

    value = (candidate or "").strip() or DEFAULT_DATABASE_URL
    try:
        url = make_url(value)
    except (ArgumentError, ValueError) as exc:
        raise ValidationAppError(
            "DATABASE_URL is not a valid sqlite+ SQLAlchemy connection string.",
            meta={"field": "DATABASE_URL"},
        ) from exc

    driver = url.drivername.lower()
    if not any(driver.startswith(prefix) for prefix in _SQLITE_ALLOWED_PREFIXES):
        raise ValidationAppError(
            "DATABASE_URL must use a sqlite:/// or sqlite+pysqlite:/// connection string.",
            meta={"field": "DATABASE_URL"},
        )
    return url.render_as_string(hide_password=False)


def load_config(runtime_env: Mapping[str, Any] | None = None) -> AppConfig:
    """Load application configuration from the runtime environment."""

    env = runtime_env or get_runtime_env()
    return AppConfig(
        database=DatabaseConfig(url=_normalise_sqlite_database_url(_env_value(env, "DATABASE_URL"))),
        logging=LoggingConfig(
            level=(_env_value(env, "LOG_LEVEL") or DEFAULT_LOG_LEVEL).strip().upper(),
            log_file=(_env_value(env, "LOG_FILE") or "").strip() or None,
        ),
        provider=ProviderConfig.from_env(env),
        catalog=CatalogConfig.from_env(env),
        pipeline=PipelineConfig.from_env(env),
        watchdog_enabled=_as_bool(_env_value(env, "WATCHDOG_ENABLED"), default=True),
    )


__all__ = [
    "AppConfig",
    "CatalogConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "PipelineConfig",
    "ProviderConfig",
    "QueueConfig",
    "get_env",
    "get_runtime_env",
    "load_config",
    "load_runtime_env",
    "override_runtime_env",
]
