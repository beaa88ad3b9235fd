"""Layered pipeline configuration: runtime override > environment > default."""

from __future__ import annotations

from collections.abc import Mapping
import re
from typing import Any

from app.config import PipelineConfig, get_runtime_env
from app.db import SessionFactory, session_scope
from app.errors import ValidationAppError
from app.logging import get_logger
from app.logging_events import log_event
from app.utils.settings_store import delete_setting, read_settings_with_prefix, write_setting

logger = get_logger(__name__)

OVERRIDE_PREFIX = "pipeline."
_ENV_PREFIX = "PIPELINE_"
_KEY_PATTERN = re.compile(r"^[a-z0-9_]+$")


def _normalise_key(key: str) -> str:
    candidate = (key or "").strip().lower()
    if candidate.startswith(OVERRIDE_PREFIX):
        candidate = candidate[len(OVERRIDE_PREFIX) :]
    if not _KEY_PATTERN.match(candidate):
        raise ValidationAppError(
            "Pipeline setting keys may only contain letters, digits and underscores.",
            meta={"field": "key", "value": key},
        )
    return candidate


def runtime_overrides(*, factory: SessionFactory = session_scope) -> dict[str, str]:
    """Return the stored overrides keyed by their environment variable name."""

    stored = read_settings_with_prefix(OVERRIDE_PREFIX, factory=factory)
    return {
        f"{_ENV_PREFIX}{key[len(OVERRIDE_PREFIX):].upper()}": value
        for key, value in stored.items()
    }


def resolve_pipeline_config(
    env: Mapping[str, Any] | None = None,
    *,
    factory: SessionFactory = session_scope,
) -> PipelineConfig:
    """Build the effective :class:`PipelineConfig` for one controller operation."""

    merged: dict[str, Any] = dict(env if env is not None else get_runtime_env())
    merged.update(runtime_overrides(factory=factory))
    return PipelineConfig.from_env(merged)


def set_runtime_override(
    key: str, value: Any, *, factory: SessionFactory = session_scope
) -> str:
    name = _normalise_key(key)
    write_setting(f"{OVERRIDE_PREFIX}{name}", str(value), factory=factory)
    log_event(
        logger,
        "pipeline.setting_override",
        component="services.runtime_settings",
        key=name,
        status="set",
    )
    return name


def clear_runtime_override(key: str, *, factory: SessionFactory = session_scope) -> bool:
    name = _normalise_key(key)
    removed = delete_setting(f"{OVERRIDE_PREFIX}{name}", factory=factory)
    if removed:
        log_event(
            logger,
            "pipeline.setting_override",
            component="services.runtime_settings",
            key=name,
            status="cleared",
        )
    return removed


__all__ = [
    "OVERRIDE_PREFIX",
    "clear_runtime_override",
    "resolve_pipeline_config",
    "runtime_overrides",
    "set_runtime_override",
]
