"""Helpers for the key/value settings table.

Queue paused flags, resume deadlines, runtime configuration overrides and
metric counters all live here.
"""

from __future__ import annotations

from sqlalchemy import select

from app.db import SessionFactory, session_scope
from app.models import Setting
from app.utils.time import utcnow_naive


def _parse_counter_value(value: str | None) -> int | None:
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def write_setting(key: str, value: str, *, factory: SessionFactory = session_scope) -> None:
    """Persist a string value to the settings table."""

    now = utcnow_naive()
    with factory() as session:
        setting = session.execute(select(Setting).where(Setting.key == key)).scalar_one_or_none()
        if setting is None:
            session.add(Setting(key=key, value=value, created_at=now, updated_at=now))
        else:
            setting.value = value
            setting.updated_at = now


def read_setting(key: str, *, factory: SessionFactory = session_scope) -> str | None:
    """Return the stored value for ``key`` if present."""

    with factory() as session:
        setting = session.execute(select(Setting).where(Setting.key == key)).scalar_one_or_none()
        if setting is None:
            return None
        return setting.value


def read_settings_with_prefix(
    prefix: str, *, factory: SessionFactory = session_scope
) -> dict[str, str]:
    """Return every non-null setting whose key starts with ``prefix``."""

    with factory() as session:
        rows = session.execute(
            select(Setting.key, Setting.value).where(Setting.key.startswith(prefix))
        ).all()
    return {key: value for key, value in rows if value is not None}


def delete_setting(key: str, *, factory: SessionFactory = session_scope) -> bool:
    """Remove a setting row, returning whether one existed."""

    with factory() as session:
        setting = session.execute(select(Setting).where(Setting.key == key)).scalar_one_or_none()
        if setting is None:
            return False
        session.delete(setting)
        return True


def increment_counter(
    key: str, *, amount: int = 1, factory: SessionFactory = session_scope
) -> int:
    """Increment an integer counter stored as a setting and return the new value.

    ``amount=0`` reads the counter without creating a row.
    """

    if amount == 0:
        current = _parse_counter_value(read_setting(key, factory=factory))
        return current if current is not None else 0

    with factory() as session:
        setting = session.execute(select(Setting).where(Setting.key == key)).scalar_one_or_none()
        now = utcnow_naive()
        if setting is None:
            session.add(Setting(key=key, value=str(amount), created_at=now, updated_at=now))
            return amount

        new_value = (_parse_counter_value(setting.value) or 0) + amount
        setting.value = str(new_value)
        setting.updated_at = now
        return new_value


__all__ = [
    "delete_setting",
    "increment_counter",
    "read_setting",
    "read_settings_with_prefix",
    "write_setting",
]
