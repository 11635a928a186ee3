from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from insight_sync.config import Settings, get_settings
from insight_sync.models import ApplicationSetting

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_KEY = "sync_max_attempts"
RETRY_INTERVAL_KEY = "sync_retry_interval_minutes"
RETRY_BACKOFF_KEY = "sync_retry_backoff"
ACCESS_ROLE_KEY = "sync_access_role"
DELTA_KEY_FIELD_KEY = "delta_key_field"
FOLLOW_ON_TARGETS_KEY = "follow_on_sync_targets"

DEFAULT_MAX_ATTEMPTS = 1
DEFAULT_RETRY_INTERVAL_MINUTES = 5

KNOWN_KEYS = (
    MAX_ATTEMPTS_KEY,
    RETRY_INTERVAL_KEY,
    RETRY_BACKOFF_KEY,
    ACCESS_ROLE_KEY,
    DELTA_KEY_FIELD_KEY,
    FOLLOW_ON_TARGETS_KEY,
)


def _get_setting_record(db: Session, key: str) -> ApplicationSetting | None:
    stmt = select(ApplicationSetting).where(ApplicationSetting.key == key).limit(1)
    return db.execute(stmt).scalars().first()


def get_setting_value(db: Session, key: str) -> str | None:
    record = _get_setting_record(db, key)
    return record.value if record else None


def set_setting_value(db: Session, key: str, value: str | None) -> str | None:
    record = _get_setting_record(db, key)

    if value is None:
        if record:
            db.delete(record)
        db.commit()
        return None

    normalized = value.strip()
    if record:
        record.value = normalized
        db.add(record)
    else:
        db.add(ApplicationSetting(key=key, value=normalized))
    db.commit()
    return normalized


def _settings_fallback(settings: Settings, key: str) -> str | None:
    value = getattr(settings, key, None)
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return ",".join(str(item) for item in value) or None
    return str(value)


class ConfigurationStore:
    """Key/value lookup over ``application_settings`` with environment fallbacks."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        settings_provider: Callable[[], Settings] = get_settings,
    ) -> None:
        self._session_factory = session_factory
        self._settings_provider = settings_provider

    def get(self, key: str) -> str | None:
        stored: str | None = None
        session = self._session_factory()
        try:
            stored = get_setting_value(session, key)
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("Unable to read configuration key %s; using defaults: %s", key, exc)
        finally:
            session.close()
        if stored is not None and stored.strip():
            return stored.strip()
        return _settings_fallback(self._settings_provider(), key)

    def get_int(self, key: str, default: int) -> int:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning("Configuration key %s has non-integer value %r; using %s", key, raw, default)
            return default

    def get_list(self, key: str) -> list[str]:
        raw = self.get(key)
        if not raw:
            return []
        return [item.strip() for item in raw.split(",") if item.strip()]


__all__ = [
    "ACCESS_ROLE_KEY",
    "ConfigurationStore",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RETRY_INTERVAL_MINUTES",
    "DELTA_KEY_FIELD_KEY",
    "FOLLOW_ON_TARGETS_KEY",
    "KNOWN_KEYS",
    "MAX_ATTEMPTS_KEY",
    "RETRY_BACKOFF_KEY",
    "RETRY_INTERVAL_KEY",
    "get_setting_value",
    "set_setting_value",
]
