"""
Process-wide TTL cache for plan restrictions and operator settings.

Entries are served for SETTINGS_CACHE_TTL_SECONDS and then reloaded; a
just-changed restriction may take up to the TTL to take effect unless the
writer calls invalidate().
"""
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import select, update, insert

from companion.core.config import settings
from companion.core.database import get_db_session, system_settings, utc_now


class TTLCache:
    """Thread-safe key/value cache with a fixed time-to-live."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, loader: Callable[[], Any]) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now - entry[0] < self.ttl_seconds:
                return entry[1]
        # Load outside the lock; a concurrent loader for the same key is harmless
        value = loader()
        with self._lock:
            self._entries[key] = (self._clock(), value)
        return value

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)


settings_cache = TTLCache(settings.SETTINGS_CACHE_TTL_SECONDS)


def _load_system_setting(key: str) -> Any:
    with get_db_session() as session:
        row = session.execute(
            select(system_settings.c.value).where(system_settings.c.key == key)
        ).fetchone()
    return row[0] if row else None


def get_system_setting(key: str, default: Any = None) -> Any:
    """Read an operator setting through the cache."""
    value = settings_cache.get(f"system:{key}", lambda: _load_system_setting(key))
    return default if value is None else value


def set_system_setting(key: str, value: Any) -> None:
    """Upsert an operator setting and drop its cached copy."""
    with get_db_session() as session:
        result = session.execute(
            update(system_settings)
            .where(system_settings.c.key == key)
            .values(value=value, updated_at=utc_now())
        )
        if result.rowcount == 0:
            session.execute(insert(system_settings).values(key=key, value=value, updated_at=utc_now()))
    settings_cache.invalidate(f"system:{key}")


def clear_settings_cache() -> None:
    settings_cache.invalidate()
