"""SQLite backed storage for Feed Monitor settings."""

from __future__ import annotations

import asyncio
import logging
from contextlib import closing
from datetime import datetime
from pathlib import Path

from .models import FeedOptions
from .storage import SQLiteStore
from .utils import format_seconds_setting, parse_seconds_setting, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_POLLING_INTERVAL = 5 * 60.0
DEFAULT_TTL = 3 * 24 * 60 * 60.0
DEFAULT_FETCH_DELAY = 1.0

KEY_POLLING_INTERVAL = "feed.polling_interval"
KEY_FETCH_DELAY = "feed.fetch_delay"
KEY_TTL = "feed.ttl"
KEY_LAST_VISIBLE = "feed.last_visible_timestamp"

_DISABLED = "off"


class ConfigStore(SQLiteStore):
    """Persisted key/value settings."""

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
    """

    def set_setting(self, key: str, value: str) -> None:
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO settings(key, value) VALUES(?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT value FROM settings WHERE key=?", (key,))
            row = cur.fetchone()
        return row["value"] if row else default

    def delete_setting(self, key: str) -> None:
        with self.transaction() as cur:
            cur.execute("DELETE FROM settings WHERE key=?", (key,))


class FeedSettings:
    """Typed, observable view of the feed options.

    Values are read from SQLite on every access, so instances opened on the
    same database file see each other's changes. Writers going through this
    object additionally wake up coroutines blocked in :meth:`wait_for_change`.
    """

    def __init__(self, store: ConfigStore):
        self._store = store
        self._changed: asyncio.Event | None = None
        self._populate_defaults()

    @classmethod
    def open(cls, path: Path) -> "FeedSettings":
        return cls(ConfigStore(path))

    @property
    def store(self) -> ConfigStore:
        return self._store

    def _populate_defaults(self) -> None:
        defaults = {
            KEY_POLLING_INTERVAL: format_seconds_setting(DEFAULT_POLLING_INTERVAL),
            KEY_TTL: format_seconds_setting(DEFAULT_TTL),
            KEY_FETCH_DELAY: format_seconds_setting(DEFAULT_FETCH_DELAY),
        }
        for key, value in defaults.items():
            if self._store.get_setting(key) is None:
                self._store.set_setting(key, value)

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------
    @property
    def polling_interval(self) -> float | None:
        """Seconds between update checks, or None when polling is disabled."""

        raw = self._store.get_setting(KEY_POLLING_INTERVAL)
        if raw is not None and raw.strip().lower() == _DISABLED:
            return None
        return parse_seconds_setting(raw, DEFAULT_POLLING_INTERVAL)

    def set_polling_interval(self, seconds: float | None) -> None:
        value = _DISABLED if seconds is None else format_seconds_setting(seconds)
        self._store.set_setting(KEY_POLLING_INTERVAL, value)
        self._notify()

    @property
    def fetch_delay(self) -> float:
        """Seconds to wait between consecutive page requests."""

        return parse_seconds_setting(self._store.get_setting(KEY_FETCH_DELAY), DEFAULT_FETCH_DELAY)

    def set_fetch_delay(self, seconds: float) -> None:
        self._store.set_setting(KEY_FETCH_DELAY, format_seconds_setting(seconds))
        self._notify()

    @property
    def ttl(self) -> float:
        return parse_seconds_setting(self._store.get_setting(KEY_TTL), DEFAULT_TTL)

    def set_ttl(self, seconds: float) -> None:
        self._store.set_setting(KEY_TTL, format_seconds_setting(seconds))
        self._notify()

    @property
    def last_visible_timestamp(self) -> datetime | None:
        return parse_timestamp(self._store.get_setting(KEY_LAST_VISIBLE))

    def set_last_visible_timestamp(self, moment: datetime | None) -> None:
        if moment is None:
            self._store.delete_setting(KEY_LAST_VISIBLE)
        else:
            self._store.set_setting(KEY_LAST_VISIBLE, moment.isoformat())

    def load_options(self) -> FeedOptions:
        return FeedOptions(
            polling_interval=self.polling_interval,
            fetch_delay=self.fetch_delay,
            ttl=self.ttl,
        )

    def reset_to_default(self) -> None:
        """Restore the polling interval and the fetch delay."""

        self._store.set_setting(KEY_POLLING_INTERVAL, format_seconds_setting(DEFAULT_POLLING_INTERVAL))
        self._store.set_setting(KEY_FETCH_DELAY, format_seconds_setting(DEFAULT_FETCH_DELAY))
        self._notify()

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------
    async def wait_for_change(self, timeout: float | None) -> bool:
        """Block until a setting is written through this object or ``timeout`` passes.

        Returns True when woken by a change.
        """

        if self._changed is None:
            self._changed = asyncio.Event()
        event = self._changed
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _notify(self) -> None:
        logger.debug("Feed settings changed")
        if self._changed is not None:
            self._changed.set()
            self._changed = None

    def close(self) -> None:
        self._store.close()
