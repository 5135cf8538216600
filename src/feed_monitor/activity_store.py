"""SQLite backed storage of downloaded feed activities."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from datetime import datetime
from typing import Callable, Iterable, Iterator

from .models import Activity, dump_activity, load_activity, to_timestamp
from .storage import SQLiteStore

logger = logging.getLogger(__name__)


class ActivityStore(SQLiteStore):
    """Activities keyed by id, with a secondary ordering on timestamp."""

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS activities (
            id TEXT PRIMARY KEY,
            timestamp REAL NOT NULL,
            payload TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS activities_timestamp ON activities(timestamp);
    """

    def upsert_many(self, activities: Iterable[Activity]) -> None:
        """Insert or replace activities in bulk.

        Each row is written on its own unless the caller wraps the call in
        :meth:`transaction`.
        """

        rows = [
            (activity.id, to_timestamp(activity.timestamp), dump_activity(activity))
            for activity in activities
        ]
        if not rows:
            return
        with closing(self._conn.cursor()) as cur:
            cur.executemany(
                "INSERT OR REPLACE INTO activities(id, timestamp, payload) VALUES(?, ?, ?)",
                rows,
            )

    def try_insert(self, activity: Activity) -> bool:
        """Insert ``activity`` unless its id is known. Return True if it was new."""

        try:
            with self.transaction() as cur:
                cur.execute(
                    "INSERT INTO activities(id, timestamp, payload) VALUES(?, ?, ?)",
                    (activity.id, to_timestamp(activity.timestamp), dump_activity(activity)),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def count(self) -> int:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT COUNT(*) FROM activities")
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def newest(self) -> Activity | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT payload FROM activities ORDER BY timestamp DESC, id DESC LIMIT 1")
            row = cur.fetchone()
        return load_activity(row["payload"]) if row else None

    def lookup(self, activity_id: str) -> Activity | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT payload FROM activities WHERE id=?", (activity_id,))
            row = cur.fetchone()
        return load_activity(row["payload"]) if row else None

    def exists(self, activity_id: str) -> bool:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT 1 FROM activities WHERE id=?", (activity_id,))
            row = cur.fetchone()
        return row is not None

    def iter_newest_first(self) -> Iterator[Activity]:
        """Yield activities in display order."""

        yield from self._iter_ordered("DESC")

    def iter_oldest_first(self) -> Iterator[Activity]:
        yield from self._iter_ordered("ASC")

    def list_newest_first(self) -> list[Activity]:
        return list(self._iter_ordered("DESC"))

    def purge(
        self,
        cutoff: datetime,
        on_each: Callable[[Activity], None] | None = None,
    ) -> int:
        """Delete activities strictly older than ``cutoff``.

        ``on_each`` sees every doomed activity before it is removed, within
        the same transaction. Returns the number of removed activities.
        """

        threshold = to_timestamp(cutoff)
        with self.transaction() as cur:
            if on_each is not None:
                cur.execute(
                    "SELECT payload FROM activities WHERE timestamp < ? ORDER BY timestamp",
                    (threshold,),
                )
                for row in cur.fetchall():
                    on_each(load_activity(row["payload"]))
            cur.execute("DELETE FROM activities WHERE timestamp < ?", (threshold,))
            removed = cur.rowcount
        if removed:
            logger.info("Purged %d activities older than %s", removed, cutoff.isoformat())
        return removed

    def clear(self) -> int:
        with self.transaction() as cur:
            cur.execute("DELETE FROM activities")
            removed = cur.rowcount
        return removed

    def _iter_ordered(self, direction: str) -> Iterator[Activity]:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                f"SELECT payload FROM activities ORDER BY timestamp {direction}, id {direction}"
            )
            rows = cur.fetchall()
        for row in rows:
            yield load_activity(row["payload"])
