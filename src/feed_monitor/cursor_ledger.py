"""Scroll position time series used to decide which activities to purge.

Activities that the user scrolled past a long time ago can be removed, but
ones that were only momentarily out of view should stay. Recording a
"last visible" time for every activity would mean a write per activity on
every scroll, so instead the ledger keeps a sparse series of checkpoints:
the timestamp of the last visible activity at the moment of observation.

The series is not monotonic (the user scrolls back and forth). Before it
is used it is squashed into a non-decreasing curve: whenever a point goes
below the running maximum, preceding points at or above it are dropped::

        xx                 x
       x  x      ->       x
      x                  x
     x                  x

The cutoff is then the content time of the newest checkpoint observed at
least ``ttl`` seconds ago. Checkpoints older than that one are no longer
needed and are dropped as well.
"""

from __future__ import annotations

import logging
from contextlib import closing
from datetime import datetime, timedelta, timezone

from .models import CursorDataPoint, from_timestamp, to_timestamp
from .storage import SQLiteStore

logger = logging.getLogger(__name__)


class ScrollCursorLedger(SQLiteStore):
    """Checkpoints keyed by observation time."""

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS cursor_points (
            observed_at REAL PRIMARY KEY,
            content_time REAL NOT NULL
        );
    """

    def put(self, content_time: datetime, observed_at: datetime | None = None) -> bool:
        """Record a checkpoint unless the latest one has the same content time.

        A checkpoint with an already stored observation time replaces it.
        Returns True when a row was written.
        """

        observed = observed_at or datetime.now(timezone.utc)
        content_value = to_timestamp(content_time)
        with self.transaction() as cur:
            cur.execute(
                "SELECT content_time FROM cursor_points ORDER BY observed_at DESC LIMIT 1"
            )
            last = cur.fetchone()
            if last is not None and float(last["content_time"]) == content_value:
                return False
            cur.execute(
                "INSERT OR REPLACE INTO cursor_points(observed_at, content_time) VALUES(?, ?)",
                (to_timestamp(observed), content_value),
            )
        return True

    def cut_off(self, ttl: float, *, now: datetime | None = None) -> datetime | None:
        """Squash the series and return the purge cutoff, or None.

        None means nothing has been out of view for ``ttl`` seconds yet, so
        no activity should be purged.
        """

        moment = now or datetime.now(timezone.utc)
        with self.transaction() as cur:
            cur.execute("SELECT observed_at, content_time FROM cursor_points ORDER BY observed_at")
            stored = [
                CursorDataPoint(
                    observed_at=from_timestamp(row["observed_at"]),
                    content_time=from_timestamp(row["content_time"]),
                )
                for row in cur.fetchall()
            ]

            points, squashed = squash(stored)

            expires_at = moment - timedelta(seconds=ttl)
            cutoff: datetime | None = None
            pruned = False
            for index in range(len(points) - 1, -1, -1):
                point = points[index]
                if point.observed_at < expires_at:
                    cutoff = point.content_time
                    if index > 0:
                        del points[:index]
                        pruned = True
                    break

            if squashed or pruned:
                logger.debug(
                    "Rewriting cursor ledger: %d of %d checkpoints kept",
                    len(points),
                    len(stored),
                )
                cur.execute("DELETE FROM cursor_points")
                cur.executemany(
                    "INSERT INTO cursor_points(observed_at, content_time) VALUES(?, ?)",
                    [
                        (to_timestamp(point.observed_at), to_timestamp(point.content_time))
                        for point in points
                    ],
                )
        return cutoff

    def points(self) -> list[CursorDataPoint]:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT observed_at, content_time FROM cursor_points ORDER BY observed_at")
            rows = cur.fetchall()
        return [
            CursorDataPoint(
                observed_at=from_timestamp(row["observed_at"]),
                content_time=from_timestamp(row["content_time"]),
            )
            for row in rows
        ]

    def clear(self) -> None:
        with self.transaction() as cur:
            cur.execute("DELETE FROM cursor_points")


def squash(points: list[CursorDataPoint]) -> tuple[list[CursorDataPoint], bool]:
    """Return a non-decreasing subsequence of ``points`` and whether any was dropped."""

    kept: list[CursorDataPoint] = []
    running_max: datetime | None = None
    squashed = False
    for point in points:
        if running_max is not None and point.content_time < running_max:
            while kept and kept[-1].content_time >= point.content_time:
                kept.pop()
            squashed = True
        else:
            running_max = point.content_time
        kept.append(point)
    return kept, squashed
