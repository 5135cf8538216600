"""Shared SQLite plumbing for the persistent stores."""

from __future__ import annotations

import sqlite3
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Iterator

_DB_PRAGMA = "PRAGMA journal_mode=WAL;" "PRAGMA synchronous=NORMAL;" "PRAGMA busy_timeout=5000;"


class SQLiteStore:
    """Own a connection and hand out nestable write transactions.

    The connection runs in autocommit mode; every write goes through
    :meth:`transaction`, which opens ``BEGIN IMMEDIATE`` so that writers
    using other connections to the same file are serialised.
    """

    _SCHEMA = ""

    def __init__(self, path: Path):
        self._path = path
        self._conn = sqlite3.connect(self._path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._depth = 0
        self._setup()

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Schema initialisation
    # ------------------------------------------------------------------
    def _setup(self) -> None:
        with closing(self._conn.cursor()) as cur:
            for statement in _DB_PRAGMA.split(";"):
                if statement.strip():
                    cur.execute(statement)
            if self._SCHEMA:
                cur.executescript(self._SCHEMA)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run the block atomically. Nested calls join the outer transaction."""

        with closing(self._conn.cursor()) as cur:
            if self._depth:
                self._depth += 1
                try:
                    yield cur
                finally:
                    self._depth -= 1
                return

            cur.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            else:
                cur.execute("COMMIT")
            finally:
                self._depth = 0

    def close(self) -> None:
        self._conn.close()
