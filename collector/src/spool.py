"""
Durable local queue using async SQLite for carrying unflushed points across restarts.

The write buffer lives in memory.  On shutdown, points that the final flush
could not deliver (sink down) are saved to the spool; on the next start they
are restored into the buffer before any device is polled.  The spool is
backed by a SQLite database file on disk in WAL mode.

Operations:
- enqueue(payload) / enqueue_many(payloads): INSERT JSON payload rows.
- peek(n): SELECT up to n oldest rows with their rowids (FIFO).
- ack(rowids): DELETE only the specified rows.
- count(): SELECT COUNT(*) of pending rows.
- close(): Close the underlying database connection.

Helpers:
- save_points(spool, points): Serialize MetricPoints into the spool.
- restore_points(spool, buffer): Move spooled points back into a buffer.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-11: Store MetricPoints; add save_points/restore_points (STORY-110)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
from pydantic import ValidationError

from collector.src.models import MetricPoint

if TYPE_CHECKING:
    from collector.src.buffer import WriteBuffer

logger = logging.getLogger(__name__)

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS spool (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_INSERT_SQL = """\
INSERT INTO spool (payload) VALUES (?);
"""

_PEEK_SQL = """\
SELECT rowid, payload
FROM spool
ORDER BY rowid ASC
LIMIT ?;
"""

_COUNT_SQL = "SELECT COUNT(*) FROM spool;"

_RESTORE_CHUNK = 500


class Spool:
    """Durable local async FIFO queue backed by a SQLite database.

    Stores payloads as opaque TEXT blobs; :func:`save_points` and
    :func:`restore_points` handle MetricPoint (de)serialization.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with Spool(path="/data/spool.db") as spool:
            await save_points(spool, buffer.drain_all())
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> Spool:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(self, payload: str) -> None:
        """Insert one JSON payload into the spool."""
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        await self._db.execute(_INSERT_SQL, (payload,))
        await self._db.commit()

    async def enqueue_many(self, payloads: Iterable[str]) -> int:
        """Insert several payloads in one transaction.

        Returns:
            Number of rows inserted.
        """
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        rows = [(payload,) for payload in payloads]
        if not rows:
            return 0
        await self._db.executemany(_INSERT_SQL, rows)
        await self._db.commit()
        return len(rows)

    async def peek(self, n: int) -> list[tuple[int, str]]:
        """Return up to *n* oldest pending payloads without removing them.

        Returns:
            List of ``(rowid, payload)`` tuples, oldest first.  Empty list
            when the spool has no pending rows or n < 1.
        """
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        if n < 1:
            return []
        cursor = await self._db.execute(_PEEK_SQL, (n,))
        rows = await cursor.fetchall()
        return [(row[0], row[1]) for row in rows]

    async def ack(self, rowids: list[int]) -> None:
        """Delete the given rows.  Unknown rowids are ignored."""
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        if not rowids:
            return
        placeholders = ",".join("?" for _ in rowids)
        sql = f"DELETE FROM spool WHERE rowid IN ({placeholders});"  # noqa: S608
        await self._db.execute(sql, rowids)
        await self._db.commit()

    async def count(self) -> int:
        """Return the number of pending payloads."""
        assert self._db is not None, "Spool not opened. Call open() or use async with."
        cursor = await self._db.execute(_COUNT_SQL)
        row = await cursor.fetchone()
        return row[0]


# ---------------------------------------------------------------------------
# MetricPoint helpers
# ---------------------------------------------------------------------------


async def save_points(spool: Spool, points: list[MetricPoint]) -> int:
    """Persist *points* (oldest first). Returns the number saved."""
    saved = await spool.enqueue_many(p.model_dump_json() for p in points)
    if saved:
        logger.info("Spooled %d unflushed points", saved)
    return saved


async def restore_points(spool: Spool, buffer: WriteBuffer) -> int:
    """Move every spooled point into *buffer*, oldest first.

    Rows that no longer parse as MetricPoints are discarded with a warning.
    The buffer's overflow policy applies, so a spool larger than the buffer
    capacity keeps only the most recent points.

    Returns:
        Number of points restored into the buffer.
    """
    restored = 0
    while True:
        rows = await spool.peek(_RESTORE_CHUNK)
        if not rows:
            break
        for _, payload in rows:
            try:
                point = MetricPoint.model_validate_json(payload)
            except ValidationError:
                logger.warning("Discarding unreadable spooled point: %.80s", payload)
                continue
            buffer.enqueue(point)
            restored += 1
        await spool.ack([rowid for rowid, _ in rows])
    if restored:
        logger.info("Restored %d spooled points into the write buffer", restored)
    return restored
