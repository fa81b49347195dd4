# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Small persisted key-value store with an atomic read-modify-write primitive.

Submission handlers are short-lived and may run concurrently, so state such
as the rate-limit window of a client cannot live in memory. The store keeps
one JSON value per key in SQLite and exposes :meth:`KeyValueStore.update`,
which loads a value, lets the caller compute the replacement and commits it
as one unit.

The SQLite implementation opens a connection per operation (the same
approach as the mail proxy's SQLite adapter) and starts every update with
``BEGIN IMMEDIATE``: the database write lock is taken *before* the read, so
two writers on the same key can never both observe the same old value.
Readers waiting for the lock block up to ``timeout`` seconds.

Example:
    Incrementing a counter::

        store = SqliteKeyValueStore("/data/state.db")
        await store.init()

        def bump(current):
            value = (current or 0) + 1
            return value, value

        new_value = await store.update("hits", bump)
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import aiosqlite

from .errors import StorageError

R = TypeVar("R")

Updater = Callable[[Any | None], tuple[Any | None, R]]
"""Receives the current value (``None`` when absent) and returns
``(new_value, result)``. A ``new_value`` of ``None`` leaves the stored value
untouched."""


class KeyValueStore(ABC):
    """Abstract persisted mapping of string keys to JSON-serialisable values."""

    @abstractmethod
    async def init(self) -> None:
        """Create the backing storage if needed."""
        ...

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value stored for ``key`` or ``None``."""
        ...

    @abstractmethod
    async def update(self, key: str, fn: Updater[R]) -> R:
        """Atomically read, transform and write the value of ``key``."""
        ...


class SqliteKeyValueStore(KeyValueStore):
    """:class:`KeyValueStore` backed by a single SQLite table."""

    def __init__(self, db_path: str | Path, table: str = "kv_records", timeout: float = 30.0):
        """Initialize the store.

        Args:
            db_path: SQLite file path. The file, its parent directories and
                the table are created on first use, so a deleted database is
                recreated empty.
            table: Table holding the records.
            timeout: Seconds to wait for a competing writer's lock.
        """
        if not table.isidentifier():
            raise ValueError(f"Invalid table name: {table!r}")
        self.db_path = str(db_path)
        self.table = table
        self.timeout = timeout

    def _connect(self) -> aiosqlite.Connection:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        return aiosqlite.connect(self.db_path, timeout=self.timeout, isolation_level=None)

    async def _create_table(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_ts REAL NOT NULL
            )
            """
        )

    async def init(self) -> None:
        try:
            async with self._connect() as db:
                await db.execute("PRAGMA journal_mode=WAL")
                await self._create_table(db)
        except (aiosqlite.Error, OSError) as exc:
            raise StorageError(f"Cannot initialise key-value store {self.db_path}: {exc}") from exc

    async def get(self, key: str) -> Any | None:
        try:
            async with self._connect() as db:
                await self._create_table(db)
                async with db.execute(
                    f"SELECT value FROM {self.table} WHERE key = :key", {"key": key}
                ) as cursor:
                    row = await cursor.fetchone()
        except (aiosqlite.Error, OSError) as exc:
            raise StorageError(f"Cannot read key {key!r}: {exc}") from exc
        return json.loads(row[0]) if row else None

    async def update(self, key: str, fn: Updater[R]) -> R:
        try:
            async with self._connect() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    await self._create_table(db)
                    async with db.execute(
                        f"SELECT value FROM {self.table} WHERE key = :key", {"key": key}
                    ) as cursor:
                        row = await cursor.fetchone()
                    current = json.loads(row[0]) if row else None
                    new_value, result = fn(current)
                    if new_value is not None:
                        await db.execute(
                            f"""
                            INSERT INTO {self.table} (key, value, updated_ts)
                            VALUES (:key, :value, :ts)
                            ON CONFLICT (key) DO UPDATE SET
                                value = excluded.value,
                                updated_ts = excluded.updated_ts
                            """,
                            {"key": key, "value": json.dumps(new_value), "ts": time.time()},
                        )
                    await db.execute("COMMIT")
                except BaseException:
                    await db.execute("ROLLBACK")
                    raise
        except (aiosqlite.Error, OSError) as exc:
            raise StorageError(f"Cannot update key {key!r}: {exc}") from exc
        return result
