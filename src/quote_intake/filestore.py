# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Filesystem access shared by the upload validator and the retention engine.

Every blocking call is pushed to a worker thread with ``asyncio.to_thread`` so
the event loop serving submissions is never stalled by a slow disk.

Writes that must survive an interruption (log rotation, log backups) go
through :meth:`LocalFileStore.write_atomic`: the new content is written to a
temporary file in the destination directory and moved into place with
``os.replace``, so readers observe either the old or the new file, never a
truncated one.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

Clock = Callable[[], float]
"""Wall-clock source returning epoch seconds. Defaults to ``time.time``."""

system_clock: Clock = time.time


@dataclass(frozen=True)
class FileEntry:
    """A regular file observed on disk.

    Attributes:
        path: Absolute or base-relative path of the file.
        size: Size in bytes at observation time.
        mtime: Modification time in epoch seconds.
    """

    path: Path
    size: int
    mtime: float


@dataclass(frozen=True)
class DiskSpaceStatus:
    """Free/total space of the filesystem holding the managed directories."""

    free_bytes: int
    total_bytes: int
    percent_free: float

    @classmethod
    def from_usage(cls, free: int, total: int) -> DiskSpaceStatus:
        percent = (free / total) * 100 if total else 0.0
        return cls(free_bytes=free, total_bytes=total, percent_free=percent)


def format_size(num_bytes: int | float) -> str:
    """Render a byte count in human-readable binary units ("1.5 MB")."""
    units = ["B", "KB", "MB", "GB", "TB"]
    value = max(float(num_bytes), 0.0)
    if value == 0:
        return "0 B"
    power = 0
    while value >= 1024 and power < len(units) - 1:
        value /= 1024
        power += 1
    return f"{round(value, 2):g} {units[power]}"


class LocalFileStore:
    """Async facade over the local filesystem."""

    async def exists(self, path: Path) -> bool:
        return await asyncio.to_thread(Path(path).exists)

    async def is_dir(self, path: Path) -> bool:
        return await asyncio.to_thread(Path(path).is_dir)

    async def ensure_dir(self, path: Path) -> None:
        """Create a directory (and parents) if it does not exist yet."""
        await asyncio.to_thread(Path(path).mkdir, parents=True, exist_ok=True)

    async def list_files(self, directory: Path, pattern: str = "*") -> list[FileEntry]:
        """Return regular files under ``directory`` matching a glob pattern.

        ``**`` in the pattern recurses into subdirectories. Entries are sorted
        by path so callers iterate deterministically.
        """
        return await asyncio.to_thread(self._scan, Path(directory), pattern)

    async def walk(self, directory: Path) -> list[FileEntry]:
        """Return every regular file below ``directory`` (recursive)."""
        return await asyncio.to_thread(self._scan, Path(directory), "**/*")

    @staticmethod
    def _scan(directory: Path, pattern: str) -> list[FileEntry]:
        entries = []
        for path in directory.glob(pattern):
            try:
                if not path.is_file() or path.is_symlink():
                    continue
                stat = path.stat()
            except FileNotFoundError:
                # Removed between listing and stat
                continue
            entries.append(FileEntry(path=path, size=stat.st_size, mtime=stat.st_mtime))
        entries.sort(key=lambda entry: str(entry.path))
        return entries

    async def stat(self, path: Path) -> FileEntry:
        stat = await asyncio.to_thread(Path(path).stat)
        return FileEntry(path=Path(path), size=stat.st_size, mtime=stat.st_mtime)

    async def read_bytes(self, path: Path) -> bytes:
        return await asyncio.to_thread(Path(path).read_bytes)

    async def write_atomic(self, path: Path, data: bytes) -> None:
        """Replace ``path`` with ``data`` using write-temp-then-rename."""
        await asyncio.to_thread(self._write_atomic, Path(path), data)

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            if path.exists():
                shutil.copymode(path, tmp_name)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    async def copy_atomic(self, source: Path, destination: Path) -> None:
        """Copy ``source`` to ``destination``; the copy appears all at once."""
        data = await self.read_bytes(source)
        await self.write_atomic(destination, data)

    async def move(self, source: Path, destination: Path) -> None:
        """Move a file, creating the destination directory when needed."""

        def _move() -> None:
            Path(destination).parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(destination))

        await asyncio.to_thread(_move)

    async def delete(self, path: Path, missing_ok: bool = False) -> None:
        """Remove a file. Raises ``OSError`` when removal fails."""
        await asyncio.to_thread(Path(path).unlink, missing_ok=missing_ok)

    async def disk_usage(self, path: Path) -> DiskSpaceStatus:
        usage = await asyncio.to_thread(shutil.disk_usage, str(path))
        return DiskSpaceStatus.from_usage(usage.free, usage.total)
