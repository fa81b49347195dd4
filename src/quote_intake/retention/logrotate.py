# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Line-count based log rotation.

A log longer than ``max_lines`` is first copied to
``<name>.backup.<YYYY-MM-DD>`` (at most one backup per log per day; an
existing backup is never overwritten) and then rewritten with only its last
``max_lines`` lines. Both writes go through
:meth:`~quote_intake.filestore.LocalFileStore.write_atomic`, so a crash
leaves either the old or the trimmed log, never a partial one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from ..filestore import Clock, LocalFileStore, system_clock
from ..logger import get_logger

logger = get_logger("LogRotator")


@dataclass(frozen=True)
class RotationResult:
    path: Path
    lines_before: int
    lines_kept: int
    backup: Path | None

    @property
    def lines_trimmed(self) -> int:
        return self.lines_before - self.lines_kept


class LogRotator:
    def __init__(self, store: LocalFileStore | None = None, clock: Clock = system_clock):
        self.store = store or LocalFileStore()
        self.clock = clock

    def backup_path(self, path: Path, now: float | None = None) -> Path:
        day = datetime.fromtimestamp(self.clock() if now is None else now).strftime("%Y-%m-%d")
        return path.with_name(f"{path.name}.backup.{day}")

    async def rotate(self, path: Path, max_lines: int, dry_run: bool = False) -> RotationResult | None:
        """Trim ``path`` to its last ``max_lines`` lines.

        Returns:
            ``None`` when the log is within the limit, otherwise what was (or,
            in dry-run mode, would be) done.
        """
        data = await self.store.read_bytes(path)
        lines = data.splitlines(keepends=True)
        if len(lines) <= max_lines:
            return None

        backup = self.backup_path(path)
        if await self.store.exists(backup):
            backup_written = None
        else:
            backup_written = backup
            if not dry_run:
                await self.store.write_atomic(backup, data)

        if not dry_run:
            await self.store.write_atomic(path, b"".join(lines[-max_lines:]))
        logger.info(
            "%s %s: %d -> %d lines",
            "Would rotate" if dry_run else "Rotated",
            path,
            len(lines),
            max_lines,
        )
        return RotationResult(path=path, lines_before=len(lines), lines_kept=max_lines, backup=backup_written)
