# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retention engine: age purge, size eviction and log rotation per directory.

A run checks free disk space once, then processes the policies one at a
time. For every enabled policy the engine:

1. builds an inventory of the directory (every regular file, recursively);
2. purges files matching the policy pattern whose modification time is
   older than the age threshold, in path order, at most
   ``max_files_per_run`` of them;
3. while the remaining inventory exceeds ``max_size_bytes``, evicts the
   oldest files (ties broken by path);
4. rotates log files when the policy asks for it.

Dry runs perform exactly the same computation on the in-memory inventory
and skip every filesystem mutation, so the reported counts equal those a
real run would produce at the same instant.

A failure inside one policy is recorded in that policy's report and never
stops the others.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from ..filestore import Clock, DiskSpaceStatus, FileEntry, LocalFileStore, format_size, system_clock
from ..logger import get_logger
from .logrotate import LogRotator
from .policy import CleanupReport, RetentionPolicy, RunMode

logger = get_logger("RetentionEngine")

INSUFFICIENT_SPACE = "insufficient disk space"
MISSING_DIRECTORY = "directory does not exist"


class _PolicyRun:
    """Mutable accumulator for one policy; frozen into a report at the end."""

    def __init__(self, policy: RetentionPolicy, mode: RunMode):
        self.policy = policy
        self.mode = mode
        self.files_removed = 0
        self.bytes_freed = 0
        self.errors: list[str] = []
        self.removed: list[str] = []
        self.logs_rotated = 0
        self.lines_trimmed = 0

    def report(self) -> CleanupReport:
        return CleanupReport(
            name=self.policy.name,
            directory=self.policy.directory,
            mode=self.mode,
            files_removed=self.files_removed,
            bytes_freed=self.bytes_freed,
            errors=tuple(self.errors),
            removed=tuple(self.removed),
            logs_rotated=self.logs_rotated,
            lines_trimmed=self.lines_trimmed,
        )


class RetentionEngine:
    """Applies retention policies to their directories.

    Attributes:
        policies: Policies in processing order.
        base_dir: Directory whose filesystem is checked for free space.
        min_free_bytes: Below this, applied runs are refused unless forced.
        store: Filesystem access.
    """

    def __init__(
        self,
        policies: Iterable[RetentionPolicy],
        base_dir: Path,
        min_free_bytes: int = 0,
        store: LocalFileStore | None = None,
        clock: Clock = system_clock,
    ):
        self.policies = list(policies)
        self.base_dir = Path(base_dir)
        self.min_free_bytes = min_free_bytes
        self.store = store or LocalFileStore()
        self.clock = clock
        self.rotator = LogRotator(self.store, clock)

    async def check_disk_space(self) -> DiskSpaceStatus | None:
        try:
            status = await self.store.disk_usage(self.base_dir)
        except OSError as exc:
            logger.warning("Cannot read disk usage of %s: %s", self.base_dir, exc)
            return None
        logger.info(
            "Disk: %s free of %s (%.1f%%)",
            format_size(status.free_bytes),
            format_size(status.total_bytes),
            status.percent_free,
        )
        return status

    async def run(self, dry_run: bool = False, force: bool = False, sink=None) -> list[CleanupReport]:
        """Process every policy once.

        Args:
            dry_run: Compute without touching the filesystem.
            force: Proceed even when free space is below ``min_free_bytes``.
            sink: Optional reporting sink; receives the disk status and each
                report as soon as it is produced.

        Returns:
            One report per enabled policy, in policy order.
        """
        mode = RunMode.DRY_RUN if dry_run else RunMode.APPLIED
        now = self.clock()
        disk = await self.check_disk_space()
        if sink is not None:
            sink.record_disk(disk)

        blocked = disk is not None and disk.free_bytes < self.min_free_bytes and not force and not dry_run
        if blocked:
            logger.error(
                "Only %s free, below the %s minimum; use --force to clean anyway",
                format_size(disk.free_bytes),
                format_size(self.min_free_bytes),
            )

        reports = []
        for policy in self.policies:
            if not policy.enabled:
                logger.debug("Policy %s disabled, skipping", policy.name)
                continue
            if blocked:
                report = CleanupReport(name=policy.name, directory=policy.directory, mode=mode,
                                       errors=(INSUFFICIENT_SPACE,))
            else:
                report = await self.apply_policy(policy, now, dry_run)
            reports.append(report)
            if sink is not None:
                sink.record(report)
        return reports

    async def apply_policy(self, policy: RetentionPolicy, now: float, dry_run: bool = False) -> CleanupReport:
        """Run age purge, size eviction and log rotation for one policy."""
        state = _PolicyRun(policy, RunMode.DRY_RUN if dry_run else RunMode.APPLIED)
        directory = policy.directory
        try:
            if not await self.store.is_dir(directory):
                logger.warning("%s: %s does not exist", policy.name, directory)
                state.errors.append(MISSING_DIRECTORY)
                return state.report()

            inventory = {entry.path: entry for entry in await self.store.walk(directory)}
            await self._purge_expired(policy, state, inventory, now, dry_run)
            if policy.max_size_bytes is not None:
                await self._evict_to_size(policy, state, inventory, dry_run)
            if policy.rotate_logs:
                await self._rotate_logs(policy, state, inventory, dry_run)
        except Exception as exc:
            logger.exception("%s: cleanup aborted", policy.name)
            state.errors.append(f"unexpected error: {exc}")
        return state.report()

    async def _remove(self, state: _PolicyRun, entry: FileEntry, inventory: dict[Path, FileEntry],
                      dry_run: bool) -> bool:
        if not dry_run:
            try:
                await self.store.delete(entry.path)
            except OSError as exc:
                logger.warning("Cannot delete %s: %s", entry.path, exc)
                state.errors.append(f"cannot delete {entry.path.name}: {exc.strerror or exc}")
                return False
        inventory.pop(entry.path, None)
        state.files_removed += 1
        state.bytes_freed += entry.size
        state.removed.append(str(entry.path.relative_to(state.policy.directory)))
        logger.debug("%s %s (%s)", "Would remove" if dry_run else "Removed", entry.path, format_size(entry.size))
        return True

    async def _purge_expired(self, policy: RetentionPolicy, state: _PolicyRun,
                             inventory: dict[Path, FileEntry], now: float, dry_run: bool) -> None:
        cutoff = policy.cutoff(now)
        candidates = await self.store.list_files(policy.directory, policy.pattern)
        expired = [entry for entry in candidates if entry.path in inventory and entry.mtime < cutoff]
        if len(expired) > policy.max_files_per_run:
            logger.warning(
                "%s: %d expired files, removing the first %d this run",
                policy.name,
                len(expired),
                policy.max_files_per_run,
            )
            expired = expired[: policy.max_files_per_run]
        for entry in expired:
            await self._remove(state, entry, inventory, dry_run)

    async def _evict_to_size(self, policy: RetentionPolicy, state: _PolicyRun,
                             inventory: dict[Path, FileEntry], dry_run: bool) -> None:
        total = sum(entry.size for entry in inventory.values())
        if total <= policy.max_size_bytes:
            return
        logger.info(
            "%s: %s exceeds the %s cap", policy.name, format_size(total), format_size(policy.max_size_bytes)
        )
        for entry in sorted(inventory.values(), key=lambda e: (e.mtime, str(e.path))):
            if total <= policy.max_size_bytes:
                break
            if await self._remove(state, entry, inventory, dry_run):
                total -= entry.size

    async def _rotate_logs(self, policy: RetentionPolicy, state: _PolicyRun,
                           inventory: dict[Path, FileEntry], dry_run: bool) -> None:
        for entry in await self.store.list_files(policy.directory, policy.log_pattern):
            if entry.path not in inventory:
                continue
            try:
                result = await self.rotator.rotate(entry.path, policy.log_max_lines, dry_run=dry_run)
            except OSError as exc:
                logger.warning("Cannot rotate %s: %s", entry.path, exc)
                state.errors.append(f"cannot rotate {entry.path.name}: {exc.strerror or exc}")
                continue
            if result is not None:
                state.logs_rotated += 1
                state.lines_trimmed += result.lines_trimmed
