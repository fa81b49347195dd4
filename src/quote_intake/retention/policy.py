# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retention policy and report records.

A :class:`RetentionPolicy` is immutable configuration loaded once per run. A
:class:`CleanupReport` is produced for each policy by the engine and never
changes afterwards; the reporting sink aggregates reports into a
:class:`RetentionSummary`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..filestore import DiskSpaceStatus

SECONDS_PER_DAY = 86400
MIB = 1024 * 1024


class RunMode(str, Enum):
    """Whether a run only simulated its actions or applied them."""

    DRY_RUN = "dry-run"
    APPLIED = "applied"


@dataclass(frozen=True)
class RetentionPolicy:
    """Age and size budget for one managed directory.

    Attributes:
        name: Short identifier ("uploads", "logs", ...).
        directory: Directory the policy applies to.
        age_threshold_days: Files older than this are purged.
        max_size_bytes: Cap on the recursive directory size, or None.
        max_files_per_run: Maximum number of old files purged per run.
        enabled: Disabled policies are skipped entirely.
        pattern: Glob selecting purge candidates (``**`` recurses).
        rotate_logs: Whether log rotation runs for this directory.
        log_pattern: Glob selecting log files to rotate.
        log_max_lines: Lines kept by rotation.
    """

    name: str
    directory: Path
    age_threshold_days: float
    max_size_bytes: int | None = None
    max_files_per_run: int = 1000
    enabled: bool = True
    pattern: str = "*"
    rotate_logs: bool = False
    log_pattern: str = "*.log"
    log_max_lines: int = 5000

    def __post_init__(self) -> None:
        if self.age_threshold_days < 0:
            raise ValueError(f"{self.name}: age_threshold_days must be >= 0")
        if self.max_size_bytes is not None and self.max_size_bytes < 0:
            raise ValueError(f"{self.name}: max_size_bytes must be >= 0")
        if self.max_files_per_run < 1:
            raise ValueError(f"{self.name}: max_files_per_run must be >= 1")
        if self.log_max_lines < 1:
            raise ValueError(f"{self.name}: log_max_lines must be >= 1")

    def cutoff(self, now: float) -> float:
        """Modification time before which a file counts as expired."""
        return now - self.age_threshold_days * SECONDS_PER_DAY


@dataclass(frozen=True)
class CleanupReport:
    """Outcome of one policy in one run."""

    name: str
    directory: Path
    mode: RunMode
    files_removed: int = 0
    bytes_freed: int = 0
    errors: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    logs_rotated: int = 0
    lines_trimmed: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "directory": str(self.directory),
            "mode": self.mode.value,
            "files_removed": self.files_removed,
            "bytes_freed": self.bytes_freed,
            "errors": list(self.errors),
            "logs_rotated": self.logs_rotated,
            "lines_trimmed": self.lines_trimmed,
        }


@dataclass
class RetentionSummary:
    """Aggregate of every report of a run."""

    mode: RunMode
    reports: list[CleanupReport] = field(default_factory=list)
    disk: DiskSpaceStatus | None = None
    notified: bool = False

    @property
    def files_removed(self) -> int:
        return sum(report.files_removed for report in self.reports)

    @property
    def bytes_freed(self) -> int:
        return sum(report.bytes_freed for report in self.reports)

    @property
    def errors(self) -> list[tuple[str, str]]:
        return [(report.name, error) for report in self.reports for error in report.errors]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "mode": self.mode.value,
            "files_removed": self.files_removed,
            "bytes_freed": self.bytes_freed,
            "errors": [{"directory": name, "error": error} for name, error in self.errors],
            "directories": [report.to_dict() for report in self.reports],
        }
        if self.disk is not None:
            payload["disk"] = {
                "free_bytes": self.disk.free_bytes,
                "total_bytes": self.disk.total_bytes,
                "percent_free": round(self.disk.percent_free, 2),
            }
        return payload
