# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Disk retention: policies, the cleanup engine and log rotation."""

from .engine import RetentionEngine
from .logrotate import LogRotator, RotationResult
from .policy import CleanupReport, RetentionPolicy, RetentionSummary, RunMode

__all__ = [
    "CleanupReport",
    "LogRotator",
    "RetentionEngine",
    "RetentionPolicy",
    "RetentionSummary",
    "RotationResult",
    "RunMode",
]
