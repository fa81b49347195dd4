# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for quote-intake.

Only conditions that abort an operation are modelled as exceptions. Outcomes
the submitter can correct (invalid form fields, rejected attachments, rate
limiting) travel back as data in :class:`quote_intake.pipeline.SubmissionOutcome`.
"""

from __future__ import annotations


class QuoteIntakeError(Exception):
    """Base class for all quote-intake errors."""


class ConfigurationError(QuoteIntakeError):
    """Required settings are missing or invalid.

    Fatal for the retention batch job, which exits before touching any
    directory.
    """


class TransportError(QuoteIntakeError):
    """The mail transport could not deliver a message."""


class StorageError(QuoteIntakeError):
    """A key-value store operation failed."""
