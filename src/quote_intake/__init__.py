# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Quote request intake and disk retention for a small business website.

Two parts share this package:

- the submission side (:mod:`quote_intake.pipeline`, served by
  :mod:`quote_intake.api`): rate limiting, form and attachment validation,
  mail delivery with rollback;
- the retention batch job (:mod:`quote_intake.retention`, run by
  :mod:`quote_intake.cli`): age purge, size eviction and log rotation of the
  managed directories.
"""

__version__ = "1.0.0"
