"""LearnRank KPI engine.

Ranking and KPI aggregation for learners: incremental per-unit, per-subject
and global metrics, institution rankings and weekly position history.

Copyright (C) 2025 Global Digital Labs (gdlabs.io)
SPDX-License-Identifier: LGPL-3.0-or-later
"""

__version__ = "0.1.0"
