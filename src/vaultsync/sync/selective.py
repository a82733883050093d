"""Selective-sync change reconciliation.

This module provides:
- reconcile_selective_change: Paths that became eligible after a settings change

When a category is enabled, the size ceiling widens or a folder exclusion
is removed, files that were skipped so far must be uploaded. Only local
files and existing records are inspected; the remote is not re-scanned.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from vaultsync.core.exclusions import ExclusionEngine
from vaultsync.sync.records import SyncRecordStore

logger = logging.getLogger(__name__)


def reconcile_selective_change(
    previous: ExclusionEngine,
    current: ExclusionEngine,
    local_sizes: Mapping[str, int | None],
    records: SyncRecordStore,
) -> list[str]:
    """Find local files whose verdict flipped from excluded to included.

    Args:
        previous: Exclusion rules before the change.
        current: Exclusion rules after the change.
        local_sizes: Every local file path mapped to its size.
        records: Record store, to skip files already tracked.

    Returns:
        Sorted paths to enqueue as creates.
    """
    before = previous.capture(dict(local_sizes))
    after = current.capture(dict(local_sizes))
    newly_included = [
        path
        for path in sorted(local_sizes)
        if before[path] is not None and after[path] is None and records.get(path) is None
    ]
    if newly_included:
        logger.info(f"Selective sync change made {len(newly_included)} files eligible")
    return newly_included
