"""Retention policy enforcement for backups."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from .types import RetentionSummary


@dataclass(slots=True)
class RetentionPolicy:
    max_backups: int = 50


@dataclass(slots=True)
class RetentionCandidate:
    backup_id: int
    version_number: int
    size_bytes: int


def plan_retention(
    items: Sequence[RetentionCandidate],
    policy: RetentionPolicy,
    *,
    protect: Optional[Iterable[int]] = None,
) -> RetentionSummary:
    """Decide which backups to evict so at most ``max_backups`` remain.

    The newest backups by version number are kept. Ids listed in *protect*
    are never evicted; when they fall outside the newest window they take a
    slot and the next oldest backup is removed instead.
    """

    limit = max(int(policy.max_backups), 1)
    protected = set(protect or ())
    ordered = sorted(items, key=lambda item: item.version_number, reverse=True)

    keep_ids = {item.backup_id for item in ordered if item.backup_id in protected}
    for item in ordered:
        if len(keep_ids) >= limit:
            break
        keep_ids.add(item.backup_id)

    removed: List[int] = []
    kept: List[int] = []
    freed = 0
    for item in sorted(ordered, key=lambda entry: entry.version_number):
        if item.backup_id in keep_ids:
            kept.append(item.backup_id)
        else:
            removed.append(item.backup_id)
            freed += item.size_bytes
    return RetentionSummary(removed=removed, kept=kept, freed_bytes=freed)


__all__ = ["RetentionCandidate", "RetentionPolicy", "plan_retention"]
