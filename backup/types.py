"""Common dataclasses shared across backup modules."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TriggerType(str, Enum):
    """Who asked for a backup."""

    AUTO = "AUTO"
    MANUAL = "MANUAL"
    SYSTEM = "SYSTEM"


class RestoreState(str, Enum):
    REQUESTED = "requested"
    SAFETY_SNAPSHOTTED = "safety_snapshotted"
    VALIDATED = "validated"
    APPLIED = "applied"
    COMMITTED = "committed"
    FAILED = "failed"


def compression_ratio(original_size: int, compressed_size: int) -> int:
    """Percentage saved by compression, rounded half up."""

    if original_size <= 0:
        return 0
    saved = int(original_size) - int(compressed_size)
    return (200 * saved + int(original_size)) // (2 * int(original_size))


@dataclass(slots=True, frozen=True)
class EncodedPayload:
    """Compressed canonical dataset plus its bookkeeping."""

    payload: bytes
    original_size: int
    compressed_size: int
    checksum: str


@dataclass(slots=True, frozen=True)
class BackupSummary:
    id: int
    version_number: int
    created_utc: str
    trigger_type: TriggerType
    description: Optional[str]
    original_size: int
    compressed_size: int
    checksum: str
    entity_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def compression_ratio(self) -> int:
        return compression_ratio(self.original_size, self.compressed_size)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "versionNumber": self.version_number,
            "createdAt": self.created_utc,
            "triggerType": self.trigger_type.value,
            "description": self.description,
            "originalSize": self.original_size,
            "compressedSize": self.compressed_size,
            "compressionRatio": self.compression_ratio,
            "checksum": self.checksum,
            "entityCounts": dict(self.entity_counts),
        }


@dataclass(slots=True, frozen=True)
class Backup:
    """A stored backup including its compressed payload."""

    summary: BackupSummary
    payload: bytes

    @property
    def id(self) -> int:
        return self.summary.id

    @property
    def version_number(self) -> int:
        return self.summary.version_number

    @property
    def checksum(self) -> str:
        return self.summary.checksum

    @property
    def entity_counts(self) -> Dict[str, int]:
        return self.summary.entity_counts


@dataclass(slots=True, frozen=True)
class BackupSettings:
    max_backups: int
    auto_backup_interval_hours: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "maxBackups": self.max_backups,
            "autoBackupIntervalHours": self.auto_backup_interval_hours,
        }


@dataclass(slots=True)
class RetentionSummary:
    removed: List[int]
    kept: List[int]
    freed_bytes: int


@dataclass(slots=True)
class RestoreOutcome:
    success: bool
    message: str
    backup_id: int
    version_number: Optional[int]
    safety_backup_id: Optional[int]
    entity_counts: Dict[str, int]
    state: RestoreState


__all__ = [
    "Backup",
    "BackupSettings",
    "BackupSummary",
    "EncodedPayload",
    "RestoreOutcome",
    "RestoreState",
    "RetentionSummary",
    "TriggerType",
    "compression_ratio",
]
