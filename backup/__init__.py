"""Snapshot, versioning and restore engine for the catalog dataset."""
from __future__ import annotations

from .api import BackupService
from .codec import Codec
from .errors import (
    BackupError,
    IntegrityError,
    NotFoundError,
    ProviderError,
    RestoreCancelledError,
    RestoreInProgressError,
    StorageError,
    ValidationError,
)
from .exchange import ExchangeCodec, ExportedBackup
from .logs import BackupLogger
from .restore import RestoreEngine, describe_failure
from .retention import RetentionPolicy
from .scheduler import BackupScheduler
from .snapshot import SnapshotBuilder
from .store import BackupStore
from .types import (
    Backup,
    BackupSettings,
    BackupSummary,
    RestoreOutcome,
    RestoreState,
    RetentionSummary,
    TriggerType,
)

__all__ = [
    "Backup",
    "BackupError",
    "BackupLogger",
    "BackupScheduler",
    "BackupService",
    "BackupSettings",
    "BackupStore",
    "BackupSummary",
    "Codec",
    "ExchangeCodec",
    "ExportedBackup",
    "IntegrityError",
    "NotFoundError",
    "ProviderError",
    "RestoreCancelledError",
    "RestoreEngine",
    "RestoreInProgressError",
    "RestoreOutcome",
    "RestoreState",
    "RetentionPolicy",
    "RetentionSummary",
    "SnapshotBuilder",
    "StorageError",
    "TriggerType",
    "ValidationError",
    "describe_failure",
]
