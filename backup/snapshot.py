"""Create backup snapshots of the live catalog dataset."""
from __future__ import annotations

import sqlite3
from typing import Optional

from catalog.provider import DatasetProvider

from .codec import Codec
from .errors import ProviderError, StorageError
from .logs import BackupLogger
from .store import BackupStore
from .types import Backup, TriggerType


class SnapshotBuilder:
    """Read the dataset once, encode it and register the result as a backup."""

    def __init__(
        self,
        provider: DatasetProvider,
        store: BackupStore,
        *,
        codec: Optional[Codec] = None,
        logger: BackupLogger,
    ) -> None:
        self._provider = provider
        self._store = store
        self._codec = codec or Codec()
        self._logger = logger

    def build(self, trigger_type: TriggerType, description: Optional[str] = None) -> Backup:
        trigger = TriggerType(trigger_type)
        self._logger.event(event="backup_start", phase="create", ok=True, trigger=trigger.value)
        try:
            dataset = self._provider.read_consistent()
        except Exception as exc:
            self._fail(trigger, exc)
            raise ProviderError(f"Failed to read dataset: {exc}", operation="create") from exc
        counts = dataset.counts()
        try:
            encoded = self._codec.encode(dataset)
        except (ValueError, TypeError) as exc:
            self._fail(trigger, exc)
            raise ProviderError(f"Dataset cannot be serialized: {exc}", operation="create") from exc
        try:
            backup = self._store.create(trigger, description, encoded, counts)
        except (sqlite3.Error, OSError) as exc:
            self._fail(trigger, exc)
            raise StorageError(f"Failed to store backup: {exc}", operation="create") from exc
        self._logger.event(
            event="backup_complete",
            phase="create",
            ok=True,
            id=backup.id,
            version=backup.version_number,
            original_size=encoded.original_size,
            compressed_size=encoded.compressed_size,
        )
        return backup

    def _fail(self, trigger: TriggerType, exc: BaseException) -> None:
        self._logger.event(
            event="backup_failed",
            phase="create",
            ok=False,
            trigger=trigger.value,
            error=str(exc),
        )


__all__ = ["SnapshotBuilder"]
