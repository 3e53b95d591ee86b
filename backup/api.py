"""Public API for backup operations."""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from catalog.provider import DatasetProvider, SQLiteDatasetProvider
from core.paths import (
    ensure_working_dir_structure,
    get_backups_db_path,
    get_catalog_db_path,
    resolve_working_dir,
)
from core.settings import backup_section

from .codec import Codec
from .errors import BackupError
from .exchange import ExchangeCodec, ExportedBackup
from .logs import BackupLogger
from .restore import RestoreEngine
from .scheduler import BackupScheduler
from .snapshot import SnapshotBuilder
from .store import BackupStore
from .types import (
    Backup,
    BackupSettings,
    BackupSummary,
    RestoreOutcome,
    TriggerType,
)


class BackupService:
    """Coordinate snapshot, restore, exchange, retention and scheduling workflows."""

    def __init__(
        self,
        *,
        working_dir: Optional[Path] = None,
        settings: Optional[Dict[str, Any]] = None,
        provider: Optional[DatasetProvider] = None,
        hour_seconds: float = 3600.0,
    ) -> None:
        self._working_dir = Path(working_dir or resolve_working_dir())
        ensure_working_dir_structure(self._working_dir)
        self._settings = backup_section(dict(settings or {}))
        self._logger = BackupLogger(self._working_dir)

        if provider is None:
            sqlite_provider = SQLiteDatasetProvider(get_catalog_db_path(self._working_dir))
            sqlite_provider.ensure_schema()
            provider = sqlite_provider
        self._provider = provider

        self._codec = Codec(compression_level=int(self._settings.get("compression_level", 9)))
        self._store = BackupStore(
            get_backups_db_path(self._working_dir),
            logger=self._logger,
            default_settings=BackupSettings(
                max_backups=int(self._settings.get("max_backups") or 50),
                auto_backup_interval_hours=int(self._settings.get("auto_backup_interval_hours") or 6),
            ),
        )
        self._builder = SnapshotBuilder(self._provider, self._store, codec=self._codec, logger=self._logger)
        self._restore = RestoreEngine(
            self._provider,
            self._store,
            self._builder,
            codec=self._codec,
            logger=self._logger,
        )
        self._scheduler = BackupScheduler(
            self._builder,
            self._store,
            logger=self._logger,
            restore_engine=self._restore,
            hour_seconds=hour_seconds,
        )
        self._exchange = ExchangeCodec(self._store, codec=self._codec, logger=self._logger)

    # ------------------------------------------------------------------
    @property
    def working_dir(self) -> Path:
        return self._working_dir

    @property
    def provider(self) -> DatasetProvider:
        return self._provider

    @property
    def scheduler(self) -> BackupScheduler:
        return self._scheduler

    @property
    def store(self) -> BackupStore:
        return self._store

    @property
    def scheduler_enabled(self) -> bool:
        return bool(self._settings.get("scheduler_enabled", True))

    @property
    def max_import_bytes(self) -> int:
        try:
            megabytes = float(self._settings.get("max_import_mb") or 50)
        except (TypeError, ValueError):
            megabytes = 50.0
        return int(megabytes * 1024 * 1024)

    @property
    def restore_in_progress(self) -> bool:
        return self._restore.in_progress

    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.scheduler_enabled:
            self._scheduler.start()

    def stop(self) -> None:
        self._scheduler.stop()

    def close(self) -> None:
        self._scheduler.close()

    # ------------------------------------------------------------------
    def list_backups(self) -> List[BackupSummary]:
        return self._store.list()

    def create_backup(self, description: Optional[str] = None) -> BackupSummary:
        text = (description or "").strip() or None
        return self._builder.build(TriggerType.MANUAL, text).summary

    def trigger_auto(self, reason: str) -> BackupSummary:
        return self._scheduler.trigger_now(reason).summary

    def preview(self, backup_id: int) -> Dict[str, int]:
        return self._restore.preview(backup_id)

    def restore(self, backup_id: int, *, cancel_event: Optional[threading.Event] = None) -> RestoreOutcome:
        return self._restore.restore(backup_id, cancel_event=cancel_event)

    def export_backup(self, backup_id: int) -> ExportedBackup:
        return self._exchange.export(backup_id)

    def import_backup(self, data: bytes) -> Backup:
        return self._exchange.import_container(data)

    def delete_backup(self, backup_id: int) -> None:
        self._store.delete(backup_id)

    # ------------------------------------------------------------------
    def get_settings(self) -> BackupSettings:
        return self._store.get_settings()

    def update_settings(
        self,
        *,
        max_backups: Optional[int] = None,
        auto_backup_interval_hours: Optional[int] = None,
    ) -> BackupSettings:
        return self._store.update_settings(
            max_backups=max_backups,
            auto_backup_interval_hours=auto_backup_interval_hours,
        )


__all__ = [
    "BackupError",
    "BackupService",
]
