"""Persistent backup records, version sequence, settings and retention."""
from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from core.db import connect, transaction

from .errors import NotFoundError, ValidationError
from .logs import BackupLogger
from .retention import RetentionCandidate, RetentionPolicy, plan_retention
from .types import (
    Backup,
    BackupSettings,
    BackupSummary,
    EncodedPayload,
    RetentionSummary,
    TriggerType,
)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS backups (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  version_number INTEGER NOT NULL UNIQUE,
  created_utc TEXT NOT NULL,
  trigger_type TEXT NOT NULL,
  description TEXT,
  payload BLOB NOT NULL,
  original_size INTEGER NOT NULL,
  compressed_size INTEGER NOT NULL,
  checksum TEXT NOT NULL,
  entity_counts_json TEXT NOT NULL DEFAULT '{}'
);
CREATE TABLE IF NOT EXISTS backup_sequence (
  name TEXT PRIMARY KEY,
  last_value INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS backup_settings (
  key TEXT PRIMARY KEY,
  value_json TEXT NOT NULL,
  updated_utc TEXT NOT NULL
);
INSERT OR IGNORE INTO backup_sequence(name, last_value) VALUES ('version', 0);
"""

_SUMMARY_COLUMNS = (
    "id, version_number, created_utc, trigger_type, description, "
    "original_size, compressed_size, checksum, entity_counts_json"
)
_SETTINGS_KEY = "backup_settings"

SettingsListener = Callable[[BackupSettings], None]

DEFAULT_BACKUP_SETTINGS = BackupSettings(max_backups=50, auto_backup_interval_hours=6)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_summary(row: sqlite3.Row) -> BackupSummary:
    try:
        counts = json.loads(row["entity_counts_json"] or "{}")
    except json.JSONDecodeError:
        counts = {}
    return BackupSummary(
        id=int(row["id"]),
        version_number=int(row["version_number"]),
        created_utc=str(row["created_utc"]),
        trigger_type=TriggerType(row["trigger_type"]),
        description=row["description"],
        original_size=int(row["original_size"]),
        compressed_size=int(row["compressed_size"]),
        checksum=str(row["checksum"]),
        entity_counts={str(key): int(value) for key, value in counts.items()},
    )


def _validate_positive(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", operation="settings")
    if value < 1:
        raise ValidationError(f"{name} must be >= 1 (got {value})", operation="settings")
    return value


class BackupStore:
    """SQLite-backed store for backup records.

    Every mutation (version assignment, insert, retention, delete, settings)
    runs under one writer lock so version numbers stay strictly increasing
    and retention is applied before ``create`` returns. Reads open their own
    connection and never take the lock.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        logger: BackupLogger,
        default_settings: Optional[BackupSettings] = None,
    ) -> None:
        self._db_path = Path(db_path)
        self._logger = logger
        self._defaults = default_settings or DEFAULT_BACKUP_SETTINGS
        self._write_lock = threading.Lock()
        self._listeners: List[SettingsListener] = []
        self._ensure_schema()

    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        conn = connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(_SCHEMA_SQL)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    def create(
        self,
        trigger_type: TriggerType,
        description: Optional[str],
        encoded: EncodedPayload,
        entity_counts: Mapping[str, int],
    ) -> Backup:
        trigger = TriggerType(trigger_type)
        text = description if description else f"{trigger.value} backup"
        counts = {str(key): int(value) for key, value in entity_counts.items()}
        with self._write_lock:
            created = _utcnow()
            conn = self._connect()
            try:
                with transaction(conn):
                    conn.execute("UPDATE backup_sequence SET last_value = last_value + 1 WHERE name = 'version'")
                    version = int(
                        conn.execute("SELECT last_value FROM backup_sequence WHERE name = 'version'").fetchone()[0]
                    )
                    cursor = conn.execute(
                        """
                        INSERT INTO backups(
                            version_number, created_utc, trigger_type, description, payload,
                            original_size, compressed_size, checksum, entity_counts_json
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            version,
                            created,
                            trigger.value,
                            text,
                            sqlite3.Binary(encoded.payload),
                            int(encoded.original_size),
                            int(encoded.compressed_size),
                            encoded.checksum,
                            json.dumps(counts, sort_keys=True),
                        ),
                    )
                    backup_id = int(cursor.lastrowid)
                    settings = self._load_settings(conn)
                    retention = self._retain(conn, settings.max_backups, protect=(backup_id,))
            finally:
                conn.close()
        summary = BackupSummary(
            id=backup_id,
            version_number=version,
            created_utc=created,
            trigger_type=trigger,
            description=text,
            original_size=int(encoded.original_size),
            compressed_size=int(encoded.compressed_size),
            checksum=encoded.checksum,
            entity_counts=counts,
        )
        self._logger.event(
            event="backup_created",
            phase="create",
            ok=True,
            id=backup_id,
            version=version,
            trigger=trigger.value,
            size=summary.compressed_size,
            evicted=retention.removed,
        )
        return Backup(summary=summary, payload=bytes(encoded.payload))

    # ------------------------------------------------------------------
    def list(self) -> List[BackupSummary]:
        conn = self._connect()
        try:
            rows = conn.execute(f"SELECT {_SUMMARY_COLUMNS} FROM backups ORDER BY version_number ASC").fetchall()
        finally:
            conn.close()
        return [_row_to_summary(row) for row in rows]

    def get_summary(self, backup_id: int) -> BackupSummary:
        conn = self._connect()
        try:
            row = conn.execute(f"SELECT {_SUMMARY_COLUMNS} FROM backups WHERE id = ?", (int(backup_id),)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError(f"Backup {backup_id} not found")
        return _row_to_summary(row)

    def get(self, backup_id: int) -> Backup:
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT {_SUMMARY_COLUMNS}, payload FROM backups WHERE id = ?", (int(backup_id),)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError(f"Backup {backup_id} not found")
        return Backup(summary=_row_to_summary(row), payload=bytes(row["payload"]))

    def count(self) -> int:
        conn = self._connect()
        try:
            return int(conn.execute("SELECT COUNT(*) FROM backups").fetchone()[0])
        finally:
            conn.close()

    def delete(self, backup_id: int) -> None:
        with self._write_lock:
            conn = self._connect()
            try:
                with transaction(conn):
                    cursor = conn.execute("DELETE FROM backups WHERE id = ?", (int(backup_id),))
                    deleted = cursor.rowcount
            finally:
                conn.close()
        if not deleted:
            raise NotFoundError(f"Backup {backup_id} not found")
        self._logger.event(event="backup_deleted", phase="delete", ok=True, id=int(backup_id))

    # ------------------------------------------------------------------
    def get_settings(self) -> BackupSettings:
        conn = self._connect()
        try:
            row = conn.execute("SELECT value_json FROM backup_settings WHERE key = ?", (_SETTINGS_KEY,)).fetchone()
        finally:
            conn.close()
        if row is not None:
            return self._parse_settings(row["value_json"])
        with self._write_lock:
            conn = self._connect()
            try:
                with transaction(conn):
                    return self._load_settings(conn)
            finally:
                conn.close()

    def update_settings(
        self,
        *,
        max_backups: Optional[int] = None,
        auto_backup_interval_hours: Optional[int] = None,
    ) -> BackupSettings:
        if max_backups is not None:
            _validate_positive("maxBackups", max_backups)
        if auto_backup_interval_hours is not None:
            _validate_positive("autoBackupIntervalHours", auto_backup_interval_hours)
        with self._write_lock:
            conn = self._connect()
            try:
                with transaction(conn):
                    current = self._load_settings(conn)
                    updated = BackupSettings(
                        max_backups=current.max_backups if max_backups is None else max_backups,
                        auto_backup_interval_hours=(
                            current.auto_backup_interval_hours
                            if auto_backup_interval_hours is None
                            else auto_backup_interval_hours
                        ),
                    )
                    self._save_settings(conn, updated)
                    if updated.max_backups < current.max_backups:
                        self._retain(conn, updated.max_backups)
            finally:
                conn.close()
        self._logger.event(event="settings_updated", phase="settings", ok=True, **updated.to_dict())
        self._notify(updated)
        return updated

    def add_settings_listener(self, listener: SettingsListener) -> None:
        self._listeners.append(listener)

    def remove_settings_listener(self, listener: SettingsListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    def _parse_settings(self, raw: str) -> BackupSettings:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            data = {}
        return BackupSettings(
            max_backups=int(data.get("maxBackups") or self._defaults.max_backups),
            auto_backup_interval_hours=int(
                data.get("autoBackupIntervalHours") or self._defaults.auto_backup_interval_hours
            ),
        )

    def _load_settings(self, conn: sqlite3.Connection) -> BackupSettings:
        row = conn.execute("SELECT value_json FROM backup_settings WHERE key = ?", (_SETTINGS_KEY,)).fetchone()
        if row is not None:
            return self._parse_settings(row["value_json"])
        self._save_settings(conn, self._defaults)
        return self._defaults

    def _save_settings(self, conn: sqlite3.Connection, settings: BackupSettings) -> None:
        conn.execute(
            """
            INSERT INTO backup_settings(key, value_json, updated_utc) VALUES(?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json, updated_utc=excluded.updated_utc
            """,
            (_SETTINGS_KEY, json.dumps(settings.to_dict(), sort_keys=True), _utcnow()),
        )

    def _retain(
        self,
        conn: sqlite3.Connection,
        max_backups: int,
        *,
        protect: tuple[int, ...] = (),
    ) -> RetentionSummary:
        rows = conn.execute("SELECT id, version_number, compressed_size FROM backups").fetchall()
        candidates = [
            RetentionCandidate(
                backup_id=int(row["id"]),
                version_number=int(row["version_number"]),
                size_bytes=int(row["compressed_size"]),
            )
            for row in rows
        ]
        summary = plan_retention(candidates, RetentionPolicy(max_backups=max_backups), protect=protect)
        if summary.removed:
            conn.executemany("DELETE FROM backups WHERE id = ?", ((backup_id,) for backup_id in summary.removed))
            for backup_id in summary.removed:
                self._logger.warning("backup_removed", id=backup_id, reason="retention")
            self._logger.event(
                event="retention_applied",
                phase="retention",
                ok=True,
                removed=len(summary.removed),
                kept=len(summary.kept),
                freed_bytes=summary.freed_bytes,
            )
        return summary

    def _notify(self, settings: BackupSettings) -> None:
        for listener in list(self._listeners):
            try:
                listener(settings)
            except Exception as exc:
                self._logger.error("settings_listener_failed", error=str(exc))


__all__ = ["BackupStore", "DEFAULT_BACKUP_SETTINGS"]
