"""Portable container format for exporting and importing backups.

Layout of a version 1 container (big-endian)::

    offset  size  field
    0       4     magic  b"CVBK"
    4       2     format version (1)
    6       2     flags (0)
    8       4     metadata length N
    12      32    SHA-256 of the uncompressed dataset stream
    44      8     original (uncompressed) size
    52      8     compressed payload size M
    60      8     version number at the exporting instance
    68      N     UTF-8 JSON metadata
    68+N    M     compressed payload, exactly as stored

The container never depends on the storage layout; it carries the stored
payload untouched so its checksum can be verified on the receiving side.
"""
from __future__ import annotations

import json
import sqlite3
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .codec import Codec
from .errors import IntegrityError, StorageError
from .logs import BackupLogger
from .store import BackupStore
from .types import Backup, EncodedPayload, TriggerType

MAGIC = b"CVBK"
FORMAT_VERSION = 1
SUPPORTED_VERSIONS = frozenset({FORMAT_VERSION})
_HEADER = struct.Struct(">4sHHI32sQQQ")
HEADER_SIZE = _HEADER.size
_MAX_METADATA_BYTES = 1024 * 1024


@dataclass(slots=True)
class ContainerHeader:
    format_version: int
    flags: int
    checksum: str
    original_size: int
    compressed_size: int
    version_number: int
    metadata: Dict[str, Any]


@dataclass(slots=True)
class ExportedBackup:
    filename: str
    data: bytes
    version_number: int


def export_filename(version_number: int, *, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    return f"backup_v{int(version_number)}_{stamp}.backup"


def pack_container(backup: Backup) -> bytes:
    summary = backup.summary
    metadata = {
        "versionNumber": summary.version_number,
        "createdAt": summary.created_utc,
        "triggerType": summary.trigger_type.value,
        "description": summary.description,
        "entityCounts": dict(summary.entity_counts),
    }
    meta_bytes = json.dumps(metadata, sort_keys=True, separators=(",", ":")).encode("utf-8")
    header = _HEADER.pack(
        MAGIC,
        FORMAT_VERSION,
        0,
        len(meta_bytes),
        bytes.fromhex(summary.checksum),
        int(summary.original_size),
        len(backup.payload),
        int(summary.version_number),
    )
    return header + meta_bytes + backup.payload


def unpack_container(data: bytes) -> tuple[ContainerHeader, bytes]:
    """Parse and structurally validate *data*; the payload is not decompressed."""

    blob = bytes(data)
    if len(blob) < HEADER_SIZE:
        raise IntegrityError("container is truncated (header incomplete)", operation="import")
    magic, version, flags, meta_len, digest, original_size, compressed_size, version_number = _HEADER.unpack_from(blob)
    if magic != MAGIC:
        raise IntegrityError("unknown container format (bad magic)", operation="import")
    if version not in SUPPORTED_VERSIONS:
        raise IntegrityError(
            f"unsupported container format version {version} (supported: {sorted(SUPPORTED_VERSIONS)})",
            operation="import",
        )
    if flags != 0:
        raise IntegrityError(f"unsupported container flags {flags:#06x}", operation="import")
    if meta_len > _MAX_METADATA_BYTES:
        raise IntegrityError("container metadata block is too large", operation="import")
    expected_total = HEADER_SIZE + meta_len + compressed_size
    if len(blob) < expected_total:
        raise IntegrityError("container is truncated (payload incomplete)", operation="import")
    if len(blob) > expected_total:
        raise IntegrityError("container has trailing bytes", operation="import")
    meta_raw = blob[HEADER_SIZE : HEADER_SIZE + meta_len]
    try:
        metadata = json.loads(meta_raw.decode("utf-8")) if meta_raw else {}
    except (UnicodeDecodeError, ValueError) as exc:
        raise IntegrityError(f"container metadata is unreadable: {exc}", operation="import") from exc
    if not isinstance(metadata, dict):
        raise IntegrityError("container metadata must be an object", operation="import")
    header = ContainerHeader(
        format_version=version,
        flags=flags,
        checksum=digest.hex(),
        original_size=original_size,
        compressed_size=compressed_size,
        version_number=version_number,
        metadata=metadata,
    )
    return header, blob[HEADER_SIZE + meta_len :]


class ExchangeCodec:
    """Export stored backups to containers and register imported ones."""

    def __init__(self, store: BackupStore, *, codec: Optional[Codec] = None, logger: BackupLogger) -> None:
        self._store = store
        self._codec = codec or Codec()
        self._logger = logger

    def export(self, backup_id: int) -> ExportedBackup:
        backup = self._store.get(backup_id)
        # Never hand out a payload that no longer matches its checksum.
        self._codec.verify_payload(backup.payload, backup.checksum, operation="export")
        data = pack_container(backup)
        self._logger.event(
            event="backup_exported",
            phase="export",
            ok=True,
            id=backup.id,
            version=backup.version_number,
            size=len(data),
        )
        return ExportedBackup(
            filename=export_filename(backup.version_number),
            data=data,
            version_number=backup.version_number,
        )

    def import_container(self, data: bytes) -> Backup:
        try:
            header, payload = unpack_container(data)
            raw = self._codec.verify_payload(
                payload, header.checksum, operation="import", max_output=header.original_size
            )
            if len(raw) != header.original_size:
                raise IntegrityError(
                    f"container declares {header.original_size} bytes but payload holds {len(raw)}",
                    operation="import",
                )
            dataset = self._codec.parse(raw, operation="import")
        except IntegrityError as exc:
            self._logger.event(event="backup_import_failed", phase="import", ok=False, error=str(exc))
            raise
        encoded = EncodedPayload(
            payload=payload,
            original_size=len(raw),
            compressed_size=len(payload),
            checksum=header.checksum,
        )
        source_version = header.metadata.get("versionNumber", header.version_number)
        try:
            backup = self._store.create(
                TriggerType.MANUAL,
                f"Imported backup (original v{source_version})",
                encoded,
                dataset.counts(),
            )
        except (sqlite3.Error, OSError) as exc:
            self._logger.event(event="backup_import_failed", phase="import", ok=False, error=str(exc))
            raise StorageError(f"Failed to store imported backup: {exc}", operation="import") from exc
        self._logger.event(
            event="backup_imported",
            phase="import",
            ok=True,
            id=backup.id,
            version=backup.version_number,
            source_version=source_version,
        )
        return backup


__all__ = [
    "ContainerHeader",
    "ExchangeCodec",
    "ExportedBackup",
    "FORMAT_VERSION",
    "HEADER_SIZE",
    "MAGIC",
    "export_filename",
    "pack_container",
    "unpack_container",
]
