"""Dataset provider: consistent multi-table read and atomic replace."""
from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Protocol, Sequence, Tuple

from core.db import connect, read_transaction, transaction

from .entities import Dataset, record_type_for

LOGGER = logging.getLogger("catalogvault.catalog")

__all__ = ["DatasetProvider", "SQLiteDatasetProvider"]


class DatasetProvider(Protocol):
    """What the backup engine needs from the catalog storage layer."""

    def read_consistent(self) -> Dataset:
        """Return every entity kind as one logically consistent view."""

    def replace_all(self, dataset: Dataset) -> None:
        """Replace every entity kind at once, or change nothing."""


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tree_nodes (
  id INTEGER PRIMARY KEY,
  node_id TEXT NOT NULL UNIQUE,
  name TEXT NOT NULL,
  type TEXT NOT NULL,
  parent_id TEXT,
  description TEXT,
  metadata TEXT,
  is_active INTEGER NOT NULL DEFAULT 1,
  sort_order INTEGER NOT NULL DEFAULT 0,
  created_at TEXT,
  updated_at TEXT
);
CREATE TABLE IF NOT EXISTS suppliers (
  id INTEGER PRIMARY KEY,
  supplier_id TEXT NOT NULL UNIQUE,
  name TEXT NOT NULL,
  country TEXT,
  contact_name TEXT,
  contact_email TEXT,
  contact_phone TEXT,
  address TEXT,
  website TEXT,
  notes TEXT,
  is_active INTEGER NOT NULL DEFAULT 1,
  created_at TEXT,
  updated_at TEXT
);
CREATE TABLE IF NOT EXISTS products (
  id INTEGER PRIMARY KEY,
  product_id TEXT NOT NULL UNIQUE,
  name TEXT NOT NULL,
  supplier TEXT,
  supplier_id TEXT,
  node_id TEXT NOT NULL,
  manufacturer TEXT,
  manufacturing_location TEXT,
  description TEXT,
  image_url TEXT,
  price REAL NOT NULL DEFAULT 0,
  currency TEXT NOT NULL DEFAULT 'USD',
  unit TEXT,
  moq INTEGER NOT NULL DEFAULT 1,
  lead_time INTEGER NOT NULL DEFAULT 0,
  packaging_type TEXT,
  hs_code TEXT,
  certifications TEXT NOT NULL DEFAULT '[]',
  shelf_life TEXT,
  storage_conditions TEXT,
  custom_fields TEXT NOT NULL DEFAULT '[]',
  technical_specs TEXT NOT NULL DEFAULT '[]',
  category TEXT,
  sector TEXT,
  created_by TEXT,
  date_added TEXT,
  last_updated TEXT,
  history TEXT NOT NULL DEFAULT '[]'
);
CREATE TABLE IF NOT EXISTS custom_field_definitions (
  id INTEGER PRIMARY KEY,
  field_id TEXT NOT NULL UNIQUE,
  label TEXT NOT NULL,
  type TEXT NOT NULL,
  options TEXT,
  node_id TEXT,
  is_global INTEGER NOT NULL DEFAULT 1,
  created_at TEXT
);
CREATE TABLE IF NOT EXISTS app_settings (
  id INTEGER PRIMARY KEY,
  key TEXT NOT NULL UNIQUE,
  value TEXT NOT NULL,
  updated_at TEXT
);
"""

# (kind, table, json columns, bool columns); insert order puts parents first.
_TABLES: Tuple[Tuple[str, str, Tuple[str, ...], Tuple[str, ...]], ...] = (
    ("treeNodes", "tree_nodes", ("metadata",), ("is_active",)),
    ("suppliers", "suppliers", (), ("is_active",)),
    (
        "products",
        "products",
        ("certifications", "custom_fields", "technical_specs", "history"),
        (),
    ),
    ("customFieldDefinitions", "custom_field_definitions", ("options",), ("is_global",)),
    ("appSettings", "app_settings", ("value",), ()),
)
_NULLABLE_JSON = frozenset({"metadata", "options"})


def _decode_row(row: sqlite3.Row, json_columns: Sequence[str], bool_columns: Sequence[str]) -> Dict[str, Any]:
    payload = {key: row[key] for key in row.keys()}
    for column in json_columns:
        raw = payload.get(column)
        payload[column] = json.loads(raw) if raw is not None else None
    for column in bool_columns:
        payload[column] = bool(payload.get(column))
    return payload


def _encode_row(record: Any, json_columns: Sequence[str], bool_columns: Sequence[str]) -> Dict[str, Any]:
    payload = record.to_dict()
    for column in json_columns:
        value = payload.get(column)
        if value is None and column in _NULLABLE_JSON:
            payload[column] = None
        else:
            payload[column] = json.dumps(value, sort_keys=True)
    for column in bool_columns:
        payload[column] = 1 if payload.get(column) else 0
    return payload


class SQLiteDatasetProvider:
    """Dataset provider backed by the catalog SQLite database."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(_SCHEMA_SQL)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    def read_consistent(self) -> Dataset:
        conn = self._connect()
        try:
            collected: Dict[str, List[Dict[str, Any]]] = {}
            with read_transaction(conn):
                for kind, table, json_columns, bool_columns in _TABLES:
                    rows = conn.execute(f"SELECT * FROM {table} ORDER BY id").fetchall()
                    collected[kind] = [_decode_row(row, json_columns, bool_columns) for row in rows]
        finally:
            conn.close()
        return Dataset.from_dict(collected)

    def replace_all(self, dataset: Dataset) -> None:
        conn = self._connect()
        try:
            with transaction(conn):
                for _, table, _, _ in reversed(_TABLES):
                    conn.execute(f"DELETE FROM {table}")
                for kind, table, json_columns, bool_columns in _TABLES:
                    rows = [_encode_row(record, json_columns, bool_columns) for record in dataset.records(kind)]
                    if not rows:
                        continue
                    columns = list(rows[0].keys())
                    placeholders = ", ".join(f":{column}" for column in columns)
                    conn.executemany(
                        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                        rows,
                    )
        finally:
            conn.close()
        LOGGER.info("dataset replaced %s", dataset.counts())

    # ------------------------------------------------------------------
    def insert(self, record: Any) -> None:
        """Insert one entity record; used for seeding and tests."""

        for kind, table, json_columns, bool_columns in _TABLES:
            if isinstance(record, record_type_for(kind)):
                row = _encode_row(record, json_columns, bool_columns)
                columns = list(row.keys())
                conn = self._connect()
                try:
                    with transaction(conn):
                        conn.execute(
                            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                            [row[column] for column in columns],
                        )
                finally:
                    conn.close()
                return
        raise TypeError(f"unsupported record type: {type(record).__name__}")
