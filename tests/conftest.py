from __future__ import annotations

from pathlib import Path

import pytest

from backup.codec import Codec
from backup.logs import BackupLogger
from backup.restore import RestoreEngine
from backup.snapshot import SnapshotBuilder
from backup.store import BackupStore
from catalog.entities import AppSetting, CustomFieldDefinition, Dataset, Product, Supplier, TreeNode
from catalog.provider import SQLiteDatasetProvider
from core.paths import ensure_working_dir_structure, get_backups_db_path, get_catalog_db_path


def make_dataset() -> Dataset:
    return Dataset(
        products=(
            Product(
                id=1,
                product_id="P-0001",
                name="Olive oil 1L",
                node_id="N-food",
                supplier="Acme Foods",
                supplier_id="S-001",
                price=12.5,
                certifications=["ISO 22000"],
                custom_fields=[{"fieldId": "F-origin", "value": "Spain"}],
            ),
            Product(id=2, product_id="P-0002", name="Sea salt", node_id="N-food", price=3.25),
            Product(id=3, product_id="P-0003", name="Steel bolt", node_id="N-hardware", price=0.1),
        ),
        suppliers=(Supplier(id=1, supplier_id="S-001", name="Acme Foods", country="ES"),),
        tree_nodes=(
            TreeNode(id=1, node_id="N-food", name="Food", type="category", metadata={"icon": "leaf"}),
            TreeNode(id=2, node_id="N-hardware", name="Hardware", type="category", sort_order=1),
        ),
        custom_field_definitions=(
            CustomFieldDefinition(id=1, field_id="F-origin", label="Origin", type="text"),
        ),
        app_settings=(
            AppSetting(id=1, key="currency", value="EUR"),
            AppSetting(id=2, key="ui", value={"theme": "dark"}),
        ),
    )


class StubLogger:
    def __init__(self) -> None:
        self.events = []

    def info(self, event: str, **extra):  # pragma: no cover - recorder
        self.events.append(("info", event, extra))

    def warning(self, event: str, **extra):  # pragma: no cover - recorder
        self.events.append(("warning", event, extra))

    def error(self, event: str, **extra):  # pragma: no cover - recorder
        self.events.append(("error", event, extra))

    def event(self, *, event: str, phase: str, ok: bool, **extra):  # pragma: no cover - recorder
        self.events.append(("event", event, phase, ok, extra))

    def names(self):
        return [entry[1] for entry in self.events]


@pytest.fixture
def working_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    ensure_working_dir_structure(path)
    return path


@pytest.fixture
def logger(working_dir: Path) -> BackupLogger:
    return BackupLogger(working_dir)


@pytest.fixture
def provider(working_dir: Path) -> SQLiteDatasetProvider:
    provider = SQLiteDatasetProvider(get_catalog_db_path(working_dir))
    provider.ensure_schema()
    provider.replace_all(make_dataset())
    return provider


@pytest.fixture
def store(working_dir: Path, logger: BackupLogger) -> BackupStore:
    return BackupStore(get_backups_db_path(working_dir), logger=logger)


@pytest.fixture
def codec() -> Codec:
    return Codec()


@pytest.fixture
def builder(provider, store, codec, logger) -> SnapshotBuilder:
    return SnapshotBuilder(provider, store, codec=codec, logger=logger)


@pytest.fixture
def engine(provider, store, builder, codec, logger) -> RestoreEngine:
    return RestoreEngine(provider, store, builder, codec=codec, logger=logger)
