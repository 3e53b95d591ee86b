"""Catalog entity records and the dataset provider consumed by backups."""
from __future__ import annotations

from .entities import (
    ENTITY_KINDS,
    AppSetting,
    CustomFieldDefinition,
    Dataset,
    Product,
    Supplier,
    TreeNode,
)
from .provider import DatasetProvider, SQLiteDatasetProvider

__all__ = [
    "AppSetting",
    "CustomFieldDefinition",
    "Dataset",
    "DatasetProvider",
    "ENTITY_KINDS",
    "Product",
    "SQLiteDatasetProvider",
    "Supplier",
    "TreeNode",
]
