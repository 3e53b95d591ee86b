"""Typed records for every catalog entity kind captured by a backup."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Type, TypeVar

__all__ = [
    "AppSetting",
    "CustomFieldDefinition",
    "Dataset",
    "ENTITY_KINDS",
    "Product",
    "Supplier",
    "TreeNode",
    "record_type_for",
]

_R = TypeVar("_R", bound="_Record")


class _Record:
    """Mixin giving dataclass records a tolerant dict round trip."""

    __slots__ = ()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_dict(cls: Type[_R], payload: Mapping[str, Any]) -> _R:
        known = {item.name for item in fields(cls)}  # type: ignore[arg-type]
        return cls(**{key: value for key, value in payload.items() if key in known})


@dataclass(slots=True)
class Product(_Record):
    id: int
    product_id: str
    name: str
    node_id: str
    supplier: Optional[str] = None
    supplier_id: Optional[str] = None
    manufacturer: Optional[str] = None
    manufacturing_location: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    price: float = 0.0
    currency: str = "USD"
    unit: Optional[str] = None
    moq: int = 1
    lead_time: int = 0
    packaging_type: Optional[str] = None
    hs_code: Optional[str] = None
    certifications: List[Any] = field(default_factory=list)
    shelf_life: Optional[str] = None
    storage_conditions: Optional[str] = None
    custom_fields: List[Any] = field(default_factory=list)
    technical_specs: List[Any] = field(default_factory=list)
    category: Optional[str] = None
    sector: Optional[str] = None
    created_by: Optional[str] = None
    date_added: Optional[str] = None
    last_updated: Optional[str] = None
    history: List[Any] = field(default_factory=list)


@dataclass(slots=True)
class Supplier(_Record):
    id: int
    supplier_id: str
    name: str
    country: Optional[str] = None
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(slots=True)
class TreeNode(_Record):
    id: int
    node_id: str
    name: str
    type: str
    parent_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    is_active: bool = True
    sort_order: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(slots=True)
class CustomFieldDefinition(_Record):
    id: int
    field_id: str
    label: str
    type: str
    options: Any = None
    node_id: Optional[str] = None
    is_global: bool = True
    created_at: Optional[str] = None


@dataclass(slots=True)
class AppSetting(_Record):
    id: int
    key: str
    value: Any
    updated_at: Optional[str] = None


# Canonical order: serialization, entity counts and previews all follow it.
ENTITY_KINDS: Tuple[str, ...] = (
    "products",
    "suppliers",
    "treeNodes",
    "customFieldDefinitions",
    "appSettings",
)

_KIND_TYPES: Dict[str, Type[_Record]] = {
    "products": Product,
    "suppliers": Supplier,
    "treeNodes": TreeNode,
    "customFieldDefinitions": CustomFieldDefinition,
    "appSettings": AppSetting,
}

_KIND_ATTRS: Dict[str, str] = {
    "products": "products",
    "suppliers": "suppliers",
    "treeNodes": "tree_nodes",
    "customFieldDefinitions": "custom_field_definitions",
    "appSettings": "app_settings",
}


def record_type_for(kind: str) -> Type[_Record]:
    try:
        return _KIND_TYPES[kind]
    except KeyError as exc:
        raise KeyError(f"unknown entity kind: {kind}") from exc


@dataclass(slots=True)
class Dataset:
    """Every entity table of the catalog at one point in time."""

    products: Tuple[Product, ...] = ()
    suppliers: Tuple[Supplier, ...] = ()
    tree_nodes: Tuple[TreeNode, ...] = ()
    custom_field_definitions: Tuple[CustomFieldDefinition, ...] = ()
    app_settings: Tuple[AppSetting, ...] = ()

    def records(self, kind: str) -> Tuple[Any, ...]:
        if kind not in _KIND_ATTRS:
            raise KeyError(f"unknown entity kind: {kind}")
        return getattr(self, _KIND_ATTRS[kind])

    def items(self) -> Iterator[Tuple[str, Tuple[Any, ...]]]:
        for kind in ENTITY_KINDS:
            yield kind, self.records(kind)

    def counts(self) -> Dict[str, int]:
        return {kind: len(rows) for kind, rows in self.items()}

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {kind: [row.to_dict() for row in rows] for kind, rows in self.items()}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Dataset":
        values: Dict[str, Tuple[Any, ...]] = {}
        for kind in ENTITY_KINDS:
            rows = payload.get(kind) or []
            if not isinstance(rows, list):
                raise ValueError(f"entity kind {kind} must be a list")
            record_type = record_type_for(kind)
            values[_KIND_ATTRS[kind]] = tuple(record_type.from_dict(row) for row in rows)
        return cls(**values)
