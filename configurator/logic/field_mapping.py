"""Bidirectional collection <-> selection field <-> rule context key table.

Catalog data is keyed by collection (``light_directions``), the selection by
field (``light_direction``) and rule conditions by context key (usually the
field name). This is the one place those names are translated.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from configurator.errors import UnmappedCollection

PRODUCT_LINES = "product_lines"


@dataclass(frozen=True)
class FieldSpec:
    collection: str
    field: str
    context_key: str
    label: str = ""
    required: bool = False
    multi_select: bool = False
    product_attribute: bool = False


class FieldMapping:
    """Lookup table built once per tenant and validated at catalog load."""

    def __init__(self, specs: Iterable[FieldSpec]):
        self._specs: list[FieldSpec] = []
        self._by_collection: dict[str, FieldSpec] = {}
        self._by_field: dict[str, FieldSpec] = {}
        self._by_context_key: dict[str, FieldSpec] = {}

        for spec in specs:
            for index, key, name in (
                (self._by_collection, spec.collection, "collection"),
                (self._by_field, spec.field, "field"),
                (self._by_context_key, spec.context_key, "context key"),
            ):
                if key in index:
                    raise ValueError(f"Duplicate {name} '{key}' in field mapping")
                index[key] = spec
            self._specs.append(spec)

    @classmethod
    def from_config(cls, collections) -> "FieldMapping":
        """Build from config_loader.CollectionConfig rows."""
        return cls(
            FieldSpec(
                collection=c.collection,
                field=c.field,
                context_key=c.context_key or c.field,
                label=c.label,
                required=c.required,
                multi_select=c.multi_select,
                product_attribute=c.product_attribute,
            )
            for c in collections
        )

    def __iter__(self):
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, collection: str) -> bool:
        return collection in self._by_collection

    @property
    def collections(self) -> list[str]:
        return [s.collection for s in self._specs]

    def by_collection(self, collection: str, where: str = "") -> FieldSpec:
        spec = self._by_collection.get(collection)
        if spec is None:
            raise UnmappedCollection(collection, where)
        return spec

    def by_field(self, field: str) -> Optional[FieldSpec]:
        return self._by_field.get(field)

    def by_context_key(self, key: str) -> Optional[FieldSpec]:
        return self._by_context_key.get(key)

    def resolve(self, name: str) -> Optional[FieldSpec]:
        """Find a spec by field, context key or collection name (in that order)."""
        return (
            self._by_field.get(name)
            or self._by_context_key.get(name)
            or self._by_collection.get(name)
        )

    def field_for(self, collection: str) -> str:
        return self.by_collection(collection).field

    def collection_for(self, field: str) -> Optional[str]:
        spec = self._by_field.get(field)
        return spec.collection if spec else None

    def product_attributes(self) -> list[FieldSpec]:
        """Collections whose value is carried by products (discriminating fields)."""
        return [s for s in self._specs if s.product_attribute]

    def line_field(self) -> Optional[FieldSpec]:
        return self._by_collection.get(PRODUCT_LINES)
