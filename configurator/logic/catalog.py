"""
Option Catalog: immutable snapshots of the product catalog.

A CatalogSnapshot is built once from a catalog source (REST API or YAML
file) and then shared, never mutated, by every filtering / rules / SKU
computation. Refreshing the catalog produces a new snapshot; CatalogStore
keeps the last good one when a refresh fails or times out.

Ids are compared as strings everywhere (selection values are stringified
option ids), while Option.id keeps the value the source delivered.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from configurator.errors import (
    CatalogUnavailable,
    ConfiguratorError,
    Diagnostic,
    DiagnosticKind,
    UnknownProductLine,
)
from configurator.logic.field_mapping import PRODUCT_LINES, FieldMapping

logger = logging.getLogger(__name__)


# =============================================================================
# CATALOG RECORDS
# =============================================================================

@dataclass(frozen=True)
class Option:
    """One selectable value of a collection."""
    id: Any
    name: str
    short_code: str
    collection: str = ""
    sort: Optional[float] = None
    active: bool = True

    @property
    def key(self) -> str:
        return str(self.id)


@dataclass(frozen=True)
class ProductLine:
    id: Any
    name: str
    sku_code: Optional[str] = None
    default_options: tuple = ()  # ((collection, item_id), ...)
    sort: Optional[float] = None


@dataclass(frozen=True)
class Product:
    id: Any
    name: str
    product_line: str
    sku_code: str = ""
    attributes: dict = field(default_factory=dict)  # collection -> option id string
    active: bool = True

    def matches(self, selected: dict[str, str]) -> bool:
        """True if the product carries every selected collection value."""
        return all(self.attributes.get(c) == v for c, v in selected.items())


@dataclass(frozen=True)
class Override:
    """Product-scoped replacement row: for `collection`, the product offers `item`."""
    product_id: str
    collection: str
    item: str


@dataclass(frozen=True)
class Rule:
    id: Any
    name: str = ""
    priority: float = 0
    active: bool = True
    if_this: Any = None
    than_that: Any = None
    then_action: Optional[str] = None
    then_field: Optional[str] = None
    then_value: Any = None

    @classmethod
    def from_record(cls, rec: dict) -> "Rule":
        than_that = rec.get("than_that")
        if than_that is None:
            than_that = rec.get("then_that")
        return cls(
            id=rec.get("id"),
            name=rec.get("name") or "",
            priority=rec.get("priority") or 0,
            active=rec.get("active", True),
            if_this=rec.get("if_this"),
            than_that=than_that,
            then_action=rec.get("then_action"),
            then_field=rec.get("then_field"),
            then_value=rec.get("then_value"),
        )


@dataclass(frozen=True)
class SkuField:
    """One position in the SKU field order."""
    collection: str
    order: int
    enabled: bool = True


# =============================================================================
# SOURCE CONTRACT
# =============================================================================

class CatalogSource(Protocol):
    """Read-only catalog query surface (see configurator.database)."""

    def get_product_lines(self) -> list[dict]: ...

    def get_default_options(self, line_id) -> list[dict]: ...

    def get_option_records(self, collection: str) -> list[dict]: ...

    def get_products(self, line_id=None) -> list[dict]: ...

    def get_overrides(self) -> list[dict]: ...

    def get_rules(self) -> list[dict]: ...

    def get_sku_field_order(self) -> list[dict]: ...


# =============================================================================
# SNAPSHOT
# =============================================================================

def _sort_key(option: Option):
    return (option.sort is None, option.sort if option.sort is not None else 0, option.key)


@dataclass(frozen=True)
class CatalogSnapshot:
    """Frozen view of the catalog at `as_of`."""
    field_mapping: FieldMapping
    product_lines: dict[str, ProductLine]
    options: dict[str, dict[str, Option]]
    products: tuple[Product, ...]
    overrides: tuple[Override, ...]
    rules: tuple[Rule, ...]
    sku_field_order: tuple[SkuField, ...]
    as_of: datetime
    diagnostics: tuple[Diagnostic, ...] = ()

    def get_product_line(self, line_id) -> ProductLine:
        line = self.product_lines.get(str(line_id))
        if line is None:
            raise UnknownProductLine(line_id)
        return line

    def get_option(self, collection: str, option_id) -> Optional[Option]:
        return self.options.get(collection, {}).get(str(option_id))

    def options_for(self, collection: str) -> list[Option]:
        """All active options of a collection in display order."""
        return sorted(self.options.get(collection, {}).values(), key=_sort_key)

    def line_defaults(self, line_id) -> dict[str, list[str]]:
        """Default option ids per collection for a product line, in display order."""
        line = self.get_product_line(line_id)
        grouped: dict[str, list[Option]] = {}
        for collection, item in line.default_options:
            option = self.get_option(collection, item)
            if option is not None:
                grouped.setdefault(collection, []).append(option)
        defaults = {c: [o.key for o in sorted(opts, key=_sort_key)] for c, opts in grouped.items()}
        if PRODUCT_LINES in self.field_mapping:
            defaults[PRODUCT_LINES] = [o.key for o in self.options_for(PRODUCT_LINES)]
        return defaults

    def products_for_line(self, line_id, active_only: bool = True) -> list[Product]:
        key = str(line_id)
        return [
            p for p in self.products
            if p.product_line == key and (p.active or not active_only)
        ]

    def get_product(self, product_id) -> Optional[Product]:
        key = str(product_id)
        for product in self.products:
            if str(product.id) == key:
                return product
        return None

    def overrides_for(self, product_ids) -> list[Override]:
        keys = {str(p) for p in product_ids}
        return [o for o in self.overrides if o.product_id in keys]

    def enabled_field_order(self) -> list[SkuField]:
        return sorted((f for f in self.sku_field_order if f.enabled), key=lambda f: f.order)


# =============================================================================
# SNAPSHOT BUILDING
# =============================================================================

def _option_from_record(collection: str, rec: dict) -> Option:
    return Option(
        id=rec["id"],
        name=rec.get("name") or str(rec["id"]),
        short_code=str(rec.get("sku_code") or rec.get("short_code") or ""),
        collection=collection,
        sort=rec.get("sort"),
        active=rec.get("active", True),
    )


def _default_options(rec: dict) -> tuple:
    raw = rec.get("default_options") or []
    pairs = []
    for entry in raw:
        pairs.append((entry["collection"], str(entry["item"])))
    return tuple(pairs)


def build_snapshot(source: CatalogSource, field_mapping: FieldMapping,
                   as_of: Optional[datetime] = None) -> CatalogSnapshot:
    """Fetch every catalog collection from `source` and freeze it.

    Raises:
        UnmappedCollection: a line default or SKU field order entry names a
            collection the field mapping does not know.
    """
    diagnostics: list[Diagnostic] = []

    # Product lines (also exposed as options of the product_lines collection)
    lines: dict[str, ProductLine] = {}
    for rec in source.get_product_lines():
        if not rec.get("active", True):
            continue
        line = ProductLine(
            id=rec["id"],
            name=rec.get("name") or str(rec["id"]),
            sku_code=rec.get("sku_code"),
            default_options=_default_options(rec),
            sort=rec.get("sort"),
        )
        for collection, _ in line.default_options:
            field_mapping.by_collection(collection, where=f"product line {line.id} defaults")
        lines[str(line.id)] = line

    options: dict[str, dict[str, Option]] = {}
    for spec in field_mapping:
        if spec.collection == PRODUCT_LINES:
            continue
        records = source.get_option_records(spec.collection)
        options[spec.collection] = {
            o.key: o for o in (_option_from_record(spec.collection, r) for r in records) if o.active
        }
    if PRODUCT_LINES in field_mapping:
        options[PRODUCT_LINES] = {
            key: Option(id=line.id, name=line.name, short_code=line.sku_code or "",
                        collection=PRODUCT_LINES, sort=line.sort)
            for key, line in lines.items()
        }

    # Products: attributes keyed by collection, values stringified
    products = []
    attribute_specs = field_mapping.product_attributes()
    for rec in source.get_products():
        attributes = {}
        for spec in attribute_specs:
            value = rec.get(spec.field)
            if isinstance(value, dict):
                value = value.get("id")
            if value is not None:
                attributes[spec.collection] = str(value)
        line_ref = rec.get("product_line")
        if isinstance(line_ref, dict):
            line_ref = line_ref.get("id")
        products.append(Product(
            id=rec["id"],
            name=rec.get("name") or str(rec["id"]),
            product_line=str(line_ref),
            sku_code=rec.get("sku_code") or "",
            attributes=attributes,
            active=rec.get("active", True),
        ))
    product_ids = {str(p.id) for p in products}

    overrides = []
    for rec in source.get_overrides():
        product_id = str(rec.get("products_id", rec.get("product")))
        collection = rec.get("collection", "")
        if product_id not in product_ids:
            diagnostics.append(Diagnostic(
                DiagnosticKind.OVERRIDE_INCONSISTENT,
                f"Override references unknown product {product_id}",
                subject=product_id,
            ))
            continue
        if collection not in field_mapping:
            diagnostics.append(Diagnostic(
                DiagnosticKind.OVERRIDE_INCONSISTENT,
                f"Override for product {product_id} names unmapped collection '{collection}'",
                subject=collection,
            ))
            continue
        overrides.append(Override(product_id=product_id, collection=collection, item=str(rec.get("item"))))

    rules = tuple(Rule.from_record(r) for r in source.get_rules())

    field_order = []
    for rec in source.get_sku_field_order():
        collection = rec.get("sku_code_item") or rec.get("collection")
        field_mapping.by_collection(collection, where="SKU field order")
        field_order.append(SkuField(
            collection=collection,
            order=int(rec.get("order") or 0),
            enabled=rec.get("enabled", True),
        ))

    for d in diagnostics:
        logger.warning(f"[Catalog] {d.kind.value}: {d.message}")

    snapshot = CatalogSnapshot(
        field_mapping=field_mapping,
        product_lines=lines,
        options=options,
        products=tuple(products),
        overrides=tuple(overrides),
        rules=rules,
        sku_field_order=tuple(sorted(field_order, key=lambda f: f.order)),
        as_of=as_of or datetime.now(timezone.utc),
        diagnostics=tuple(diagnostics),
    )
    logger.info(
        f"[Catalog] Snapshot built: {len(lines)} lines, {len(products)} products, "
        f"{len(overrides)} overrides, {len(rules)} rules"
    )
    return snapshot


# =============================================================================
# STORE (refresh with timeout, last good snapshot fallback)
# =============================================================================

@dataclass
class RefreshResult:
    snapshot: CatalogSnapshot
    stale: bool = False
    error: Optional[str] = None


class CatalogStore:
    """Holds the current snapshot and refreshes it on explicit request.

    Each refresh takes a generation number; a fetch that completes after a
    newer one has been installed is discarded.
    """

    def __init__(self, source: CatalogSource, field_mapping: FieldMapping,
                 refresh_timeout: Optional[float] = None):
        self.source = source
        self.field_mapping = field_mapping
        self.refresh_timeout = refresh_timeout
        self._snapshot: Optional[CatalogSnapshot] = None
        self._generation = 0
        self._installed_generation = 0
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="catalog-refresh")

    @property
    def snapshot(self) -> CatalogSnapshot:
        """Current snapshot; refreshes once if nothing has been loaded yet."""
        if self._snapshot is None:
            return self.refresh().snapshot
        return self._snapshot

    def has_snapshot(self) -> bool:
        return self._snapshot is not None

    def install(self, snapshot: CatalogSnapshot) -> None:
        """Install a prebuilt snapshot (seeding and tests)."""
        with self._lock:
            self._generation += 1
            self._installed_generation = self._generation
            self._snapshot = snapshot

    def refresh(self, timeout: Optional[float] = None) -> RefreshResult:
        """Fetch a new snapshot, falling back to the last good one on failure.

        Raises:
            CatalogUnavailable: the fetch failed and no snapshot was ever loaded.
        """
        timeout = timeout if timeout is not None else self.refresh_timeout
        with self._lock:
            self._generation += 1
            generation = self._generation

        future = self._executor.submit(build_snapshot, self.source, self.field_mapping)
        try:
            snapshot = future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            return self._fallback(f"Catalog refresh timed out after {timeout}s")
        except CatalogUnavailable as e:
            return self._fallback(str(e))
        except ConfiguratorError:
            raise
        except Exception as e:
            # Malformed records count as a failed fetch
            logger.exception(f"[Catalog] Refresh #{generation} failed while building the snapshot")
            return self._fallback(f"Catalog refresh failed: {type(e).__name__}: {e}")

        with self._lock:
            if generation < self._installed_generation:
                logger.info(f"[Catalog] Discarding refresh #{generation}, newer snapshot already installed")
                return RefreshResult(snapshot=self._snapshot, stale=False)
            self._snapshot = snapshot
            self._installed_generation = generation
        return RefreshResult(snapshot=snapshot)

    def _fallback(self, error: str) -> RefreshResult:
        if self._snapshot is None:
            logger.error(f"[Catalog] {error}; no snapshot available")
            raise CatalogUnavailable(error)
        logger.warning(f"[Catalog] {error}; keeping snapshot from {self._snapshot.as_of.isoformat()}")
        return RefreshResult(snapshot=self._snapshot, stale=True, error=error)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
