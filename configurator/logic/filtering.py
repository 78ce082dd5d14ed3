"""
Cascading Filtering Engine

Computes, for every collection of a product line, which options exist
(``all``), which can be picked (``available``) and which are shown but
inactive (``disabled``), given the current selection.

Algorithm (strict order):
1. LINE DEFAULTS: seed every collection from the line's default options
2. PRODUCT MATCHING: narrow product-driven collections to the values carried
   by active products matching the other selected discriminating fields
3. PRODUCT OVERRIDES: once the override trigger fires, replace the option
   set of every collection that has Override rows for the candidate products
   (and only those collections)

Rule constraints are applied afterwards by apply_rule_constraints; they
disable options but never take part in the override computation.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Optional

from configurator.errors import Diagnostic, DiagnosticKind
from configurator.logic.catalog import CatalogSnapshot, Product
from configurator.logic.field_mapping import PRODUCT_LINES

logger = logging.getLogger(__name__)

LINE_DEFAULTS = "line_defaults"
PRODUCT_MATCHING = "product_matching"
PRODUCT_OVERRIDES = "product_overrides"
RULE_CONSTRAINTS = "rule_constraints"


# =============================================================================
# DATACLASSES
# =============================================================================

@dataclass
class OverrideTrigger:
    """Explicit predicate deciding when Override rows are applied.

    Overrides apply once at least `min_selected_fields` discriminating fields
    are selected and the candidate product set is non-empty and, when
    `max_candidates` is set, no larger than it.
    """
    min_selected_fields: int = 1
    max_candidates: Optional[int] = None

    @classmethod
    def from_config(cls, trigger_config) -> "OverrideTrigger":
        return cls(
            min_selected_fields=trigger_config.min_selected_fields,
            max_candidates=trigger_config.max_candidates,
        )

    def should_apply(self, selected_fields: int, candidate_count: int) -> bool:
        if candidate_count == 0 or selected_fields < self.min_selected_fields:
            return False
        if self.max_candidates is not None and candidate_count > self.max_candidates:
            return False
        return True


@dataclass
class FilterResult:
    all: dict[str, set[str]] = field(default_factory=dict)
    available: dict[str, set[str]] = field(default_factory=dict)
    disabled: dict[str, set[str]] = field(default_factory=dict)
    filtering_history: dict[str, list[str]] = field(default_factory=dict)
    candidate_product_ids: list[str] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def is_option_available(self, collection: str, option_id) -> bool:
        return str(option_id) in self.available.get(collection, set())

    def is_option_disabled(self, collection: str, option_id) -> bool:
        return str(option_id) in self.disabled.get(collection, set())

    def copy(self) -> "FilterResult":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        """JSON-friendly view with sorted id lists."""
        def _sorted(sets: dict[str, set[str]]) -> dict[str, list[str]]:
            return {c: sorted(ids, key=_id_order) for c, ids in sets.items()}

        return {
            "all": _sorted(self.all),
            "available": _sorted(self.available),
            "disabled": _sorted(self.disabled),
            "filtering_history": {c: list(h) for c, h in self.filtering_history.items()},
            "candidate_product_ids": list(self.candidate_product_ids),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


def _id_order(option_id: str):
    return (0, int(option_id), "") if option_id.isdigit() else (1, 0, option_id)


# =============================================================================
# HELPERS
# =============================================================================

def selected_discriminators(selection: dict, snapshot: CatalogSnapshot) -> dict[str, str]:
    """Selected values of product-driven fields, keyed by collection."""
    selected = {}
    for spec in snapshot.field_mapping.product_attributes():
        value = selection.get(spec.field)
        if value is None or value == "" or isinstance(value, (list, tuple)):
            continue
        selected[spec.collection] = str(value)
    return selected


def _record(result: FilterResult, collection: str, step: str) -> None:
    result.filtering_history.setdefault(collection, []).append(step)


# =============================================================================
# STEPS
# =============================================================================

def _apply_line_defaults(result: FilterResult, line_id, snapshot: CatalogSnapshot) -> None:
    for collection, ids in snapshot.line_defaults(line_id).items():
        result.all[collection] = set(ids)
        result.available[collection] = set(ids)
        result.disabled[collection] = set()
        _record(result, collection, LINE_DEFAULTS)


def _apply_product_matching(result: FilterResult, products: list[Product],
                            selected: dict[str, str], snapshot: CatalogSnapshot) -> None:
    for spec in snapshot.field_mapping.product_attributes():
        collection = spec.collection
        if collection not in result.all:
            continue

        # Leave-one-out: a field is never narrowed by its own selection
        others = {c: v for c, v in selected.items() if c != collection}
        observed = {
            p.attributes[collection]
            for p in products
            if collection in p.attributes and p.matches(others)
        }
        if not observed:
            logger.debug(f"[Filtering] No matching products for {collection}, keeping defaults")
            continue

        narrowed = result.available[collection] & observed
        result.disabled[collection] |= result.available[collection] - narrowed
        result.available[collection] = narrowed
        _record(result, collection, PRODUCT_MATCHING)


def _apply_product_overrides(result: FilterResult, candidates: list[Product],
                             snapshot: CatalogSnapshot) -> None:
    grouped: dict[str, set[str]] = {}
    for override in snapshot.overrides_for(p.id for p in candidates):
        if snapshot.get_option(override.collection, override.item) is None:
            result.diagnostics.append(Diagnostic(
                DiagnosticKind.OVERRIDE_INCONSISTENT,
                f"Override for product {override.product_id} references unknown "
                f"{override.collection} item {override.item}",
                subject=override.collection,
            ))
            continue
        grouped.setdefault(override.collection, set()).add(override.item)

    for collection, items in grouped.items():
        result.all[collection] = set(items)
        result.available[collection] = set(items)
        result.disabled[collection] = set()
        _record(result, collection, PRODUCT_OVERRIDES)

    if grouped:
        logger.info(
            f"[Filtering] Overrides from {len(candidates)} candidate product(s) "
            f"replaced: {sorted(grouped)}"
        )


# =============================================================================
# PUBLIC API
# =============================================================================

def compute_options(selection: dict, line_id, snapshot: CatalogSnapshot,
                    trigger: Optional[OverrideTrigger] = None) -> FilterResult:
    """Compute all/available/disabled option sets for a product line.

    Raises:
        UnknownProductLine: line_id is not in the snapshot.
    """
    trigger = trigger or OverrideTrigger()
    result = FilterResult()

    _apply_line_defaults(result, line_id, snapshot)

    products = snapshot.products_for_line(line_id)
    selected = selected_discriminators(selection, snapshot)
    if selected:
        _apply_product_matching(result, products, selected, snapshot)

    candidates = [p for p in products if p.matches(selected)]
    result.candidate_product_ids = [str(p.id) for p in candidates]
    if selected and trigger.should_apply(len(selected), len(candidates)):
        _apply_product_overrides(result, candidates, snapshot)

    for d in result.diagnostics:
        logger.warning(f"[Filtering] {d.kind.value}: {d.message}")
    return result


def apply_rule_constraints(result: FilterResult, constraints: dict) -> FilterResult:
    """Final pass: intersect with allow sets, subtract deny sets.

    Removed options move from `available` to `disabled`; `all` never changes.
    Returns a new FilterResult.
    """
    constrained = result.copy()
    for collection, constraint in constraints.items():
        if collection not in constrained.available:
            continue
        available = constrained.available[collection]
        narrowed = set(available)
        if constraint.allow:
            narrowed &= constraint.allow
        narrowed -= constraint.deny

        constrained.disabled[collection] |= available - narrowed
        constrained.available[collection] = narrowed
        _record(constrained, collection, RULE_CONSTRAINTS)
    return constrained


def invalid_selections(selection: dict, result: FilterResult, snapshot: CatalogSnapshot) -> dict:
    """Selected option ids that are no longer available, keyed by field."""
    invalid = {}
    for spec in snapshot.field_mapping:
        if spec.collection == PRODUCT_LINES or spec.collection not in result.available:
            continue
        value = selection.get(spec.field)
        if value is None or value == "" or value == []:
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        bad = [str(v) for v in values if not result.is_option_available(spec.collection, v)]
        if bad:
            invalid[spec.field] = bad
    return invalid
