"""
SKU Builder / Parser

A SKU is the short codes of the selected options, one segment per enabled
entry of the catalog's SKU field order, joined with a delimiter::

    DECO-C-D-2424-BK-27-V-NL+AF

Multi-select fields join their codes with a second separator (``+``).

Build precedence per segment:
    product SKU override (replaces the whole SKU, no segments)
    > product line SKU override (product_lines segment)
    > rule segment override (<field>_sku_code)
    > option short code
    > empty placeholder for a required field with no selection

Parsing splits an arbitrary string back into positional segments and matches
each one against the option codes of the field at that position, grading
the result (exact / partial / ambiguous / not_found / missing). Parsing never
raises on malformed input.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from configurator.errors import Diagnostic, DiagnosticKind, MissingFieldOrder
from configurator.logic.catalog import CatalogSnapshot, Option, SkuField
from configurator.logic.field_mapping import PRODUCT_LINES
from configurator.logic.rules_engine import RuleOverrides

logger = logging.getLogger(__name__)

DEFAULT_DELIMITER = "-"
DEFAULT_MULTI_SEPARATOR = "+"

# Segment sources
SOURCE_OPTION = "option"
SOURCE_OVERRIDE = "override"
SOURCE_DEFAULT = "default"

# Segment match statuses, best to worst
EXACT = "exact"
PARTIAL = "partial"
AMBIGUOUS = "ambiguous"
NOT_FOUND = "not_found"
MISSING = "missing"

_STATUS_RANK = {EXACT: 0, PARTIAL: 1, MISSING: 1, AMBIGUOUS: 2, NOT_FOUND: 3}


# =============================================================================
# DATACLASSES
# =============================================================================

@dataclass
class SkuSegment:
    collection: str
    order: int
    code: str
    source: str  # "option" | "override" | "default"


@dataclass
class SkuBuildResult:
    sku: str
    segments: list[SkuSegment] = field(default_factory=list)
    warnings: list[Diagnostic] = field(default_factory=list)
    product_override: bool = False

    def to_dict(self) -> dict:
        return {
            "sku": self.sku,
            "segments": [vars(s).copy() for s in self.segments],
            "warnings": [w.to_dict() for w in self.warnings],
            "product_override": self.product_override,
        }


@dataclass
class ParsedSegment:
    position: int
    raw: Optional[str]
    status: str
    collection: Optional[str] = None
    order: Optional[int] = None
    matched_option_ids: list[str] = field(default_factory=list)


@dataclass
class SkuParseResult:
    input: str
    raw_segments: list[str]
    segments: list[ParsedSegment] = field(default_factory=list)
    confidence: str = EXACT  # "exact" | "partial" | "ambiguous" | "invalid"
    selection: dict = field(default_factory=dict)
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "input": self.input,
            "raw_segments": list(self.raw_segments),
            "segments": [vars(s).copy() for s in self.segments],
            "confidence": self.confidence,
            "selection": dict(self.selection),
            "issues": list(self.issues),
        }


# =============================================================================
# FIELD ORDER
# =============================================================================

def _enabled_order(field_order: Iterable[SkuField]) -> list[SkuField]:
    ordered = sorted((f for f in field_order if f.enabled), key=lambda f: f.order)
    if not ordered:
        raise MissingFieldOrder("No enabled SKU field order entries in the catalog")
    return ordered


def validate_field_order(field_order: Iterable[SkuField]) -> list[str]:
    """Report duplicate positions and duplicate collections. Empty list = valid."""
    errors = []
    seen_orders: dict[int, str] = {}
    seen_collections = set()
    for f in field_order:
        if not f.enabled:
            continue
        if f.order in seen_orders:
            errors.append(
                f"Position {f.order} is used by both '{seen_orders[f.order]}' and '{f.collection}'"
            )
        else:
            seen_orders[f.order] = f.collection
        if f.collection in seen_collections:
            errors.append(f"Collection '{f.collection}' appears more than once")
        seen_collections.add(f.collection)
    return errors


# =============================================================================
# BUILD
# =============================================================================

def build_sku(selection: dict, overrides: Optional[RuleOverrides],
              field_order: Iterable[SkuField], snapshot: CatalogSnapshot,
              delimiter: str = DEFAULT_DELIMITER,
              multi_separator: str = DEFAULT_MULTI_SEPARATOR) -> SkuBuildResult:
    """Render the SKU for a selection.

    Raises:
        MissingFieldOrder: the field order has no enabled entries.
    """
    ordered = _enabled_order(field_order)
    overrides = overrides or RuleOverrides()

    if overrides.product_sku_override:
        logger.info(f"[SKU] Product SKU override: {overrides.product_sku_override}")
        return SkuBuildResult(sku=overrides.product_sku_override, product_override=True)

    mapping = snapshot.field_mapping
    result = SkuBuildResult(sku="")
    for entry in ordered:
        spec = mapping.by_collection(entry.collection, where="SKU field order")

        if spec.collection == PRODUCT_LINES and overrides.product_line_sku_override:
            code, source = overrides.product_line_sku_override, SOURCE_OVERRIDE
        elif spec.collection in overrides.segment_overrides:
            code, source = overrides.segment_overrides[spec.collection], SOURCE_OVERRIDE
        else:
            code = _selected_code(selection.get(spec.field), spec.collection, snapshot, multi_separator)
            source = SOURCE_OPTION

        if code is None:
            if not spec.required:
                continue
            code, source = "", SOURCE_DEFAULT
            result.warnings.append(Diagnostic(
                DiagnosticKind.SKU_SEGMENT_MISSING,
                f"Required field '{spec.field}' has no selection",
                subject=spec.collection,
            ))

        result.segments.append(SkuSegment(
            collection=spec.collection, order=entry.order, code=code, source=source,
        ))

    result.sku = delimiter.join(s.code for s in result.segments)
    return result


def _selected_code(value, collection: str, snapshot: CatalogSnapshot,
                   multi_separator: str) -> Optional[str]:
    if value is None or value == "" or value == []:
        return None
    values = value if isinstance(value, (list, tuple)) else [value]
    codes = []
    for v in values:
        option = snapshot.get_option(collection, v)
        if option is None or not option.short_code:
            logger.warning(f"[SKU] No short code for {collection} option {v}")
            continue
        codes.append(option.short_code)
    if not codes:
        return None
    return multi_separator.join(codes)


# =============================================================================
# PARSE
# =============================================================================

def _match_code(piece: str, options: list[Option]) -> tuple[str, list[str]]:
    """Match one code against candidate options: exact, then prefix, then substring."""
    needle = piece.lower()
    coded = [(o.key, o.short_code.lower()) for o in options if o.short_code]

    exact = [key for key, code in coded if code == needle]
    if len(exact) == 1:
        return EXACT, exact
    if len(exact) > 1:
        return AMBIGUOUS, exact

    for hits in (
        [key for key, code in coded if code.startswith(needle)],
        [key for key, code in coded if needle in code],
    ):
        if len(hits) == 1:
            return PARTIAL, hits
        if len(hits) > 1:
            return AMBIGUOUS, hits
    return NOT_FOUND, []


def _candidates(collection: str, snapshot: CatalogSnapshot,
                universe: Optional[dict[str, list[str]]]) -> list[Option]:
    options = snapshot.options_for(collection)
    if universe is None or collection not in universe:
        return options
    allowed = set(universe[collection])
    return [o for o in options if o.key in allowed]


def _worst(statuses: list[str]) -> str:
    return max(statuses, key=lambda s: _STATUS_RANK[s])


def parse_sku(sku: str, field_order: Iterable[SkuField], snapshot: CatalogSnapshot,
              line_id=None, delimiter: str = DEFAULT_DELIMITER,
              multi_separator: str = DEFAULT_MULTI_SEPARATOR) -> SkuParseResult:
    """Split a SKU string and match every segment against the option catalog.

    Args:
        sku: Any user-typed string.
        field_order: SKU field order; only enabled entries are used.
        snapshot: Option catalog.
        line_id: Optional product line restricting candidates to its defaults.

    Raises:
        MissingFieldOrder: the field order has no enabled entries.
    """
    ordered = _enabled_order(field_order)
    text = sku if isinstance(sku, str) else ""
    raw_segments = [s.strip() for s in text.split(delimiter)]
    result = SkuParseResult(input=text, raw_segments=raw_segments)

    universe = None
    if line_id is not None and str(line_id) in snapshot.product_lines:
        universe = snapshot.line_defaults(line_id)

    mapping = snapshot.field_mapping
    for position, entry in enumerate(ordered):
        spec = mapping.by_collection(entry.collection, where="SKU field order")
        raw = raw_segments[position] if position < len(raw_segments) else None
        segment = ParsedSegment(position=position, raw=raw, status=MISSING,
                                collection=spec.collection, order=entry.order)
        result.segments.append(segment)

        if not raw:
            result.issues.append(f"Segment {position + 1} ({spec.field}) is missing")
            continue

        candidates = _candidates(spec.collection, snapshot, universe)
        pieces = [p.strip() for p in raw.split(multi_separator)] if spec.multi_select else [raw]
        statuses = []
        for piece in pieces:
            if not piece:
                statuses.append(MISSING)
                continue
            status, ids = _match_code(piece, candidates)
            statuses.append(status)
            segment.matched_option_ids.extend(i for i in ids if i not in segment.matched_option_ids)
        segment.status = _worst(statuses)

        # Only exact matches are applied; partial ones stay in matched_option_ids
        if segment.status == EXACT and segment.matched_option_ids:
            if spec.multi_select:
                result.selection[spec.field] = list(segment.matched_option_ids)
            elif len(segment.matched_option_ids) == 1:
                result.selection[spec.field] = segment.matched_option_ids[0]
        if segment.status != EXACT:
            result.issues.append(
                f"Segment {position + 1} ({spec.field}) '{raw}' is {segment.status.replace('_', ' ')}"
            )

    surplus = raw_segments[len(ordered):]
    if surplus:
        result.issues.append(
            f"Input contains more segments than expected: {', '.join(repr(s) for s in surplus)}"
        )

    result.confidence = _confidence([s.status for s in result.segments])
    if result.confidence != EXACT:
        logger.debug(
            f"[SKU] {DiagnosticKind.SKU_PARSE_DEGRADED.value}: '{text}' parsed with "
            f"{result.confidence} confidence"
        )
    return result


def _confidence(statuses: list[str]) -> str:
    if NOT_FOUND in statuses:
        return "invalid"
    if AMBIGUOUS in statuses:
        return AMBIGUOUS
    if PARTIAL in statuses or MISSING in statuses:
        return PARTIAL
    return EXACT


# =============================================================================
# SUGGESTIONS
# =============================================================================

def suggest_products(snapshot: CatalogSnapshot, prefix: str, limit: int = 20,
                     line_id=None) -> list[dict]:
    """Active products whose SKU code starts with `prefix` (case-insensitive)."""
    needle = (prefix or "").strip().lower()
    if not needle:
        return []
    suggestions = []
    for product in snapshot.products:
        if not product.active or not product.sku_code:
            continue
        if line_id is not None and product.product_line != str(line_id):
            continue
        if product.sku_code.lower().startswith(needle):
            suggestions.append({
                "product_id": str(product.id),
                "name": product.name,
                "sku_code": product.sku_code,
                "product_line": product.product_line,
            })
    suggestions.sort(key=lambda s: s["sku_code"])
    return suggestions[:limit]


def suggest_segment_codes(snapshot: CatalogSnapshot, field_order: Iterable[SkuField],
                          position: int, query: str = "", limit: int = 20,
                          line_id=None) -> list[dict]:
    """Option codes that can fill the segment at `position`, filtered by prefix."""
    ordered = _enabled_order(field_order)
    if position < 0 or position >= len(ordered):
        return []
    collection = ordered[position].collection
    universe = snapshot.line_defaults(line_id) if line_id is not None else None
    needle = (query or "").strip().lower()
    return [
        {"option_id": o.key, "code": o.short_code, "name": o.name, "collection": collection}
        for o in _candidates(collection, snapshot, universe)
        if o.short_code and o.short_code.lower().startswith(needle)
    ][:limit]
