"""
Configuration pipeline and Selection API.

`recompute` is the pure pipeline run after every selection change:

1. FILTER: compute_options for the selected product line
2. RULES: evaluate catalog rules against the flattened selection
3. CONSTRAIN: merge rule allow/deny sets into the filter result
4. ADJUST: replace selections that are no longer available
5. SKU: build the SKU with the final rule overrides

It returns the new state plus the domain events describing what happened.
ConfigurationSession holds one user's selection against a pinned catalog
snapshot and fans those events out to subscribers.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from configurator.logic.catalog import CatalogSnapshot, CatalogStore
from configurator.logic.field_mapping import PRODUCT_LINES
from configurator.logic.filtering import (
    FilterResult,
    OverrideTrigger,
    apply_rule_constraints,
    compute_options,
    invalid_selections,
)
from configurator.logic.rules_engine import RuleEvaluation, build_rule_context, evaluate
from configurator.logic.sku import (
    DEFAULT_DELIMITER,
    DEFAULT_MULTI_SEPARATOR,
    SkuBuildResult,
    SkuParseResult,
    build_sku,
    parse_sku,
)

logger = logging.getLogger(__name__)

SELECTION_CHANGED = "selection_changed"
SELECTION_ADJUSTED = "selection_adjusted"
OPTIONS_RECOMPUTED = "options_recomputed"
RULES_EVALUATED = "rules_evaluated"
SKU_BUILT = "sku_built"
CATALOG_REFRESHED = "catalog_refreshed"

MAX_ADJUST_PASSES = 3


# =============================================================================
# DATACLASSES
# =============================================================================

@dataclass(frozen=True)
class DomainEvent:
    type: str
    payload: dict = field(default_factory=dict)


@dataclass
class EngineSettings:
    """Per-tenant engine knobs (see config_loader.DomainConfig)."""
    trigger: OverrideTrigger = field(default_factory=OverrideTrigger)
    delimiter: str = DEFAULT_DELIMITER
    multi_separator: str = DEFAULT_MULTI_SEPARATOR
    suggestion_limit: int = 20

    @classmethod
    def from_config(cls, config) -> "EngineSettings":
        return cls(
            trigger=OverrideTrigger.from_config(config.override_trigger),
            delimiter=config.sku.delimiter,
            multi_separator=config.sku.multi_value_separator,
            suggestion_limit=config.sku.suggestion_limit,
        )


@dataclass
class ConfigurationState:
    selection: dict
    line_id: Optional[str] = None
    options: Optional[FilterResult] = None
    rules: Optional[RuleEvaluation] = None
    sku: Optional[SkuBuildResult] = None
    catalog_as_of: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "selection": dict(self.selection),
            "line_id": self.line_id,
            "options": self.options.to_dict() if self.options else None,
            "matched_rules": [
                {"id": r.id, "name": r.name, "priority": r.priority}
                for r in (self.rules.matched if self.rules else [])
            ],
            "overrides": self.rules.overrides.to_dict() if self.rules else None,
            "rule_diagnostics": [d.to_dict() for d in self.rules.diagnostics] if self.rules else [],
            "sku": self.sku.to_dict() if self.sku else None,
            "catalog_as_of": self.catalog_as_of,
        }


# =============================================================================
# PIPELINE
# =============================================================================

def _is_unset(value) -> bool:
    return value is None or value == "" or value == []


def normalize_selection(selection: dict, snapshot: CatalogSnapshot) -> dict:
    """Stringify option ids, drop empty values, wrap multi-select scalars in lists."""
    normalized = {}
    for field_name, value in selection.items():
        if _is_unset(value):
            continue
        spec = snapshot.field_mapping.by_field(field_name)
        if isinstance(value, (list, tuple, set)):
            normalized[field_name] = [str(v) for v in value]
        elif spec is not None and spec.multi_select:
            normalized[field_name] = [str(value)]
        else:
            normalized[field_name] = str(value)
    return normalized


def _adjust(selection: dict, field_name: str, bad: list, result: FilterResult,
            snapshot: CatalogSnapshot, clear: bool = False) -> DomainEvent:
    """Replace one unavailable selection with the first available option, or clear it."""
    spec = snapshot.field_mapping.by_field(field_name)
    previous = selection.get(field_name)
    if clear:
        replacement = None
    elif spec.multi_select:
        kept = [v for v in previous if v not in bad]
        replacement = kept or None
    else:
        available = result.available.get(spec.collection, set())
        replacement = next((o.key for o in snapshot.options_for(spec.collection) if o.key in available), None)

    if replacement is None:
        selection.pop(field_name, None)
    else:
        selection[field_name] = replacement
    logger.info(f"[Session] Adjusted {field_name}: {previous!r} -> {replacement!r}")
    return DomainEvent(SELECTION_ADJUSTED, {"field": field_name, "from": previous, "to": replacement})


def _run_engines(selection: dict, line_id: str, snapshot: CatalogSnapshot,
                 settings: EngineSettings) -> tuple[FilterResult, RuleEvaluation]:
    filtered = compute_options(selection, line_id, snapshot, settings.trigger)
    context = build_rule_context(selection, snapshot)
    rules = evaluate(snapshot.rules, context, snapshot.field_mapping)
    return apply_rule_constraints(filtered, rules.constraints), rules


def recompute(selection: dict, snapshot: CatalogSnapshot,
              settings: Optional[EngineSettings] = None) -> tuple[ConfigurationState, list[DomainEvent]]:
    """Run the full pipeline for a selection.

    Returns the new state and the events produced. The input dict is not
    modified; the state carries the (possibly adjusted) selection.
    """
    settings = settings or EngineSettings()
    selection = normalize_selection(selection, snapshot)
    line_spec = snapshot.field_mapping.line_field()
    line_id = selection.get(line_spec.field) if line_spec else None

    state = ConfigurationState(selection=selection, line_id=line_id,
                               catalog_as_of=snapshot.as_of.isoformat())
    events: list[DomainEvent] = []
    if line_id is None:
        return state, events

    # One field per pass, in field mapping order
    budget = MAX_ADJUST_PASSES * len(snapshot.field_mapping)
    passes = 0
    while True:
        options, rules = _run_engines(selection, line_id, snapshot, settings)
        invalid = invalid_selections(selection, options, snapshot)
        if not invalid:
            break
        field_name, bad = next(iter(invalid.items()))
        passes += 1
        # Past the budget fields are cleared, which only shrinks the selection
        events.append(_adjust(selection, field_name, bad, options, snapshot, clear=passes > budget))

    events.append(DomainEvent(OPTIONS_RECOMPUTED, {
        "available": {c: len(ids) for c, ids in options.available.items()},
    }))
    events.append(DomainEvent(RULES_EVALUATED, {"matched": [r.id for r in rules.matched]}))

    sku = build_sku(selection, rules.overrides, snapshot.sku_field_order, snapshot,
                    delimiter=settings.delimiter, multi_separator=settings.multi_separator)
    events.append(DomainEvent(SKU_BUILT, {"sku": sku.sku}))

    state.options = options
    state.rules = rules
    state.sku = sku
    return state, events


# =============================================================================
# SELECTION API
# =============================================================================

Listener = Callable[[DomainEvent], Any]


class ConfigurationSession:
    """One configuration in progress: get/set/reset fields and subscribe to changes.

    Edits are serialized; the catalog snapshot is pinned until refresh_catalog().
    """

    def __init__(self, store: CatalogStore, settings: Optional[EngineSettings] = None,
                 line_id=None, session_id: Optional[str] = None):
        self.session_id = session_id or uuid.uuid4().hex
        self.store = store
        self.settings = settings or EngineSettings()
        self._snapshot = store.snapshot
        self._listeners: list[Listener] = []
        self._lock = threading.RLock()
        self.last_activity = time.time()

        initial = {}
        line_spec = self._snapshot.field_mapping.line_field()
        if line_id is not None and line_spec is not None:
            self._snapshot.get_product_line(line_id)
            initial[line_spec.field] = str(line_id)
        self._state, _ = recompute(initial, self._snapshot, self.settings)

    @property
    def snapshot(self) -> CatalogSnapshot:
        return self._snapshot

    @property
    def state(self) -> ConfigurationState:
        return self._state

    @property
    def selection(self) -> dict:
        return dict(self._state.selection)

    def get(self, field_name: str):
        return self._state.selection.get(field_name)

    def set(self, field_name: str, value) -> ConfigurationState:
        """Set (or clear, with None) one field and recompute."""
        return self.update({field_name: value})

    def update(self, changes: dict) -> ConfigurationState:
        with self._lock:
            line_spec = self._snapshot.field_mapping.line_field()
            if line_spec is not None and line_spec.field in changes and changes[line_spec.field] is not None:
                self._snapshot.get_product_line(changes[line_spec.field])

            selection = dict(self._state.selection)
            selection.update(changes)
            return self._apply(selection, [DomainEvent(SELECTION_CHANGED, {"changes": dict(changes)})])

    def reset(self, use_first_options: bool = False) -> ConfigurationState:
        """Clear every field except the product line.

        With use_first_options, required fields are preset to their first
        available option.
        """
        with self._lock:
            line_spec = self._snapshot.field_mapping.line_field()
            selection = {}
            if line_spec is not None and self._state.line_id is not None:
                selection[line_spec.field] = self._state.line_id
            state = self._apply(selection, [DomainEvent(SELECTION_CHANGED, {"reset": True})])

            if use_first_options and state.options is not None:
                preset = {}
                for spec in self._snapshot.field_mapping:
                    if not spec.required or spec.collection == PRODUCT_LINES:
                        continue
                    available = state.options.available.get(spec.collection, set())
                    first = next((o.key for o in self._snapshot.options_for(spec.collection)
                                  if o.key in available), None)
                    if first is not None:
                        preset[spec.field] = first
                if preset:
                    state = self.update(preset)
            return state

    def load_sku(self, sku: str) -> tuple[SkuParseResult, ConfigurationState]:
        """Parse a SKU and replace the selection with what it recovered."""
        with self._lock:
            parsed = parse_sku(
                sku, self._snapshot.sku_field_order, self._snapshot,
                delimiter=self.settings.delimiter, multi_separator=self.settings.multi_separator,
            )
            state = self._apply(dict(parsed.selection), [
                DomainEvent(SELECTION_CHANGED, {"sku": sku, "confidence": parsed.confidence}),
            ])
            return parsed, state

    def refresh_catalog(self, timeout: Optional[float] = None) -> ConfigurationState:
        """Refresh the catalog (explicitly) and recompute against the new snapshot."""
        with self._lock:
            refreshed = self.store.refresh(timeout=timeout)
            self._snapshot = refreshed.snapshot
            return self._apply(dict(self._state.selection), [DomainEvent(CATALOG_REFRESHED, {
                "as_of": refreshed.snapshot.as_of.isoformat(),
                "stale": refreshed.stale,
                "error": refreshed.error,
            })])

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for domain events; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _apply(self, selection: dict, leading: list[DomainEvent]) -> ConfigurationState:
        state, events = recompute(selection, self._snapshot, self.settings)
        self._state = state
        self.last_activity = time.time()
        for event in leading + events:
            for listener in list(self._listeners):
                listener(event)
        return state


class SessionManager:
    """Manages ConfigurationSession instances by id."""

    def __init__(self):
        self._sessions: dict[str, ConfigurationSession] = {}
        self._lock = threading.Lock()

    def create_session(self, store: CatalogStore, settings: Optional[EngineSettings] = None,
                       line_id=None) -> ConfigurationSession:
        session = ConfigurationSession(store, settings, line_id=line_id)
        with self._lock:
            self._sessions[session.session_id] = session
        return session

    def get_session(self, session_id: str) -> Optional[ConfigurationSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def cleanup_stale(self, max_age_seconds: int = 7200):
        """Remove sessions inactive for more than max_age_seconds (default 2h)."""
        cutoff = time.time() - max_age_seconds
        with self._lock:
            stale = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
            for sid in stale:
                self._sessions.pop(sid, None)
            if stale:
                logger.info(f"Cleaned up {len(stale)} stale session(s)")

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
