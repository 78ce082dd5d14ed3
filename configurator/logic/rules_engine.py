"""
Rules Engine

Evaluates catalog Rule records against a flattened view of the current
selection and produces:

1. MATCHED RULES: active rules whose condition holds, highest priority first
2. OVERRIDES: the merged action maps of matched rules, with SKU overrides
   (``sku_code``, ``product_line_sku_code``, ``<field>_sku_code``) split out
   from plain field assignments
3. CONSTRAINTS: per-collection allow/deny sets from then_action rules

Action maps are merged lowest priority first so the highest priority rule is
merged last and wins. Equal priorities keep input order (later input wins).

A malformed rule is skipped with a RuleEvaluationSkipped diagnostic; it never
stops the remaining rules from being evaluated.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from configurator.errors import ConditionParseError, Diagnostic, DiagnosticKind
from configurator.logic.catalog import CatalogSnapshot, Rule
from configurator.logic.conditions import Condition, describe, evaluate as evaluate_condition, parse_condition
from configurator.logic.field_mapping import PRODUCT_LINES, FieldMapping

logger = logging.getLogger(__name__)

SET_VALUE = "set_value"
ENABLE_OPTION = "enable_option"
DISABLE_OPTION = "disable_option"
ACTIONS = (SET_VALUE, ENABLE_OPTION, DISABLE_OPTION)

_SKU_SUFFIX = "_sku_code"


# =============================================================================
# DATACLASSES
# =============================================================================

@dataclass(frozen=True)
class CompiledRule:
    """A rule whose condition and action map have been parsed."""
    rule: Rule
    condition: Condition
    actions: tuple  # ((flattened_key, value), ...)
    position: int
    priority: float = 0.0


@dataclass
class RuleOverrides:
    """Merged action maps of all matched rules."""
    product_sku_override: Optional[str] = None
    product_line_sku_override: Optional[str] = None
    segment_overrides: dict[str, str] = field(default_factory=dict)  # collection -> code
    field_values: dict[str, Any] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.product_sku_override or self.product_line_sku_override
                    or self.segment_overrides or self.field_values)

    def to_dict(self) -> dict:
        return {
            "product_sku_override": self.product_sku_override,
            "product_line_sku_override": self.product_line_sku_override,
            "segment_overrides": dict(self.segment_overrides),
            "field_values": dict(self.field_values),
        }


@dataclass
class Constraint:
    """Allow/deny sets for one collection (option id strings)."""
    allow: set[str] = field(default_factory=set)
    deny: set[str] = field(default_factory=set)


@dataclass
class RuleEvaluation:
    matched: list[Rule] = field(default_factory=list)
    overrides: RuleOverrides = field(default_factory=RuleOverrides)
    constraints: dict[str, Constraint] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def matched_ids(self) -> list:
        return [r.id for r in self.matched]


# =============================================================================
# COMPILATION
# =============================================================================

def _flatten_actions(action_map, prefix: str = "") -> list[tuple[str, Any]]:
    """Flatten an action map into (key, value) pairs in document order.

    ``{"_eq": v}`` wrappers are unwrapped, nested objects become ``a_b`` keys
    and ``_and``/``_or`` lists are walked in order.
    """
    if action_map is None:
        return []
    if not isinstance(action_map, dict):
        raise ConditionParseError(f"Action map must be an object, got {type(action_map).__name__}")

    pairs = []
    for key, value in action_map.items():
        if key in ("_and", "_or"):
            if not isinstance(value, list):
                raise ConditionParseError(f"'{key}' in action map expects a list")
            for item in value:
                pairs.extend(_flatten_actions(item, prefix))
        elif key.startswith("_"):
            raise ConditionParseError(f"Unknown operator '{key}' in action map")
        elif isinstance(value, dict):
            if "_eq" in value:
                if len(value) > 1:
                    raise ConditionParseError(f"Action for '{key}' mixes '_eq' with other keys")
                pairs.append((prefix + key, value["_eq"]))
            else:
                pairs.extend(_flatten_actions(value, prefix=f"{prefix}{key}_"))
        else:
            pairs.append((prefix + key, value))
    return pairs


def _priority(raw) -> float:
    # Directus serialises decimal and bigint columns as strings
    if raw is None or raw == "":
        return 0.0
    if isinstance(raw, bool):
        raise ConditionParseError(f"Invalid priority {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConditionParseError(f"Invalid priority {raw!r}") from None
    if not math.isfinite(value):
        raise ConditionParseError(f"Invalid priority {raw!r}")
    return value


def compile_rule(rule: Rule, position: int = 0) -> CompiledRule:
    """Parse one rule.

    Raises:
        ConditionParseError: missing if_this, unknown operator, unknown action,
            non-numeric priority.
    """
    if rule.if_this is None:
        raise ConditionParseError("Rule has no if_this condition")
    condition = parse_condition(rule.if_this)
    actions = tuple(_flatten_actions(rule.than_that))
    if rule.then_action is not None:
        if rule.then_action not in ACTIONS:
            raise ConditionParseError(f"Unknown action '{rule.then_action}'")
        if not rule.then_field:
            raise ConditionParseError(f"Action '{rule.then_action}' has no then_field")
    return CompiledRule(rule=rule, condition=condition, actions=actions, position=position,
                        priority=_priority(rule.priority))


def compile_rules(rules: Iterable[Rule]) -> tuple[list[CompiledRule], list[Diagnostic]]:
    """Compile every active rule, skipping malformed ones with a diagnostic."""
    compiled = []
    diagnostics = []
    for position, rule in enumerate(rules):
        if not rule.active:
            continue
        try:
            compiled.append(compile_rule(rule, position))
        except ConditionParseError as e:
            diagnostics.append(Diagnostic(
                DiagnosticKind.RULE_EVALUATION_SKIPPED,
                f"Rule {rule.id} ({rule.name or 'unnamed'}) skipped: {e}",
                subject=str(rule.id),
            ))
            logger.warning(f"[Rules] Skipping rule {rule.id}: {e}")
    return compiled, diagnostics


# =============================================================================
# EVALUATION
# =============================================================================

def _as_id_set(value) -> set[str]:
    if value is None:
        return set()
    if isinstance(value, (list, tuple, set)):
        return {str(v) for v in value}
    return {str(value)}


def _constraint_collection(then_field: str, field_mapping: Optional[FieldMapping]) -> str:
    if field_mapping is not None:
        spec = field_mapping.resolve(then_field)
        if spec is not None:
            return spec.collection
    return then_field


def _apply_action(overrides: RuleOverrides, key: str, value,
                  field_mapping: Optional[FieldMapping]) -> None:
    if key == "sku_code":
        overrides.product_sku_override = str(value)
        return
    if key == "product_line_sku_code":
        overrides.product_line_sku_override = str(value)
        return
    if key.endswith(_SKU_SUFFIX):
        base = key[:-len(_SKU_SUFFIX)]
        spec = field_mapping.resolve(base) if field_mapping is not None else None
        if spec is not None:
            if spec.collection == PRODUCT_LINES:
                overrides.product_line_sku_override = str(value)
            else:
                overrides.segment_overrides[spec.collection] = str(value)
            return
    overrides.field_values[key] = value


def _apply_constraint(constraints: dict[str, Constraint], rule: Rule,
                      field_mapping: Optional[FieldMapping]) -> None:
    collection = _constraint_collection(rule.then_field, field_mapping)
    values = _as_id_set(rule.then_value)
    constraint = constraints.setdefault(collection, Constraint())
    if rule.then_action == SET_VALUE:
        constraint.allow = set(values)
        constraint.deny = set()
    elif rule.then_action == ENABLE_OPTION:
        constraint.allow |= values
    elif rule.then_action == DISABLE_OPTION:
        constraint.deny |= values


def evaluate(rules: Iterable, context: dict,
             field_mapping: Optional[FieldMapping] = None) -> RuleEvaluation:
    """Evaluate rules against a context.

    Args:
        rules: Rule records or already compiled rules.
        context: Flattened selection (see build_rule_context).
        field_mapping: Resolves ``<field>_sku_code`` keys and then_field names
            to collections. Without it, keys are used as given.
    """
    result = RuleEvaluation()

    raw_rules = []
    compiled = []
    for item in rules:
        if isinstance(item, CompiledRule):
            compiled.append(item)
        else:
            raw_rules.append(item)
    if raw_rules:
        newly_compiled, diagnostics = compile_rules(raw_rules)
        offset = len(compiled)
        compiled.extend(
            CompiledRule(c.rule, c.condition, c.actions, offset + c.position, c.priority) for c in newly_compiled
        )
        result.diagnostics.extend(diagnostics)

    matched = [c for c in compiled if evaluate_condition(c.condition, context)]

    # Merge ascending: the highest priority is merged last and wins
    for c in sorted(matched, key=lambda c: (c.priority, c.position)):
        for key, value in c.actions:
            _apply_action(result.overrides, key, value, field_mapping)
        if c.rule.then_action:
            _apply_constraint(result.constraints, c.rule, field_mapping)

    result.matched = [c.rule for c in sorted(matched, key=lambda c: (-c.priority, c.position))]

    if result.matched:
        logger.info(f"[Rules] {len(result.matched)} rule(s) matched: {result.matched_ids}")
    return result


# =============================================================================
# CONTEXT
# =============================================================================

def _numeric(value):
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    return value


def build_rule_context(selection: dict, snapshot: CatalogSnapshot) -> dict:
    """Flatten a selection into the rule evaluation context.

    Each selected field is exposed under its context key as a numeric id
    (a list of ids for multi-select fields) together with
    ``<context_key>_sku_code`` holding the option short code(s), so the
    selected product line also provides ``product_line_sku_code``.
    """
    mapping = snapshot.field_mapping
    context: dict = {}

    for field_name, value in selection.items():
        if value is None or value == "" or value == []:
            continue
        spec = mapping.by_field(field_name)
        if spec is None:
            context[field_name] = value
            continue

        if isinstance(value, (list, tuple)):
            context[spec.context_key] = [_numeric(v) for v in value]
            codes = [o.short_code for o in (snapshot.get_option(spec.collection, v) for v in value) if o]
            context[spec.context_key + _SKU_SUFFIX] = codes
        else:
            context[spec.context_key] = _numeric(value)
            option = snapshot.get_option(spec.collection, value)
            if option is not None:
                context[spec.context_key + _SKU_SUFFIX] = option.short_code

    return context


def describe_rule(rule: Rule) -> str:
    """One-line `IF ... THEN ...` description of a rule."""
    try:
        compiled = compile_rule(rule)
    except ConditionParseError as e:
        return f"[invalid rule {rule.id}: {e}]"

    effects = [f"{k} = {v!r}" for k, v in compiled.actions]
    if rule.then_action:
        effects.append(f"{rule.then_action}({rule.then_field}, {rule.then_value!r})")
    return f"IF {describe(compiled.condition)} THEN {', '.join(effects) or 'nothing'}"
