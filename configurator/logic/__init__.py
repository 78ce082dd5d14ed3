"""Logic module: catalog snapshots, filtering, rules and SKU engines."""

from .catalog import CatalogSnapshot, CatalogStore, build_snapshot
from .field_mapping import FieldMapping, FieldSpec
from .filtering import FilterResult, OverrideTrigger, compute_options, apply_rule_constraints
from .rules_engine import RuleEvaluation, RuleOverrides, evaluate, build_rule_context
from .sku import SkuBuildResult, SkuParseResult, build_sku, parse_sku
from .session import ConfigurationSession, ConfigurationState, EngineSettings, recompute

__all__ = [
    'CatalogSnapshot',
    'CatalogStore',
    'build_snapshot',
    'FieldMapping',
    'FieldSpec',
    'FilterResult',
    'OverrideTrigger',
    'compute_options',
    'apply_rule_constraints',
    'RuleEvaluation',
    'RuleOverrides',
    'evaluate',
    'build_rule_context',
    'SkuBuildResult',
    'SkuParseResult',
    'build_sku',
    'parse_sku',
    'ConfigurationSession',
    'ConfigurationState',
    'EngineSettings',
    'recompute',
]
