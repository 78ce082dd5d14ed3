"""Error taxonomy for the product configurator.

Two kinds of failure exist:

- Raised exceptions (``ConfiguratorError`` subclasses) for conditions the
  caller cannot recover from inside a computation pass: no catalog snapshot,
  no SKU field order, a catalog that references collections the field
  mapping does not know about.
- Recorded diagnostics (``Diagnostic``) for degraded-but-usable results.
  They are logged and returned on the result objects; they never abort a
  computation.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ConfiguratorError(Exception):
    """Base class for configurator errors."""


class CatalogUnavailable(ConfiguratorError):
    """No catalog snapshot could be loaded and none is cached."""


class MissingFieldOrder(ConfiguratorError):
    """The catalog declares no SKU field order, so no SKU can be built or parsed."""


class UnmappedCollection(ConfiguratorError):
    """A catalog collection has no entry in the field mapping table."""

    def __init__(self, collection: str, where: str = ""):
        self.collection = collection
        self.where = where
        location = f" (referenced by {where})" if where else ""
        super().__init__(f"Collection '{collection}' has no field mapping{location}")


class UnknownProductLine(ConfiguratorError):
    """The requested product line is not in the catalog snapshot."""

    def __init__(self, line_id):
        self.line_id = line_id
        super().__init__(f"Product line '{line_id}' not found in catalog")


class ConditionParseError(ConfiguratorError):
    """A rule condition or action map could not be parsed.

    Never escapes the rules engine: the offending rule is skipped and a
    RULE_EVALUATION_SKIPPED diagnostic is recorded instead.
    """


class DiagnosticKind(str, Enum):
    RULE_EVALUATION_SKIPPED = "RuleEvaluationSkipped"
    OVERRIDE_INCONSISTENT = "OverrideInconsistent"
    SKU_SEGMENT_MISSING = "SkuSegmentMissing"
    SKU_PARSE_DEGRADED = "SkuParseDegraded"


@dataclass(frozen=True)
class Diagnostic:
    """A recorded, non-fatal problem found during a computation."""
    kind: DiagnosticKind
    message: str
    subject: Optional[str] = None  # rule id, collection, segment position...

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "subject": self.subject}
