"""Pydantic schemas for the product configurator API."""

from typing import Optional, Union

from pydantic import BaseModel, Field

SelectionValue = Union[str, int, list[Union[str, int]], None]


# ========================================
# Catalog
# ========================================

class OptionOut(BaseModel):
    """One selectable option of a collection."""
    id: str
    name: str
    short_code: str
    sort: Optional[float] = None


class ProductLineOut(BaseModel):
    id: str
    name: str
    sku_code: Optional[str] = None
    default_option_count: int = 0


class CatalogRefreshResponse(BaseModel):
    as_of: str
    stale: bool = False
    error: Optional[str] = None


# ========================================
# Stateless engine endpoints
# ========================================

class OptionsRequest(BaseModel):
    """Selection to filter options for."""
    product_line: str = Field(..., description="Product line id")
    selection: dict[str, SelectionValue] = Field(default_factory=dict,
                                                 description="Field -> option id (list for multi-select)")


class SkuBuildRequest(BaseModel):
    selection: dict[str, SelectionValue] = Field(..., description="Must include the product line field")


class SkuParseRequest(BaseModel):
    sku: str = Field(..., description="SKU string as typed or pasted")
    product_line: Optional[str] = Field(None, description="Restrict candidates to this line's defaults")


class ParsedSegmentOut(BaseModel):
    position: int
    raw: Optional[str] = None
    status: str
    collection: Optional[str] = None
    order: Optional[int] = None
    matched_option_ids: list[str] = Field(default_factory=list)


class SkuParseResponse(BaseModel):
    input: str
    raw_segments: list[str]
    segments: list[ParsedSegmentOut]
    confidence: str = Field(..., description="exact | partial | ambiguous | invalid")
    selection: dict[str, SelectionValue] = Field(default_factory=dict)
    issues: list[str] = Field(default_factory=list)


class SuggestionsRequest(BaseModel):
    query: str = ""
    position: Optional[int] = Field(None, description="Segment position; omit for product SKU search")
    product_line: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1, le=100)


# ========================================
# Sessions (Selection API)
# ========================================

class CreateSessionRequest(BaseModel):
    product_line: Optional[str] = None


class SetFieldRequest(BaseModel):
    value: SelectionValue = None


class UpdateSelectionRequest(BaseModel):
    changes: dict[str, SelectionValue]


class ResetRequest(BaseModel):
    use_first_options: bool = False


class LoadSkuRequest(BaseModel):
    sku: str


class SessionStateResponse(BaseModel):
    """Full configuration state of a session."""
    session_id: str
    state: dict
    events: list[dict] = Field(default_factory=list)
