import logging
import os
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from configurator.config_loader import (
    get_config,
    get_available_tenants,
    get_current_tenant,
    get_tenant_config_summary,
)
from configurator.database import create_catalog_source
from configurator.errors import (
    CatalogUnavailable,
    ConfiguratorError,
    MissingFieldOrder,
    UnknownProductLine,
    UnmappedCollection,
)
from configurator.logic.catalog import CatalogStore
from configurator.logic.field_mapping import FieldMapping
from configurator.logic.filtering import apply_rule_constraints, compute_options
from configurator.logic.rules_engine import build_rule_context, evaluate
from configurator.logic.session import (
    SELECTION_ADJUSTED,
    ConfigurationSession,
    EngineSettings,
    SessionManager,
    normalize_selection,
    recompute,
)
from configurator.logic.sku import parse_sku, suggest_products, suggest_segment_codes
from configurator.models import (
    CatalogRefreshResponse,
    CreateSessionRequest,
    LoadSkuRequest,
    OptionOut,
    OptionsRequest,
    ProductLineOut,
    ResetRequest,
    SessionStateResponse,
    SetFieldRequest,
    SkuBuildRequest,
    SkuParseRequest,
    SkuParseResponse,
    SuggestionsRequest,
    UpdateSelectionRequest,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="Product Configurator API")

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

session_manager = SessionManager()

_store: Optional[CatalogStore] = None
_settings: Optional[EngineSettings] = None


def get_store() -> CatalogStore:
    """Catalog store for the current tenant, created on first use."""
    global _store
    if _store is None:
        config = get_config()
        _store = CatalogStore(
            create_catalog_source(config),
            FieldMapping.from_config(config.collections),
            refresh_timeout=config.catalog.refresh_timeout_seconds,
        )
    return _store


def get_settings() -> EngineSettings:
    global _settings
    if _settings is None:
        _settings = EngineSettings.from_config(get_config())
    return _settings


def set_store(store: Optional[CatalogStore], settings: Optional[EngineSettings] = None):
    """Swap the catalog store (tenant switch, tests)."""
    global _store, _settings
    _store = store
    _settings = settings


_STATUS_BY_ERROR = {
    CatalogUnavailable: 503,
    UnknownProductLine: 404,
    MissingFieldOrder: 500,
    UnmappedCollection: 500,
}


@app.exception_handler(ConfiguratorError)
async def configurator_error_handler(request: Request, exc: ConfiguratorError) -> JSONResponse:
    status = next((s for cls, s in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error(f"[API] {type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc), "code": type(exc).__name__})


@app.on_event("startup")
async def startup_event():
    """Load the catalog snapshot on server start."""
    try:
        snapshot = get_store().snapshot
        logger.info(f"Catalog ready (as of {snapshot.as_of.isoformat()})")
    except CatalogUnavailable as e:
        logger.warning(f"Catalog not available at startup, will retry on first request: {e}")


def _get_session_or_404(session_id: str) -> ConfigurationSession:
    session = session_manager.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


def _with_events(session: ConfigurationSession, action) -> SessionStateResponse:
    """Run a session action and return its state plus the events it emitted."""
    events = []
    unsubscribe = session.subscribe(lambda event: events.append({"type": event.type, **event.payload}))
    try:
        state = action()
    finally:
        unsubscribe()
    return SessionStateResponse(session_id=session.session_id, state=state.to_dict(), events=events)


@app.get("/")
async def root():
    return {"message": "Product Configurator API is running"}


@app.get("/health")
async def health():
    store = get_store()
    return {
        "status": "healthy",
        "catalog_loaded": store.has_snapshot(),
        "sessions": len(session_manager),
    }


# =============================================================================
# TENANT CONFIG
# =============================================================================

@app.get("/config/tenant")
async def tenant_config():
    return {
        "current": get_current_tenant(),
        "available": get_available_tenants(),
        "summary": get_tenant_config_summary(),
    }


# =============================================================================
# CATALOG
# =============================================================================

@app.get("/product-lines", response_model=list[ProductLineOut])
def list_product_lines():
    snapshot = get_store().snapshot
    return [
        ProductLineOut(id=key, name=line.name, sku_code=line.sku_code,
                       default_option_count=len(line.default_options))
        for key, line in snapshot.product_lines.items()
    ]


@app.get("/product-lines/{line_id}/defaults", response_model=dict[str, list[OptionOut]])
def product_line_defaults(line_id: str):
    snapshot = get_store().snapshot
    defaults = snapshot.line_defaults(line_id)
    return {
        collection: [
            OptionOut(id=o.key, name=o.name, short_code=o.short_code, sort=o.sort)
            for o in (snapshot.get_option(collection, i) for i in ids)
        ]
        for collection, ids in defaults.items()
    }


@app.post("/catalog/refresh", response_model=CatalogRefreshResponse)
def refresh_catalog():
    result = get_store().refresh()
    return CatalogRefreshResponse(as_of=result.snapshot.as_of.isoformat(), stale=result.stale, error=result.error)


# =============================================================================
# STATELESS ENGINE ENDPOINTS
# =============================================================================

@app.post("/configure/options")
def configure_options(request: OptionsRequest):
    """Filter options for a selection without creating a session."""
    snapshot = get_store().snapshot
    line_spec = snapshot.field_mapping.line_field()
    selection = normalize_selection(dict(request.selection), snapshot)
    if line_spec is not None:
        selection[line_spec.field] = request.product_line

    filtered = compute_options(selection, request.product_line, snapshot, get_settings().trigger)
    rules = evaluate(snapshot.rules, build_rule_context(selection, snapshot), snapshot.field_mapping)
    options = apply_rule_constraints(filtered, rules.constraints)
    return {
        "options": options.to_dict(),
        "matched_rules": [r.id for r in rules.matched],
        "constraints": {
            c: {"allow": sorted(k.allow), "deny": sorted(k.deny)} for c, k in rules.constraints.items()
        },
    }


@app.post("/sku/build")
def build_sku_endpoint(request: SkuBuildRequest):
    """Run the full pipeline for a selection and return the SKU."""
    state, events = recompute(dict(request.selection), get_store().snapshot, get_settings())
    if state.line_id is None:
        raise HTTPException(status_code=400, detail="Selection has no product line")
    return {
        "sku": state.sku.to_dict(),
        "selection": state.selection,
        "adjustments": [e.payload for e in events if e.type == SELECTION_ADJUSTED],
    }


@app.post("/sku/parse", response_model=SkuParseResponse)
def parse_sku_endpoint(request: SkuParseRequest):
    snapshot = get_store().snapshot
    settings = get_settings()
    result = parse_sku(
        request.sku, snapshot.sku_field_order, snapshot, line_id=request.product_line,
        delimiter=settings.delimiter, multi_separator=settings.multi_separator,
    )
    return result.to_dict()


@app.post("/sku/suggestions")
def sku_suggestions(request: SuggestionsRequest):
    snapshot = get_store().snapshot
    limit = request.limit or get_settings().suggestion_limit
    if request.position is None:
        return {"products": suggest_products(snapshot, request.query, limit=limit, line_id=request.product_line)}
    return {
        "codes": suggest_segment_codes(
            snapshot, snapshot.sku_field_order, request.position, request.query,
            limit=limit, line_id=request.product_line,
        )
    }


# =============================================================================
# SESSIONS (Selection API)
# =============================================================================

@app.post("/sessions", response_model=SessionStateResponse)
def create_session(request: CreateSessionRequest):
    session = session_manager.create_session(get_store(), get_settings(), line_id=request.product_line)
    return SessionStateResponse(session_id=session.session_id, state=session.state.to_dict())


@app.get("/sessions/{session_id}", response_model=SessionStateResponse)
def get_session(session_id: str):
    session = _get_session_or_404(session_id)
    return SessionStateResponse(session_id=session.session_id, state=session.state.to_dict())


@app.get("/sessions/{session_id}/fields/{field}")
def get_field(session_id: str, field: str):
    session = _get_session_or_404(session_id)
    return {"field": field, "value": session.get(field)}


@app.put("/sessions/{session_id}/fields/{field}", response_model=SessionStateResponse)
def set_field(session_id: str, field: str, request: SetFieldRequest):
    session = _get_session_or_404(session_id)
    return _with_events(session, lambda: session.set(field, request.value))


@app.patch("/sessions/{session_id}/selection", response_model=SessionStateResponse)
def update_selection(session_id: str, request: UpdateSelectionRequest):
    session = _get_session_or_404(session_id)
    return _with_events(session, lambda: session.update(request.changes))


@app.post("/sessions/{session_id}/reset", response_model=SessionStateResponse)
def reset_session(session_id: str, request: ResetRequest):
    session = _get_session_or_404(session_id)
    return _with_events(session, lambda: session.reset(use_first_options=request.use_first_options))


@app.post("/sessions/{session_id}/sku")
def load_sku(session_id: str, request: LoadSkuRequest):
    session = _get_session_or_404(session_id)
    parsed, state = session.load_sku(request.sku)
    return {"parse": parsed.to_dict(), "session_id": session.session_id, "state": state.to_dict()}


@app.post("/sessions/{session_id}/catalog/refresh", response_model=SessionStateResponse)
def refresh_session_catalog(session_id: str):
    session = _get_session_or_404(session_id)
    return _with_events(session, session.refresh_catalog)


@app.delete("/sessions/{session_id}")
def delete_session(session_id: str):
    if not session_manager.delete_session(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return {"deleted": session_id}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
