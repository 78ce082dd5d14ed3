"""Configuration Loader for the Product Configurator.

This module provides a type-safe, validated configuration system.
Everything tenant-specific (which catalog collections exist, how they map
onto selection fields and rule context keys, the SKU format, where the
catalog comes from) is externalized to YAML files under tenants/<id>/.
"""

import os
from pathlib import Path
from typing import Optional, Literal
from dataclasses import dataclass, field

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


# =============================================================================
# PYDANTIC MODELS FOR CONFIGURATION VALIDATION
# =============================================================================

class CollectionConfig(BaseModel):
    """One row of the collection <-> selection field <-> rule context table."""
    collection: str
    field: str
    context_key: str = ""
    label: str = ""
    required: bool = False
    multi_select: bool = Field(default=False, description="Selection holds a list of option ids")
    product_attribute: bool = Field(
        default=False,
        description="Products carry a value for this field, so it discriminates between products",
    )

    def model_post_init(self, __context) -> None:
        if not self.context_key:
            self.context_key = self.field
        if not self.label:
            self.label = self.collection.replace("_", " ").title()


class OverrideTriggerConfig(BaseModel):
    """When product Override rows start replacing option sets."""
    min_selected_fields: int = Field(default=1, ge=0)
    max_candidates: Optional[int] = Field(default=None, ge=1)


class SkuFormatConfig(BaseModel):
    """SKU string format."""
    delimiter: str = "-"
    multi_value_separator: str = "+"
    suggestion_limit: int = 20


class CatalogSourceConfig(BaseModel):
    """Where catalog data is fetched from."""
    kind: Literal["file", "directus"] = "file"
    path: str = "catalog.yaml"
    base_url_env: str = "DIRECTUS_URL"
    token_env: str = "DIRECTUS_TOKEN"
    timeout_seconds: float = 10.0
    refresh_timeout_seconds: float = 30.0
    page_size: int = 200
    max_retries: int = 2


# =============================================================================
# MAIN CONFIGURATION CONTAINER
# =============================================================================

@dataclass
class DomainConfig:
    """Complete tenant configuration container."""

    # Tenant metadata
    tenant_id: str = ""
    domain_name: str = ""
    company: str = ""
    description: str = ""
    version: str = "1.0"

    # Field mapping table
    collections: list[CollectionConfig] = field(default_factory=list)

    # Engine settings
    override_trigger: OverrideTriggerConfig = field(default_factory=OverrideTriggerConfig)
    sku: SkuFormatConfig = field(default_factory=SkuFormatConfig)
    catalog: CatalogSourceConfig = field(default_factory=CatalogSourceConfig)

    # Directory the config was loaded from (relative catalog paths resolve here)
    config_dir: Optional[Path] = None

    def get_collection(self, collection: str) -> Optional[CollectionConfig]:
        """Find the mapping row for a collection name."""
        for c in self.collections:
            if c.collection == collection:
                return c
        return None

    def get_required_fields(self) -> list[str]:
        """Selection fields that must be set for a complete configuration."""
        return [c.field for c in self.collections if c.required]

    def resolve_catalog_path(self) -> Path:
        """Absolute path of the file catalog source."""
        path = Path(self.catalog.path)
        if not path.is_absolute() and self.config_dir is not None:
            path = self.config_dir / path
        return path


# =============================================================================
# CONFIGURATION LOADER
# =============================================================================

# Default tenant from environment variable or fallback
DEFAULT_TENANT = os.environ.get("CONFIGURATOR_TENANT", "deco_mirrors")

_PACKAGE_DIR = Path(__file__).parent
_TENANTS_DIR = _PACKAGE_DIR / "tenants"


def _resolve_config_path(tenant_id: str) -> Path:
    """Resolve config file path for a tenant."""
    return _TENANTS_DIR / tenant_id / "config.yaml"


def get_available_tenants() -> list[dict]:
    """Get list of available tenant configurations from the tenants/ directory."""
    tenants = []
    if not _TENANTS_DIR.exists():
        return tenants

    for tenant_dir in sorted(_TENANTS_DIR.iterdir()):
        config_path = tenant_dir / "config.yaml"
        if tenant_dir.is_dir() and config_path.exists():
            with open(config_path, 'r', encoding='utf-8') as f:
                raw = yaml.safe_load(f) or {}
            domain_meta = raw.get("domain", {})
            tenants.append({
                "id": tenant_dir.name,
                "name": domain_meta.get("name", tenant_dir.name),
                "company": domain_meta.get("company", "Unknown"),
                "description": domain_meta.get("description", ""),
                "version": domain_meta.get("version", "1.0"),
                "config_file": str(config_path)
            })

    return tenants


def load_domain_config(config_path: Optional[str] = None, tenant_id: Optional[str] = None) -> DomainConfig:
    """Load and validate tenant configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses tenant_id to find config.
        tenant_id: Tenant identifier. If None, uses DEFAULT_TENANT.

    Returns:
        Validated DomainConfig object
    """
    if config_path is None:
        if tenant_id is None:
            tenant_id = DEFAULT_TENANT
        config_path = _resolve_config_path(tenant_id)

    config_path = Path(config_path)
    with open(config_path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f) or {}

    config = DomainConfig()
    config.config_dir = config_path.parent

    # Tenant metadata
    domain = raw.get("domain", {})
    config.tenant_id = tenant_id or domain.get("id", config_path.parent.name)
    config.domain_name = domain.get("name", "")
    config.company = domain.get("company", "")
    config.description = domain.get("description", "")
    config.version = str(domain.get("version", "1.0"))

    # Field mapping table
    config.collections = [CollectionConfig(**c) for c in raw.get("collections", [])]

    # Engine settings
    config.override_trigger = OverrideTriggerConfig(**raw.get("override_trigger", {}))
    config.sku = SkuFormatConfig(**raw.get("sku", {}))
    config.catalog = CatalogSourceConfig(**raw.get("catalog", {}))

    return config


# Global config cache (per tenant)
_configs: dict[str, DomainConfig] = {}
_current_tenant: str = DEFAULT_TENANT


def get_config(tenant_id: Optional[str] = None) -> DomainConfig:
    """Get the loaded tenant configuration.

    Args:
        tenant_id: Optional tenant to load. If None, uses current tenant.

    Returns:
        DomainConfig for the specified or current tenant.
    """
    global _configs, _current_tenant

    if tenant_id is None:
        tenant_id = _current_tenant

    if tenant_id not in _configs:
        _configs[tenant_id] = load_domain_config(tenant_id=tenant_id)

    return _configs[tenant_id]


def get_current_tenant() -> str:
    """Get the current active tenant ID."""
    return _current_tenant


def set_current_tenant(tenant_id: str) -> DomainConfig:
    """Switch to a different tenant configuration.

    Raises:
        ValueError: If tenant_id cannot be resolved.
    """
    global _current_tenant

    config_path = _resolve_config_path(tenant_id)
    if not config_path.exists():
        available = [t["id"] for t in get_available_tenants()]
        raise ValueError(f"Unknown tenant '{tenant_id}'. Available: {available}")

    _current_tenant = tenant_id
    return get_config(tenant_id)


def reload_config(config_path: Optional[str] = None, tenant_id: Optional[str] = None) -> DomainConfig:
    """Force reload of configuration.

    Args:
        config_path: Optional specific path to load from.
        tenant_id: Optional tenant to reload. If None, reloads current tenant.
    """
    global _configs, _current_tenant

    if tenant_id is None:
        tenant_id = _current_tenant

    _configs[tenant_id] = load_domain_config(config_path, tenant_id)
    return _configs[tenant_id]


def get_tenant_config_summary() -> dict:
    """Get a summary of the current tenant configuration."""
    config = get_config()
    return {
        "tenant": {
            "id": config.tenant_id,
            "name": config.domain_name,
            "company": config.company,
            "description": config.description,
            "version": config.version,
        },
        "collections": [
            {
                "collection": c.collection,
                "field": c.field,
                "context_key": c.context_key,
                "required": c.required,
                "multi_select": c.multi_select,
                "product_attribute": c.product_attribute,
            }
            for c in config.collections
        ],
        "override_trigger": config.override_trigger.model_dump(),
        "sku": config.sku.model_dump(),
        "catalog_source": config.catalog.kind,
    }
