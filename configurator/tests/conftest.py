"""Shared fixtures for the configurator test suite.

Loads the REAL tenant config and seed catalog (tenants/deco_mirrors/) so
tests pin actual catalog values. DictCatalogSource builds small in-memory
catalogs for edge cases.
"""

import sys
import copy
from pathlib import Path

import pytest

# Ensure the package is importable without installation
PACKAGE_DIR = Path(__file__).resolve().parent.parent
PROJECT_ROOT = PACKAGE_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from configurator.config_loader import get_config
from configurator.database import FileCatalogSource
from configurator.logic.catalog import CatalogStore, build_snapshot
from configurator.logic.field_mapping import FieldMapping
from configurator.logic.session import EngineSettings


# =============================================================================
# IN-MEMORY CATALOG SOURCE
# =============================================================================

class DictCatalogSource:
    """Catalog source over plain dicts (same record shapes as the REST API)."""

    def __init__(self, data: dict):
        self.data = data
        self.calls = 0

    def get_product_lines(self):
        self.calls += 1
        lines = []
        for line in self.data.get("product_lines", []):
            defaults = FileCatalogSource._expand_defaults(line.get("default_options"))
            lines.append({**line, "default_options": defaults})
        return lines

    def get_default_options(self, line_id):
        for line in self.get_product_lines():
            if str(line["id"]) == str(line_id):
                return line["default_options"]
        return []

    def get_option_records(self, collection):
        return list(self.data.get("options", {}).get(collection, []))

    def get_products(self, line_id=None):
        return list(self.data.get("products", []))

    def get_overrides(self):
        return list(self.data.get("products_options_overrides", []))

    def get_rules(self):
        return list(self.data.get("rules", []))

    def get_sku_field_order(self):
        return list(self.data.get("sku_code_order", []))


# =============================================================================
# CONFIG FIXTURES
# =============================================================================

@pytest.fixture
def config():
    """Load real DomainConfig from tenant config (not mocked)."""
    return get_config("deco_mirrors")


@pytest.fixture
def field_mapping(config):
    return FieldMapping.from_config(config.collections)


@pytest.fixture
def settings(config):
    return EngineSettings.from_config(config)


# =============================================================================
# CATALOG FIXTURES
# =============================================================================

@pytest.fixture
def catalog_data(config):
    """Raw seed catalog as a mutable dict (copy per test)."""
    return copy.deepcopy(FileCatalogSource(config.resolve_catalog_path()).load())


@pytest.fixture
def dict_source(catalog_data):
    """In-memory source over the (mutable) seed catalog dict."""
    return DictCatalogSource(catalog_data)


@pytest.fixture
def make_snapshot(field_mapping):
    """Factory: snapshot from a raw catalog dict."""
    def _make(data: dict):
        return build_snapshot(DictCatalogSource(data), field_mapping)
    return _make


@pytest.fixture
def snapshot(config, field_mapping):
    """Snapshot of the real seed catalog."""
    return build_snapshot(FileCatalogSource(config.resolve_catalog_path()), field_mapping)


@pytest.fixture
def store(snapshot, config, field_mapping):
    """CatalogStore preloaded with the seed snapshot."""
    store = CatalogStore(FileCatalogSource(config.resolve_catalog_path()), field_mapping)
    store.install(snapshot)
    yield store
    store.close()


# =============================================================================
# SELECTIONS
# =============================================================================

@pytest.fixture
def full_deco_selection():
    """Every enabled SKU field set, no rule fires (Circle, Direct, 24 Round)."""
    return {
        "product_line": "1",
        "mirror_style": "1",
        "light_direction": "1",
        "size": "5",
        "frame_color": "1",
        "color_temperature": "1",
        "mounting_option": "1",
        "accessories": ["2", "3"],
    }
