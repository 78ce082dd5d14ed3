"""Catalog sources: where CatalogSnapshot records come from.

- DirectusCatalogSource reads the Directus REST API (``/items/<collection>``)
  with httpx, paging through results and retrying transport failures.
- FileCatalogSource reads the same record shapes from a YAML file; the
  bundled tenant seed catalog and the tests use it.

Both return plain dicts; configurator.logic.catalog.build_snapshot turns them
into frozen records. Any failure to reach the data is raised as
CatalogUnavailable so the CatalogStore can fall back to its last snapshot.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

import httpx
import yaml
from dotenv import load_dotenv

from configurator.errors import CatalogUnavailable

load_dotenv()

logger = logging.getLogger(__name__)

PRODUCT_LINES = "product_lines"
DEFAULT_OPTIONS_JUNCTION = "product_lines_default_options"
PRODUCTS = "products"
OVERRIDES = "products_options_overrides"
RULES = "rules"
SKU_CODE_ORDER = "sku_code_order"


# =============================================================================
# DIRECTUS (REST)
# =============================================================================

class DirectusCatalogSource:
    """Catalog source backed by a Directus instance."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 timeout: float = 10.0, page_size: int = 200, max_retries: int = 2,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = (base_url or os.getenv("DIRECTUS_URL") or "").rstrip("/")
        self.token = token if token is not None else os.getenv("DIRECTUS_TOKEN")
        self.timeout = timeout
        self.page_size = page_size
        self.max_retries = max_retries
        self.transport = transport
        self._client: Optional[httpx.Client] = None
        self._junction_cache: Optional[list[dict]] = None

    @classmethod
    def from_config(cls, catalog_config) -> "DirectusCatalogSource":
        return cls(
            base_url=os.getenv(catalog_config.base_url_env),
            token=os.getenv(catalog_config.token_env),
            timeout=catalog_config.timeout_seconds,
            page_size=catalog_config.page_size,
            max_retries=catalog_config.max_retries,
        )

    def connect(self) -> httpx.Client:
        if not self.base_url:
            raise CatalogUnavailable("DIRECTUS_URL is not configured")
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._client = httpx.Client(base_url=self.base_url, headers=headers,
                                        timeout=self.timeout, transport=self.transport)
        return self._client

    def reconnect(self):
        """Drop the current client and open a new one."""
        self.close()
        return self.connect()

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    def _execute_with_retry(self, query_func, max_retries: Optional[int] = None):
        """Execute a request function with automatic retry on transport failure."""
        retries = self.max_retries if max_retries is None else max_retries
        last_error = None
        for attempt in range(retries + 1):
            try:
                return query_func()
            except httpx.TransportError as e:
                last_error = e
                logger.warning(f"[Catalog] Transport error (attempt {attempt + 1}/{retries + 1}): {e}")
                if attempt < retries:
                    self.reconnect()
            except httpx.HTTPStatusError as e:
                raise CatalogUnavailable(
                    f"Catalog request failed with HTTP {e.response.status_code}: {e.request.url}"
                ) from e
        raise CatalogUnavailable(f"Catalog unreachable after {retries + 1} attempts: {last_error}") from last_error

    def get_items(self, collection: str, filter: Optional[dict] = None,
                  fields: Optional[list[str]] = None, sort: Optional[list[str]] = None) -> list[dict]:
        """Fetch every item of a collection, page by page."""
        items = []
        page = 1
        while True:
            params = {"limit": self.page_size, "page": page}
            if filter:
                params["filter"] = json.dumps(filter)
            if fields:
                params["fields"] = ",".join(fields)
            if sort:
                params["sort"] = ",".join(sort)

            def _query():
                response = self.connect().get(f"/items/{collection}", params=params)
                response.raise_for_status()
                try:
                    payload = response.json()
                except ValueError as e:
                    raise CatalogUnavailable(f"Catalog returned a non-JSON body for {collection}: {e}") from e
                if not isinstance(payload, dict):
                    raise CatalogUnavailable(f"Catalog returned an unexpected body for {collection}")
                return payload.get("data") or []

            batch = self._execute_with_retry(_query)
            items.extend(batch)
            if len(batch) < self.page_size:
                break
            page += 1

        logger.debug(f"[Catalog] Loaded {len(items)} {collection} item(s)")
        return items

    def _junction_rows(self) -> list[dict]:
        if self._junction_cache is None:
            self._junction_cache = self.get_items(DEFAULT_OPTIONS_JUNCTION, sort=["id"])
        return self._junction_cache

    def get_product_lines(self) -> list[dict]:
        self._junction_cache = None
        lines = self.get_items(PRODUCT_LINES, filter={"active": {"_eq": True}}, sort=["sort", "id"])
        return [{**line, "default_options": self.get_default_options(line["id"])} for line in lines]

    def get_default_options(self, line_id) -> list[dict]:
        return [
            {"collection": row["collection"], "item": str(row["item"])}
            for row in self._junction_rows()
            if str(row.get("product_lines_id")) == str(line_id)
        ]

    def get_option_records(self, collection: str) -> list[dict]:
        return self.get_items(collection, filter={"active": {"_eq": True}}, sort=["sort", "id"])

    def get_products(self, line_id=None) -> list[dict]:
        filter = {"product_line": {"_eq": line_id}} if line_id is not None else None
        return self.get_items(PRODUCTS, filter=filter)

    def get_overrides(self) -> list[dict]:
        return self.get_items(OVERRIDES)

    def get_rules(self) -> list[dict]:
        return self.get_items(RULES, sort=["-priority", "id"])

    def get_sku_field_order(self) -> list[dict]:
        return self.get_items(SKU_CODE_ORDER, sort=["order"])


# =============================================================================
# YAML FILE
# =============================================================================

class FileCatalogSource:
    """Catalog source reading a YAML document with the REST record shapes.

    ``default_options`` may be written compactly as ``{collection: [ids]}``.
    """

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> dict:
        """Read the whole file (every call, so refreshes see edits)."""
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise CatalogUnavailable(f"Cannot read catalog file {self.path}: {e}") from e

    @staticmethod
    def _expand_defaults(raw) -> list[dict]:
        if isinstance(raw, dict):
            return [
                {"collection": collection, "item": str(item)}
                for collection, items in raw.items()
                for item in (items or [])
            ]
        return [{"collection": d["collection"], "item": str(d["item"])} for d in (raw or [])]

    def get_product_lines(self) -> list[dict]:
        lines = []
        for line in self.load().get(PRODUCT_LINES, []):
            lines.append({**line, "default_options": self._expand_defaults(line.get("default_options"))})
        return lines

    def get_default_options(self, line_id) -> list[dict]:
        for line in self.get_product_lines():
            if str(line["id"]) == str(line_id):
                return line["default_options"]
        return []

    def get_option_records(self, collection: str) -> list[dict]:
        return list(self.load().get("options", {}).get(collection, []))

    def get_products(self, line_id=None) -> list[dict]:
        products = self.load().get(PRODUCTS, [])
        if line_id is None:
            return list(products)
        return [p for p in products if str(p.get("product_line")) == str(line_id)]

    def get_overrides(self) -> list[dict]:
        return list(self.load().get(OVERRIDES, []))

    def get_rules(self) -> list[dict]:
        return list(self.load().get(RULES, []))

    def get_sku_field_order(self) -> list[dict]:
        return list(self.load().get(SKU_CODE_ORDER, []))


def create_catalog_source(config):
    """Build the catalog source a tenant config asks for."""
    if config.catalog.kind == "directus":
        return DirectusCatalogSource.from_config(config.catalog)
    return FileCatalogSource(config.resolve_catalog_path())
