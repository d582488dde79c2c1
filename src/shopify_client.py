"""
Kimland Stock Sync - Shopify Client
Thin wrapper over the Shopify Admin REST API, with retries on GETs.
"""

import logging
import time
from typing import List, Optional

import requests

from .exceptions import PlatformError, UpdatePermissionDenied
from .models import InventoryUpdateResult, LocalProduct, LocalVariant, PlatformContext
from .updater import UpdateExecutor

logger = logging.getLogger(__name__)


def normalize_shop(shop: str) -> str:
    """'https://foo.myshopify.com/' and 'foo' both become 'foo.myshopify.com'."""
    shop = (shop or "").strip()
    for prefix in ("https://", "http://"):
        if shop.startswith(prefix):
            shop = shop[len(prefix):]
    shop = shop.rstrip("/")
    if shop and "." not in shop:
        shop = f"{shop}.myshopify.com"
    return shop


class ShopifyClient:
    """
    Shopify Admin REST client.

    Features:
    - GETs retried with exponential backoff on 5xx, 408 and 429
    - Cursor pagination through the Link header
    - 403 raised as UpdatePermissionDenied so callers can fall back
    """

    MAX_RETRIES = 3
    RETRY_DELAY = 2  # seconds, doubles each retry
    PAGE_SIZE = 250  # Shopify maximum
    MAX_PAGES = 100

    def __init__(
        self,
        shop: str,
        access_token: str,
        api_version: str = "2024-10",
        timeout: float = 30.0,
        http: Optional[requests.Session] = None,
    ):
        self.shop = normalize_shop(shop)
        self.api_version = api_version
        self.timeout = timeout
        self.http = http or requests.Session()
        self.http.headers.update({
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        self.executor = UpdateExecutor(self)
        logger.debug(f"ShopifyClient initialized for {self.shop} (api {api_version})")

    @classmethod
    def from_context(cls, context: PlatformContext, api_version: str = "2024-10", timeout: float = 30.0):
        return cls(context.shop, context.access_token, api_version=api_version, timeout=timeout)

    def url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"https://{self.shop}/admin/api/{self.api_version}/{path.lstrip('/')}"

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    def _request(self, method: str, path: str, variant_id=None, **kwargs) -> requests.Response:
        """One attempt; non-2xx responses become PlatformError."""
        try:
            response = self.http.request(method, self.url(path), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise PlatformError(f"{method} {path} failed: {e}", variant_id=variant_id) from e

        if 200 <= response.status_code < 300:
            return response

        message = f"{method} {path} returned {response.status_code}: {(response.text or '')[:200]}"
        if response.status_code == 403:
            raise UpdatePermissionDenied(message, status_code=403, variant_id=variant_id)
        raise PlatformError(message, status_code=response.status_code, variant_id=variant_id)

    def _get(self, path: str, params: dict = None) -> requests.Response:
        last_error = None
        for attempt in range(self.MAX_RETRIES):
            try:
                return self._request("GET", path, params=params)
            except PlatformError as e:
                last_error = e
                if not e.is_retryable or attempt == self.MAX_RETRIES - 1:
                    raise
                delay = self.RETRY_DELAY * (2 ** attempt)
                logger.warning(f"⚠️ {e}")
                logger.info(f"🔄 Retrying in {delay}s (attempt {attempt + 2}/{self.MAX_RETRIES})...")
                time.sleep(delay)
        raise last_error

    # -------------------------------------------------------------------------
    # Products
    # -------------------------------------------------------------------------

    def get_product(self, product_id) -> Optional[LocalProduct]:
        try:
            response = self._get(f"products/{product_id}.json")
        except PlatformError as e:
            if e.status_code == 404:
                logger.warning(f"⚠️ Shopify product {product_id} not found", extra={"product_id": str(product_id)})
                return None
            raise
        return LocalProduct.model_validate(response.json()["product"])

    def get_all_products(self) -> List[LocalProduct]:
        """Every product in the shop; on error, whatever was collected so far."""
        products: List[LocalProduct] = []
        path = "products.json"
        params = {"limit": self.PAGE_SIZE}

        for page in range(1, self.MAX_PAGES + 1):
            try:
                response = self._get(path, params=params)
            except PlatformError as e:
                logger.error(f"❌ Product listing stopped at page {page}: {e}")
                break

            batch = response.json().get("products", [])
            products.extend(LocalProduct.model_validate(p) for p in batch)
            logger.debug(f"Page {page}: {len(batch)} products")

            next_url = response.links.get("next", {}).get("url")
            if not next_url or not batch:
                break
            path, params = next_url, None
        else:
            logger.warning(f"⚠️ Stopped after {self.MAX_PAGES} pages")

        logger.info(f"📦 Fetched {len(products)} Shopify products")
        return products

    def update_variant_sku(self, variant_id, sku: str) -> LocalVariant:
        response = self._request(
            "PUT",
            f"variants/{variant_id}.json",
            variant_id=str(variant_id),
            json={"variant": {"id": variant_id, "sku": sku}},
        )
        logger.info(f"🏷️ Variant {variant_id} SKU set to {sku}", extra={"variant_id": str(variant_id)})
        return LocalVariant.model_validate(response.json()["variant"])

    def create_variant(self, product_id, option_values: dict, quantity: int, sku: Optional[str] = None) -> LocalVariant:
        """Add a stock-tracked variant, e.g. {"option1": "44"}."""
        variant = {
            **option_values,
            "inventory_quantity": quantity,
            "inventory_management": "shopify",
            "inventory_policy": "deny",
        }
        if sku:
            variant["sku"] = sku
        response = self._request(
            "POST",
            f"products/{product_id}/variants.json",
            json={"variant": variant},
        )
        created = LocalVariant.model_validate(response.json()["variant"])
        logger.info(
            f"➕ Variant {created.id} created on product {product_id} ({option_values})",
            extra={"product_id": str(product_id), "variant_id": str(created.id)},
        )
        return created

    # -------------------------------------------------------------------------
    # Inventory
    # -------------------------------------------------------------------------

    def list_locations(self) -> List[dict]:
        return self._get("locations.json").json().get("locations", [])

    def get_inventory_item_id(self, variant_id) -> int:
        variant = self._get(f"variants/{variant_id}.json").json().get("variant", {})
        item_id = variant.get("inventory_item_id")
        if not item_id:
            raise PlatformError("Variant has no inventory item", variant_id=str(variant_id))
        return item_id

    def set_inventory_level(self, inventory_item_id, location_id, quantity: int) -> dict:
        """Modern path: absolute quantity at one location."""
        response = self._request(
            "POST",
            "inventory_levels/set.json",
            json={
                "location_id": location_id,
                "inventory_item_id": inventory_item_id,
                "available": quantity,
            },
        )
        return response.json().get("inventory_level", {})

    def set_variant_quantity(self, variant_id, quantity: int) -> LocalVariant:
        """Legacy path: write inventory_quantity on the variant itself."""
        response = self._request(
            "PUT",
            f"variants/{variant_id}.json",
            variant_id=str(variant_id),
            json={"variant": {"id": variant_id, "inventory_quantity": quantity}},
        )
        return LocalVariant.model_validate(response.json()["variant"])

    def update_inventory(self, variant_id, quantity: int) -> InventoryUpdateResult:
        return self.executor.apply(variant_id, quantity)
