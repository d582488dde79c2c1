"""
Kimland Stock Sync - Update Executor
Writes one variant's quantity, modern inventory API first.
"""

import logging

from .exceptions import PlatformError, UpdatePermissionDenied
from .models import InventoryUpdateResult

logger = logging.getLogger(__name__)

MODERN = "modern"
LEGACY = "legacy"


class UpdateExecutor:
    """
    Per-variant quantity writer.

    The modern path (inventory item + location) needs the location read
    scope; when the token lacks it the quantity is written straight onto
    the variant instead. Any other modern-path error is reported as-is.
    """

    def __init__(self, client):
        self.client = client
        self._location_id = None

    def primary_location_id(self):
        """Primary location if flagged, else the first active one. Cached."""
        if self._location_id is None:
            locations = self.client.list_locations()
            if not locations:
                raise PlatformError("Shop has no stock location")
            chosen = (
                next((loc for loc in locations if loc.get("primary")), None)
                or next((loc for loc in locations if loc.get("active", True)), None)
                or locations[0]
            )
            self._location_id = chosen["id"]
            logger.info(f"📍 Using location {chosen.get('name', chosen['id'])}")
        return self._location_id

    def apply(self, variant_id, quantity: int) -> InventoryUpdateResult:
        log_extra = {"variant_id": str(variant_id)}
        try:
            inventory_item_id = self.client.get_inventory_item_id(variant_id)
            self.client.set_inventory_level(inventory_item_id, self.primary_location_id(), quantity)
        except PlatformError as e:
            if not (isinstance(e, UpdatePermissionDenied) or e.is_permission_error):
                logger.error(f"❌ Inventory update failed for {variant_id}: {e}", extra={**log_extra, "method": MODERN})
                return InventoryUpdateResult(success=False, method=MODERN, error=str(e))
            logger.warning(f"🔒 Modern inventory path refused ({e}), using legacy", extra=log_extra)
        else:
            logger.info(f"✅ Variant {variant_id} → {quantity}", extra={**log_extra, "method": MODERN})
            return InventoryUpdateResult(success=True, method=MODERN)

        try:
            self.client.set_variant_quantity(variant_id, quantity)
        except PlatformError as e:
            logger.error(f"❌ Both inventory paths failed for {variant_id}: {e}", extra={**log_extra, "method": LEGACY})
            return InventoryUpdateResult(success=False, method=LEGACY, error=str(e))

        logger.info(f"✅ Variant {variant_id} → {quantity}", extra={**log_extra, "method": LEGACY})
        return InventoryUpdateResult(success=True, method=LEGACY)
