"""
Kimland Stock Sync - Inventory Reconciler
Maps Kimland sizes onto Shopify variants and pushes stock differences.
"""

import logging
import re
from typing import List, Optional, Set

from .exceptions import PlatformError
from .models import LocalProduct, LocalVariant, RemoteProduct, UpdateResult
from .reference import extract_reference, normalize_reference
from .updater import UpdateExecutor

logger = logging.getLogger(__name__)

# Kimland label → Shopify option value. Unlisted labels pass through.
SIZE_MAPPING = {
    "2XL": "XXL",
    "3XL": "XXXL",
    "4XL": "XXXXL",
    "XS": "XS",
    "S": "S",
    "M": "M",
    "L": "L",
    "XL": "XL",
    "XXL": "XXL",
    "XXXL": "XXXL",
    "TU": "Standard",
    "TAILLE UNIQUE": "Standard",
}

LETTER_SIZE = re.compile(r"^(\d?X{0,3}[SML]|\d?XL|X{1,4}L)$", re.IGNORECASE)
HALF_SHOE_SIZE = re.compile(r"^(\d{2})\s*(?:[.,]5|1/2|½)$")

# Remote sizes that mean "the product has no real size"
WILDCARD_SIZES = {"standard", "std", "unique", "taille unique", "default title", "default"}

COLOR_KEYWORDS = {
    "noir", "blanc", "rouge", "bleu", "vert", "jaune", "gris", "rose", "marron",
    "beige", "orange", "violet", "bordeaux", "kaki", "marine", "argent", "or",
    "black", "white", "red", "blue", "green", "yellow", "grey", "gray", "pink",
    "brown", "purple", "navy", "silver", "gold", "multicolor", "multicolore",
}
COLOR_WORD = re.compile(r"[a-zà-ÿ]+")


def normalize_size(label: Optional[str]) -> str:
    """Kimland or Shopify size label → comparison form."""
    label = " ".join((label or "").split())
    if not label:
        return ""
    mapped = SIZE_MAPPING.get(label.upper())
    if mapped:
        return mapped
    half = HALF_SHOE_SIZE.match(label)
    if half:
        return f"{half.group(1)}.5"
    if LETTER_SIZE.match(label):
        return label.upper()
    return label


def is_wildcard_size(size: str) -> bool:
    lowered = size.lower()
    return lowered in WILDCARD_SIZES or lowered.startswith("dimension")


def looks_like_color(value: str) -> bool:
    words = COLOR_WORD.findall(value.lower())
    return any(word in COLOR_KEYWORDS for word in words)


NUMERIC_SIZE = re.compile(r"^\d+(\.\d+)?$")

# 422 bodies meaning the product options cannot take a new value
OPTION_CONFLICT_MARKERS = ("metafield", "Cannot set name for an option value")


def has_numeric_sizes(variants: List[LocalVariant], size_column: int) -> bool:
    return any(NUMERIC_SIZE.match(v.option(size_column) or "") for v in variants)


def is_option_value_conflict(error: PlatformError) -> bool:
    return error.status_code == 422 and any(marker in str(error) for marker in OPTION_CONFLICT_MARKERS)


def detect_size_column(variants: List[LocalVariant]) -> int:
    """
    1-based option column holding sizes.

    A column is a colour column when most of its values name a colour;
    the first remaining column with values is the size column.
    """
    color_columns: Set[int] = set()
    filled: List[int] = []
    for index in (1, 2, 3):
        values = [v.option(index) for v in variants if v.option(index)]
        if not values:
            continue
        filled.append(index)
        colored = sum(1 for value in values if looks_like_color(value))
        if colored * 2 >= len(values):
            color_columns.add(index)

    for index in filled:
        if index not in color_columns:
            return index
    return 1


class InventoryReconciler:
    """
    Applies one Kimland product's stock to its Shopify counterpart.

    Each Shopify variant is matched at most once per `reconcile()`. Sizes
    only Kimland lists are created on Shopify; sizes Kimland no longer
    lists are set to 0. A size whose count could not be read is left alone.
    """

    def __init__(self, client, executor: Optional[UpdateExecutor] = None, zero_missing_sizes: bool = True):
        self.client = client
        self.executor = executor or UpdateExecutor(client)
        self.zero_missing_sizes = zero_missing_sizes

    @staticmethod
    def canonical_identifier(product: LocalProduct) -> Optional[str]:
        """Reference from the description, else from the title."""
        return extract_reference(product.body_html) or extract_reference(product.title)

    def correct_variant_skus(self, product: LocalProduct, canonical: str) -> int:
        """Align variant SKUs with the product reference. Failures are logged only."""
        corrected = 0
        for variant in product.variants:
            if normalize_reference(variant.sku or "") == canonical:
                continue
            logger.info(
                f"🏷️ Variant {variant.id} SKU {variant.sku!r} → {canonical}",
                extra={"variant_id": str(variant.id), "sku": canonical},
            )
            try:
                self.client.update_variant_sku(variant.id, canonical)
                corrected += 1
            except PlatformError as e:
                logger.warning(f"⚠️ Could not correct SKU of variant {variant.id}: {e}")
        return corrected

    def reconcile(self, local: LocalProduct, remote: RemoteProduct) -> UpdateResult:
        result = UpdateResult()
        product_extra = {"product_id": str(local.id)}

        canonical = self.canonical_identifier(local)
        if canonical:
            self.correct_variant_skus(local, canonical)

        if not remote.variants:
            logger.info(f"ℹ️ {remote.name}: no sizes on Kimland, nothing to reconcile", extra=product_extra)
            return result

        size_column = detect_size_column(local.variants)
        logger.debug(f"Product {local.id}: sizes in option{size_column}")

        processed: Set[int] = set()
        remote_sizes: Set[str] = set()

        for remote_variant in remote.variants:
            size = normalize_size(remote_variant.size)
            remote_sizes.add(size)

            if not remote_variant.stock_parsed:
                logger.warning(
                    f"⚠️ No stock count for Kimland size {remote_variant.size}, left unchanged",
                    extra=product_extra,
                )
                continue

            match = self._match(local.variants, size, size_column, processed)
            if match is None:
                self._create(local, size, size_column, remote_variant.stock, canonical, result)
                continue
            processed.add(match.id)

            if remote_variant.stock == match.inventory_quantity:
                logger.debug(f"Variant {match.id} ({size}) already at {match.inventory_quantity}")
                continue

            logger.info(
                f"🔄 {size}: {match.inventory_quantity} → {remote_variant.stock}",
                extra={"variant_id": str(match.id), **product_extra},
            )
            self._apply(match, remote_variant.stock, result)

        if self._should_zero_missing(remote):
            for variant in local.variants:
                if variant.id in processed or variant.inventory_quantity <= 0:
                    continue
                if normalize_size(variant.option(size_column)) in remote_sizes:
                    continue
                logger.info(
                    f"🚫 {variant.option(size_column)} gone from Kimland: {variant.inventory_quantity} → 0",
                    extra={"variant_id": str(variant.id), **product_extra},
                )
                self._apply(variant, 0, result)

        logger.info(
            f"📊 {local.title}: {result.updates} updated, {result.creates} created, {result.errors} errors",
            extra=product_extra,
        )
        return result

    def _match(
        self,
        variants: List[LocalVariant],
        size: str,
        size_column: int,
        processed: Set[int],
    ) -> Optional[LocalVariant]:
        unprocessed = [v for v in variants if v.id not in processed]
        if is_wildcard_size(size):
            return unprocessed[0] if unprocessed else None
        for variant in unprocessed:
            if normalize_size(variant.option(size_column)) == size:
                return variant
        return None

    def _should_zero_missing(self, remote: RemoteProduct) -> bool:
        if not self.zero_missing_sizes:
            return False
        if not remote.sizes_parsed:
            logger.warning(f"⚠️ No stock count parsed for {remote.name}, not zeroing missing sizes")
            return False
        return True

    def _apply(self, variant: LocalVariant, quantity: int, result: UpdateResult):
        outcome = self.executor.apply(variant.id, quantity)
        if outcome.success:
            result.updates += 1
        else:
            result.errors += 1

    def _create(
        self,
        local: LocalProduct,
        size: str,
        size_column: int,
        quantity: int,
        sku: Optional[str],
        result: UpdateResult,
    ):
        """Add the Kimland size to Shopify; other option columns copy the first variant."""
        product_extra = {"product_id": str(local.id)}
        if not size:
            return
        if is_wildcard_size(size) and has_numeric_sizes(local.variants, size_column):
            logger.info(f"⏭️ {size} not created: product already has numeric sizes", extra=product_extra)
            return

        option_values = {f"option{size_column}": size}
        if local.variants:
            first = local.variants[0]
            for index in (1, 2, 3):
                if index != size_column and first.option(index):
                    option_values[f"option{index}"] = first.option(index)

        try:
            self.client.create_variant(local.id, option_values, quantity, sku=sku)
            result.creates += 1
        except PlatformError as e:
            if is_option_value_conflict(e):
                logger.info(f"⏭️ {size} not created: options are bound to metafields", extra=product_extra)
                return
            logger.error(f"❌ Could not create variant {size}: {e}", extra=product_extra)
            result.errors += 1
