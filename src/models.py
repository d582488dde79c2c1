"""
Kimland Stock Sync - Pydantic Models
Data models for remote (Kimland) products, local (Shopify) products,
sync results and batch progress events.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Credentials(BaseModel):
    """Login for the remote back-office. Opaque to everything but the authenticator."""
    login_id: str  # e-mail, posted as `user`
    username: str
    secret: str = Field(repr=False)


class RemoteVariant(BaseModel):
    """One (size, stock) pair scraped from a Kimland detail page."""
    model_config = ConfigDict(frozen=True)

    size: str
    stock: int = 0
    stock_parsed: bool = True  # False when the quantity fell back to 0

    @field_validator("stock", mode="before")
    @classmethod
    def clamp_stock(cls, v):
        """Stock is a non-negative integer; garbage becomes 0."""
        try:
            return max(0, int(v))
        except (TypeError, ValueError):
            return 0


class RemoteProduct(BaseModel):
    """A located Kimland product. Built once per search, never mutated."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    url: str
    price: str = ""
    old_price: Optional[str] = None
    image_url: str = ""
    variants: List[RemoteVariant] = Field(default_factory=list)

    @property
    def total_stock(self) -> int:
        return sum(v.stock for v in self.variants)

    @property
    def sizes_parsed(self) -> bool:
        """True if at least one variant carried a real stock count."""
        return any(v.stock_parsed for v in self.variants)


class LocalVariant(BaseModel):
    """Shopify variant, as returned by the Admin REST API."""
    model_config = ConfigDict(extra="ignore")

    id: int
    title: str = ""
    sku: Optional[str] = None
    option1: Optional[str] = None
    option2: Optional[str] = None
    option3: Optional[str] = None
    inventory_quantity: int = 0
    inventory_item_id: Optional[int] = None

    @field_validator("inventory_quantity", mode="before")
    @classmethod
    def none_is_zero(cls, v):
        return v or 0

    def option(self, index: int) -> Optional[str]:
        """Option value by 1-based column index."""
        return getattr(self, f"option{index}", None)


class LocalProduct(BaseModel):
    """Shopify product with its variants."""
    model_config = ConfigDict(extra="ignore")

    id: int
    title: str = ""
    body_html: Optional[str] = None
    vendor: Optional[str] = None
    variants: List[LocalVariant] = Field(default_factory=list)


class PlatformContext(BaseModel):
    """Which shop to write to, and with which token."""
    shop: str
    access_token: str = Field(repr=False)


class InventoryUpdateResult(BaseModel):
    """Outcome of one variant quantity write."""
    success: bool
    method: str  # "modern" | "legacy"
    error: Optional[str] = None


class UpdateResult(BaseModel):
    """Per-sync aggregate of variant writes."""
    updates: int = 0
    creates: int = 0
    errors: int = 0


class SyncStatus(str, Enum):
    """Terminal status of one product sync."""
    SUCCESS = "success"
    ERROR = "error"
    NOT_FOUND = "not_found"


class SyncResult(BaseModel):
    """One per sync invocation; immutable once returned."""
    model_config = ConfigDict(frozen=True)

    identifier: str
    local_product_id: str
    remote_product: Optional[RemoteProduct] = None
    status: SyncStatus
    error_message: Optional[str] = None
    update_result: Optional[UpdateResult] = None
    synced_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def remote_product_matches_status(self):
        if self.status == SyncStatus.SUCCESS and self.remote_product is None:
            raise ValueError("success requires a remote product")
        if self.status != SyncStatus.SUCCESS and self.remote_product is not None:
            raise ValueError(f"{self.status.value} must not carry a remote product")
        return self

    @property
    def remote_stock(self) -> int:
        return self.remote_product.total_stock if self.remote_product else 0


class BatchItem(BaseModel):
    """One product queued for a batch sync."""
    identifier: str
    local_product_id: str
    display_name: Optional[str] = None


class ProgressEventType(str, Enum):
    PROGRESS = "progress"
    RESULT = "result"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class ProgressEvent(BaseModel):
    """
    One line of the batch progress stream.

    Serialised with camelCase keys (``productName``, ``kimlandStock``)
    so existing dashboard consumers keep working.
    """
    model_config = ConfigDict(populate_by_name=True)

    type: ProgressEventType
    current: int
    total: int
    percentage: int = 0
    sku: Optional[str] = None
    product_name: Optional[str] = Field(default=None, alias="productName")
    success: Optional[bool] = None
    message: str = ""
    kimland_stock: Optional[int] = Field(default=None, alias="kimlandStock")
    eta_seconds: Optional[float] = Field(default=None, alias="etaSeconds")
    successful: Optional[int] = None  # complete events only
    failed: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json_line(self) -> str:
        return json.dumps(self.to_wire(), ensure_ascii=False) + "\n"


class BatchSummary(BaseModel):
    """Returned by a batch sync, complete even when cancelled."""
    batch_id: Optional[int] = None
    successful: int = 0
    failed: int = 0
    total: int = 0
    duration_ms: int = 0
    cancelled: bool = False
    stopped_at: Optional[int] = None
    results: List[SyncResult] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.successful + self.failed

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        return "completed" if self.failed == 0 else "partial"
