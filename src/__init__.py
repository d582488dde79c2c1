"""
Kimland Stock Sync - src package
"""

from .session import SessionAuthenticator
from .locator import ProductLocator
from .variants import VariantExtractor
from .reconciler import InventoryReconciler
from .updater import UpdateExecutor
from .shopify_client import ShopifyClient
from .orchestrator import SyncOrchestrator
from .database import SyncDatabase
from .notifications import NotificationService
from .models import RemoteProduct, RemoteVariant, SyncResult, SyncStatus, BatchSummary

__all__ = [
    "SessionAuthenticator",
    "ProductLocator",
    "VariantExtractor",
    "InventoryReconciler",
    "UpdateExecutor",
    "ShopifyClient",
    "SyncOrchestrator",
    "SyncDatabase",
    "NotificationService",
    "RemoteProduct",
    "RemoteVariant",
    "SyncResult",
    "SyncStatus",
    "BatchSummary",
]
