"""
Kimland Stock Sync - Sync Orchestrator
Drives authenticate → locate → reconcile for one product or a batch.

Nothing raised inside the pipeline leaves this module: every failure
becomes a SyncResult with status error or not_found.
"""

import logging
import sqlite3
import time
from typing import Callable, Iterable, List, Optional

from .database import SyncDatabase
from .exceptions import AuthFailure, KimSyncError, NotFoundError
from .locator import ProductLocator
from .models import (
    BatchItem,
    BatchSummary,
    Credentials,
    LocalProduct,
    PlatformContext,
    ProgressEvent,
    ProgressEventType,
    RemoteProduct,
    SyncResult,
    SyncStatus,
    utcnow,
)
from .notifications import NotificationService
from .reconciler import InventoryReconciler
from .reference import extract_reference, is_valid_reference
from .session import SessionAuthenticator
from .shopify_client import ShopifyClient

logger = logging.getLogger(__name__)


def identifier_for(product: LocalProduct) -> Optional[str]:
    """Reference from the description, else the first variant SKU."""
    reference = extract_reference(product.body_html)
    if reference:
        return reference
    for variant in product.variants[:1]:
        sku = (variant.sku or "").strip()
        if is_valid_reference(sku):
            return sku
    return None


def build_batch_items(products: Iterable[LocalProduct]) -> List[BatchItem]:
    """Products without a usable identifier are skipped."""
    items = []
    skipped = 0
    for product in products:
        identifier = identifier_for(product)
        if not identifier:
            skipped += 1
            continue
        items.append(BatchItem(
            identifier=identifier,
            local_product_id=str(product.id),
            display_name=product.title or None,
        ))
    if skipped:
        logger.info(f"⏭️ {skipped} products without reference or SKU skipped")
    return items


class SyncOrchestrator:
    """
    Runs inventory syncs against one Kimland account.

    Batches are strictly sequential with `batch_delay` seconds between
    items; Kimland blocks clients that go faster.
    """

    def __init__(
        self,
        authenticator: SessionAuthenticator,
        credentials: Credentials,
        client_factory: Callable[[PlatformContext], ShopifyClient] = ShopifyClient.from_context,
        database: Optional[SyncDatabase] = None,
        notifier: Optional[NotificationService] = None,
        batch_delay: float = 2.0,
        locator: Optional[ProductLocator] = None,
        zero_missing_sizes: bool = True,
    ):
        self.authenticator = authenticator
        self.credentials = credentials
        self.client_factory = client_factory
        self.database = database
        self.notifier = notifier
        self.batch_delay = batch_delay
        self.locator = locator or ProductLocator(authenticator)
        self.zero_missing_sizes = zero_missing_sizes

    @classmethod
    def from_settings(cls, settings, database: Optional[SyncDatabase] = None, notifier=None) -> "SyncOrchestrator":
        """Wire the whole pipeline from a `config.settings.Settings`."""
        authenticator = SessionAuthenticator(settings.kimland_base_url, timeout=settings.kimland_timeout)
        locator = ProductLocator(
            authenticator,
            public_timeout=settings.kimland_public_timeout,
            retry_delay=settings.alternate_query_delay_seconds,
            max_alternate_queries=settings.max_alternate_queries,
        )

        def client_factory(context: PlatformContext) -> ShopifyClient:
            return ShopifyClient.from_context(
                context,
                api_version=settings.shopify_api_version,
                timeout=settings.shopify_timeout,
            )

        return cls(
            authenticator,
            settings.kimland_credentials,
            client_factory=client_factory,
            database=database,
            notifier=notifier,
            batch_delay=settings.batch_delay_seconds,
            locator=locator,
            zero_missing_sizes=settings.zero_missing_sizes,
        )

    # -------------------------------------------------------------------------
    # Single product
    # -------------------------------------------------------------------------

    def sync_product_inventory(
        self,
        identifier: str,
        local_product_id,
        platform_context: PlatformContext,
        display_name: Optional[str] = None,
    ) -> SyncResult:
        local_product_id = str(local_product_id)
        log_extra = {"sku": identifier, "product_id": local_product_id}
        logger.info(f"🚀 Sync {identifier} → product {local_product_id}", extra=log_extra)

        def failed(status: SyncStatus, message: str) -> SyncResult:
            return SyncResult(
                identifier=identifier,
                local_product_id=local_product_id,
                status=status,
                error_message=message,
            )

        try:
            if not self.authenticator.ensure_authenticated(self.credentials):
                logger.error("❌ Kimland authentication failed", extra=log_extra)
                return failed(SyncStatus.ERROR, "Kimland authentication failed")

            remote = self.locator.locate(identifier, display_name)
            if remote is None:
                raise NotFoundError(f"Product {identifier} not found on Kimland", identifier)

            client = self.client_factory(platform_context)
            local = client.get_product(local_product_id)
            if local is None:
                return failed(SyncStatus.ERROR, f"Shopify product {local_product_id} not found")

            reconciler = InventoryReconciler(
                client,
                executor=getattr(client, "executor", None),
                zero_missing_sizes=self.zero_missing_sizes,
            )
            update = reconciler.reconcile(local, remote)
        except NotFoundError as e:
            logger.warning(f"🔍 {identifier} not found on Kimland", extra=log_extra)
            return failed(SyncStatus.NOT_FOUND, e.args[0])
        except AuthFailure as e:
            logger.error(f"❌ {e}", extra=log_extra)
            return failed(SyncStatus.ERROR, str(e))
        except KimSyncError as e:
            logger.error(f"❌ Sync {identifier} failed: {e}", extra=log_extra)
            return failed(SyncStatus.ERROR, str(e))
        except Exception as e:
            logger.exception(f"❌ Unexpected error syncing {identifier}", extra=log_extra)
            return failed(SyncStatus.ERROR, f"{type(e).__name__}: {e}")

        logger.info(
            f"✅ {identifier}: Kimland stock {remote.total_stock}, "
            f"{update.updates} updates, {update.errors} errors",
            extra=log_extra,
        )
        return SyncResult(
            identifier=identifier,
            local_product_id=local_product_id,
            remote_product=remote,
            status=SyncStatus.SUCCESS,
            update_result=update,
        )

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    def eta_seconds(self, remaining: int) -> float:
        return round(max(0, remaining) * self.batch_delay, 1)

    def sync_batch(
        self,
        items: List[BatchItem],
        platform_context: PlatformContext,
        emit: Optional[Callable[[ProgressEvent], None]] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> BatchSummary:
        """
        Sync `items` one after the other.

        `is_cancelled` is polled before each item; once it returns True no
        further request is made and a `cancelled` event names the index
        where the batch stopped. A progress channel that raises (closed
        pipe, gone client) cancels the batch the same way. Each result is
        stored as it completes and the batch row is always closed.
        """
        emit = emit or (lambda event: None)
        is_cancelled = is_cancelled or (lambda: False)
        total = len(items)
        started = time.monotonic()

        summary = BatchSummary(total=total)
        summary.batch_id = self._start_batch(total)
        batch_extra = {"batch_id": summary.batch_id}
        logger.info(f"📦 Batch of {total} products started", extra=batch_extra)

        def send(event: ProgressEvent, stop_index: Optional[int]) -> bool:
            try:
                emit(event)
                return True
            except Exception as e:
                logger.warning(
                    f"🔌 Progress channel closed on {event.type.value} event ({type(e).__name__}: {e})",
                    extra=batch_extra,
                )
                if stop_index is None:
                    return False
                summary.cancelled = True
                summary.stopped_at = stop_index
                return False

        try:
            authenticated = self.authenticator.ensure_authenticated(self.credentials)
            if not authenticated:
                logger.error("❌ Kimland authentication failed, every item marked as error", extra=batch_extra)
                if self.notifier:
                    self.notifier.send_alert(
                        "🔐 Kimland login failed",
                        f"Batch of {total} products could not authenticate; every item is marked as error.",
                        is_error=True,
                    )

            for index, item in enumerate(items):
                if is_cancelled():
                    summary.cancelled = True
                    summary.stopped_at = index
                    logger.warning(f"🛑 Batch cancelled, stopped at index {index}", extra=batch_extra)
                    send(ProgressEvent(
                        type=ProgressEventType.CANCELLED,
                        current=index,
                        total=total,
                        percentage=self._percentage(index, total),
                        message=f"Stopped at index {index}",
                        successful=summary.successful,
                        failed=summary.failed,
                    ), index)
                    break

                if not send(ProgressEvent(
                    type=ProgressEventType.PROGRESS,
                    current=index + 1,
                    total=total,
                    percentage=self._percentage(index, total),
                    sku=item.identifier,
                    product_name=item.display_name,
                    message=f"Syncing {item.identifier}...",
                    eta_seconds=self.eta_seconds(total - index),
                ), index):
                    break

                if authenticated:
                    result = self.sync_product_inventory(
                        item.identifier, item.local_product_id, platform_context, item.display_name
                    )
                else:
                    result = SyncResult(
                        identifier=item.identifier,
                        local_product_id=item.local_product_id,
                        status=SyncStatus.ERROR,
                        error_message="Kimland authentication failed",
                    )

                summary.results.append(result)
                if result.status == SyncStatus.SUCCESS:
                    summary.successful += 1
                    message = f"Kimland stock: {result.remote_stock}"
                else:
                    summary.failed += 1
                    message = result.error_message or "Sync failed"
                self._persist(result, summary.batch_id)

                if not send(ProgressEvent(
                    type=ProgressEventType.RESULT,
                    current=index + 1,
                    total=total,
                    percentage=self._percentage(index + 1, total),
                    sku=item.identifier,
                    product_name=item.display_name,
                    success=result.status == SyncStatus.SUCCESS,
                    message=message,
                    kimland_stock=result.remote_stock if result.status == SyncStatus.SUCCESS else None,
                    eta_seconds=self.eta_seconds(total - index - 1),
                ), index + 1):
                    break

                if authenticated and index < total - 1:
                    time.sleep(self.batch_delay)

            if not summary.cancelled:
                send(ProgressEvent(
                    type=ProgressEventType.COMPLETE,
                    current=total,
                    total=total,
                    percentage=100,
                    message=f"Sync finished: {summary.successful} succeeded, {summary.failed} failed",
                    successful=summary.successful,
                    failed=summary.failed,
                ), None)
        finally:
            summary.duration_ms = int((time.monotonic() - started) * 1000)
            self._finish_batch(summary)

        if self.notifier:
            self.notifier.send_report(summary)

        logger.info(
            f"🏁 Batch {summary.status}: {summary.successful}/{total} ok, "
            f"{summary.failed} failed in {summary.duration_ms / 1000:.1f}s",
            extra=batch_extra,
        )
        return summary

    def _start_batch(self, total: int) -> Optional[int]:
        if not self.database:
            return None
        try:
            return self.database.start_batch(total)
        except sqlite3.Error as e:
            logger.error(f"❌ Could not record batch start: {e}")
            return None

    def _finish_batch(self, summary: BatchSummary):
        if not self.database or summary.batch_id is None:
            return
        try:
            self.database.finish_batch(summary.batch_id, summary)
        except sqlite3.Error as e:
            logger.error(f"❌ Could not close batch {summary.batch_id}: {e}")

    @staticmethod
    def _percentage(done: int, total: int) -> int:
        return int(done * 100 / total) if total else 100

    def _persist(self, result: SyncResult, batch_id: Optional[int]):
        if not self.database:
            return
        try:
            self.database.save_sync_result(result, batch_id=batch_id)
        except sqlite3.Error as e:
            logger.error(f"❌ Could not store result for {result.identifier}: {e}")

    # -------------------------------------------------------------------------
    # Operational helpers
    # -------------------------------------------------------------------------

    def check_connection(self) -> dict:
        """Current session state, without any network call."""
        return {
            "configured": bool(self.credentials.login_id and self.credentials.secret),
            "connected": self.authenticator.is_logged_in(),
            "has_session_token": bool(self.authenticator.session_token),
            "last_login_response": self.authenticator.last_login_response,
        }

    def test_connection(self) -> dict:
        """Fresh login attempt."""
        success = self.force_login()
        return {
            "success": success,
            "message": "Kimland login succeeded" if success else "Kimland login failed",
            "last_login_response": self.authenticator.last_login_response,
        }

    def clear_session(self):
        self.authenticator.logout()

    def force_login(self) -> bool:
        self.authenticator.logout()
        return self.authenticator.authenticate(self.credentials)

    def get_product_info(self, identifier: str, display_name: Optional[str] = None) -> Optional[RemoteProduct]:
        """Locate only, nothing is written. Raises AuthFailure if login fails."""
        if not self.authenticator.ensure_authenticated(self.credentials):
            raise AuthFailure("Kimland authentication failed", self.authenticator.last_login_response)
        return self.locator.locate(identifier, display_name)

    def get_stock(self, identifier: str) -> dict:
        product = self.get_product_info(identifier)
        quantity = product.total_stock if product else 0
        return {
            "quantity": quantity,
            "available": quantity > 0,
            "last_update": utcnow().isoformat(),
        }
