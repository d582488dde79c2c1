"""
Kimland Stock Sync - HTTP API
FastAPI application exposing the sync pipeline and its history.
"""

import asyncio
import logging
import secrets
import sys
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import settings
from src.database import SyncDatabase
from src.exceptions import AuthFailure
from src.models import PlatformContext, SyncStatus, utcnow
from src.notifications import NotificationService
from src.orchestrator import SyncOrchestrator, build_batch_items, identifier_for
from src.shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# Global state
class AppState:
    is_syncing: bool = False
    last_batch: Optional[dict] = None
    database: Optional[SyncDatabase] = None
    orchestrator: Optional[SyncOrchestrator] = None


state = AppState()

# Security for Basic Auth
security = HTTPBasic()


def verify_auth(credentials: HTTPBasicCredentials = Depends(security)):
    """
    Verify HTTP Basic Auth credentials.
    Only enforced if dashboard_auth_enabled is True.
    """
    if not settings.dashboard_auth_enabled or not settings.dashboard_password:
        return "anonymous"

    correct_username = secrets.compare_digest(
        credentials.username.encode("utf8"),
        settings.dashboard_username.encode("utf8")
    )
    correct_password = secrets.compare_digest(
        credentials.password.encode("utf8"),
        settings.dashboard_password.encode("utf8")
    )

    if not (correct_username and correct_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )

    return credentials.username


def get_auth_dependency():
    """Return auth dependency only if auth is enabled."""
    if settings.dashboard_auth_enabled and settings.dashboard_password:
        return [Depends(verify_auth)]
    return []


# =============================================================================
# DEPENDENCIES (overridden in tests)
# =============================================================================

def get_database() -> SyncDatabase:
    if state.database is None:
        state.database = SyncDatabase(settings.db_path)
    return state.database


def get_orchestrator() -> SyncOrchestrator:
    if state.orchestrator is None:
        notifier = NotificationService(settings.discord_webhook_url) if settings.discord_webhook_configured else None
        state.orchestrator = SyncOrchestrator.from_settings(settings, database=get_database(), notifier=notifier)
    return state.orchestrator


def get_platform_context() -> PlatformContext:
    if not settings.shopify_configured:
        raise HTTPException(status_code=503, detail="Shopify is not configured")
    return settings.platform_context


def get_platform_client(context: PlatformContext = Depends(get_platform_context)) -> ShopifyClient:
    return ShopifyClient.from_context(
        context,
        api_version=settings.shopify_api_version,
        timeout=settings.shopify_timeout,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("🚀 API starting...")
    yield
    if state.database is not None:
        state.database.close()
        state.database = None
    state.orchestrator = None
    logger.info("👋 API shutting down...")


app = FastAPI(
    title="Kimland Stock Sync",
    description="""
## Kimland → Shopify stock synchronisation

- 🔐 Kimland session control
- 🔍 Product lookup on Kimland
- 📦 Single product and full-shop sync (NDJSON progress stream)
- 📊 Sync history and statistics
""",
    version=VERSION,
    lifespan=lifespan,
    dependencies=get_auth_dependency(),
    docs_url="/docs",
    redoc_url="/redoc",
)


# =============================================================================
# HEALTH & KIMLAND SESSION
# =============================================================================

@app.get("/health")
async def health():
    return {"status": "ok", "version": VERSION, "timestamp": utcnow().isoformat()}


@app.get("/api/kimland/status")
def api_kimland_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Session state, no network call."""
    return {**orchestrator.check_connection(), "is_syncing": state.is_syncing}


@app.post("/api/kimland/test")
def api_kimland_test(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Fresh login attempt."""
    outcome = orchestrator.test_connection()
    return JSONResponse(outcome, status_code=200 if outcome["success"] else 502)


@app.post("/api/kimland/clear-session")
def api_kimland_clear_session(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    orchestrator.clear_session()
    return {"success": True, "message": "Kimland session cleared"}


@app.get("/api/kimland/lookup/{sku}")
def api_kimland_lookup(sku: str, name: Optional[str] = None, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Locate a product on Kimland. Nothing is written."""
    try:
        product = orchestrator.get_product_info(sku, name)
    except AuthFailure as e:
        return JSONResponse({"success": False, "error": "AUTH_FAILED", "message": str(e)}, status_code=502)

    if product is None:
        return JSONResponse(
            {"success": False, "error": "NOT_FOUND", "message": f"{sku} not found on Kimland"},
            status_code=404,
        )
    return {"success": True, "product": product.model_dump(mode="json"), "total_stock": product.total_stock}


# =============================================================================
# SYNC
# =============================================================================

@app.post("/api/sync/product/{product_id}")
def api_sync_product(
    product_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    client: ShopifyClient = Depends(get_platform_client),
    context: PlatformContext = Depends(get_platform_context),
    database: SyncDatabase = Depends(get_database),
):
    """Sync one Shopify product; its identifier comes from its description or first SKU."""
    product = client.get_product(product_id)
    if product is None:
        return JSONResponse(
            {"success": False, "error": "PRODUCT_NOT_FOUND", "message": f"Shopify product {product_id} not found"},
            status_code=404,
        )

    identifier = identifier_for(product)
    if not identifier:
        return JSONResponse(
            {
                "success": False,
                "error": "NO_REFERENCE",
                "message": "No reference in the description and no SKU on the first variant",
                "productId": product_id,
            },
            status_code=400,
        )

    result = orchestrator.sync_product_inventory(identifier, product_id, context, product.title)
    database.save_sync_result(result)
    body = {
        "success": result.status == SyncStatus.SUCCESS,
        "productId": product_id,
        "sku": identifier,
        "result": result.model_dump(mode="json"),
    }

    if result.status == SyncStatus.SUCCESS:
        return body
    if result.status == SyncStatus.NOT_FOUND:
        return JSONResponse({**body, "error": "NOT_FOUND", "message": result.error_message}, status_code=404)
    return JSONResponse({**body, "error": "SYNC_ERROR", "message": result.error_message}, status_code=500)


@app.post("/api/sync/inventory/all")
async def api_sync_all(
    request: Request,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    client: ShopifyClient = Depends(get_platform_client),
    context: PlatformContext = Depends(get_platform_context),
):
    """
    Sync every product, streaming one JSON progress event per line.

    The batch runs in a worker thread started here, so the busy flag is
    released even if the body is never read. When the client goes away
    the batch is cancelled before its next item.
    """
    if state.is_syncing:
        return JSONResponse({"success": False, "message": "A sync is already running"}, status_code=409)
    state.is_syncing = True

    try:
        products = await asyncio.to_thread(client.get_all_products)
    except Exception:
        state.is_syncing = False
        raise
    items = build_batch_items(products)

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    cancelled = threading.Event()

    def emit(event):
        loop.call_soon_threadsafe(queue.put_nowait, event.to_json_line())

    def worker():
        try:
            summary = orchestrator.sync_batch(items, context, emit=emit, is_cancelled=cancelled.is_set)
            state.last_batch = summary.model_dump(mode="json", exclude={"results"})
        except Exception:
            logger.exception("❌ Batch sync crashed")
        finally:
            state.is_syncing = False
            if not loop.is_closed():
                loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=worker, name="batch-sync", daemon=True).start()

    async def stream():
        try:
            while True:
                line = await queue.get()
                if line is None:
                    break
                if await request.is_disconnected():
                    logger.warning("🔌 Client disconnected, cancelling batch")
                    cancelled.set()
                yield line
        finally:
            # Generator closed early means the client is gone
            cancelled.set()

    return StreamingResponse(
        stream(),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache"},
    )


# =============================================================================
# HISTORY
# =============================================================================

@app.get("/api/sync/history")
def api_sync_history(limit: int = 10, database: SyncDatabase = Depends(get_database)):
    return {"success": True, "history": database.get_history(limit)}


@app.delete("/api/sync/history")
def api_clear_history(database: SyncDatabase = Depends(get_database)):
    removed = database.clear_history()
    return {"success": True, "removed": removed}


@app.get("/api/sync/stats")
def api_sync_stats(database: SyncDatabase = Depends(get_database)):
    return {"success": True, "stats": database.get_stats(), "last_batch": state.last_batch}


# =============================================================================
# RUN SERVER
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    from src.logging_config import setup_logging

    setup_logging(level=settings.log_level, json_format=settings.log_json_format)

    print("🖥️  Kimland Stock Sync - API")
    print("   Open: http://localhost:8080/docs")
    print("   Press Ctrl+C to stop")

    uvicorn.run(app, host="0.0.0.0", port=8080)
