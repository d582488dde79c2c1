#!/usr/bin/env python3
"""
Kimland Stock Sync - Main Entry Point
Sync Kimland back-office stock into Shopify.

Usage:
    python main.py --sku CD6109-200 --product-id 8123456789
    python main.py --all                 # every Shopify product, NDJSON progress on stdout
    python main.py --test-login
    python main.py --lookup CD6109-200   # locate only, nothing written
    python main.py --history 20
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from config.settings import settings
from src.database import SyncDatabase
from src.exceptions import AuthFailure, ConfigurationError
from src.logging_config import setup_logging
from src.models import SyncStatus
from src.notifications import NotificationService
from src.orchestrator import SyncOrchestrator, build_batch_items

logger = logging.getLogger("main")


def require_kimland():
    if not settings.kimland_configured:
        raise ConfigurationError("Kimland credentials missing", setting="KIMLAND_EMAIL / KIMLAND_PASSWORD")


def require_shopify():
    if not settings.shopify_configured:
        raise ConfigurationError("Shopify shop or token missing", setting="SHOPIFY_SHOP / SHOPIFY_ACCESS_TOKEN")


def print_json(data):
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def sync_one(orchestrator: SyncOrchestrator, sku: str, product_id: str, name: str = None) -> bool:
    require_kimland()
    require_shopify()
    result = orchestrator.sync_product_inventory(sku, product_id, settings.platform_context, name)
    if orchestrator.database:
        orchestrator.database.save_sync_result(result)
    print_json(result.model_dump(mode="json"))
    return result.status == SyncStatus.SUCCESS


def sync_all(orchestrator: SyncOrchestrator) -> bool:
    """Batch over the whole shop; Ctrl-C stops after the current item."""
    require_kimland()
    require_shopify()

    client = orchestrator.client_factory(settings.platform_context)
    items = build_batch_items(client.get_all_products())
    if not items:
        logger.warning("⚠️ No Shopify product with a reference or SKU")
        return True

    stop = threading.Event()

    def emit(event):
        sys.stdout.write(event.to_json_line())
        sys.stdout.flush()

    def on_interrupt(signum, frame):
        logger.warning("🛑 Interrupt received, stopping after the current product...")
        stop.set()

    previous = signal.signal(signal.SIGINT, on_interrupt)
    try:
        summary = orchestrator.sync_batch(
            items,
            settings.platform_context,
            emit=emit,
            is_cancelled=stop.is_set,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    return summary.failed == 0 and not summary.cancelled


def test_login(orchestrator: SyncOrchestrator) -> bool:
    require_kimland()
    outcome = orchestrator.test_connection()
    print_json(outcome)
    return outcome["success"]


def lookup(orchestrator: SyncOrchestrator, sku: str) -> bool:
    require_kimland()
    product = orchestrator.get_product_info(sku)
    if product is None:
        print(f"❌ {sku} not found on Kimland")
        return False
    print_json(product.model_dump(mode="json"))
    return True


def show_history(database: SyncDatabase, limit: int) -> bool:
    print_json({"history": database.get_history(limit), "stats": database.get_stats()})
    return True


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Kimland Stock Sync - Sync Kimland back-office stock into Shopify"
    )
    parser.add_argument("--sku", help="Kimland reference to sync (with --product-id)")
    parser.add_argument("--product-id", dest="product_id", help="Shopify product id to update")
    parser.add_argument("--name", help="Product name, improves candidate scoring")
    parser.add_argument(
        "--all",
        action="store_true",
        help="Sync every Shopify product (NDJSON progress on stdout, Ctrl-C to stop)",
    )
    parser.add_argument("--test-login", action="store_true", dest="test_login", help="Try a Kimland login")
    parser.add_argument("--lookup", metavar="SKU", help="Locate a product on Kimland without writing")
    parser.add_argument(
        "--history",
        nargs="?",
        const=20,
        type=int,
        metavar="N",
        help="Show the last N sync results (default: 20)",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: from settings)",
    )
    parser.add_argument("--json-logs", action="store_true", dest="json_logs", help="JSON console logs")

    args = parser.parse_args()

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(
        level=args.log_level,
        json_format=args.json_logs or settings.log_json_format,
        log_file=str(settings.log_dir / "sync.log"),
        rotation_mb=settings.log_rotation_mb,
    )

    if not (args.sku or args.all or args.test_login or args.lookup or args.history is not None):
        parser.print_help()
        print("\n❌ Please provide --sku/--product-id, --all, --test-login, --lookup or --history")
        sys.exit(1)
    if args.sku and not args.product_id:
        parser.error("--sku requires --product-id")

    database = SyncDatabase(settings.db_path)
    notifier = NotificationService(settings.discord_webhook_url) if settings.discord_webhook_configured else None
    orchestrator = SyncOrchestrator.from_settings(settings, database=database, notifier=notifier)

    try:
        if args.history is not None:
            ok = show_history(database, args.history)
        elif args.test_login:
            ok = test_login(orchestrator)
        elif args.lookup:
            ok = lookup(orchestrator, args.lookup)
        elif args.all:
            ok = sync_all(orchestrator)
        else:
            ok = sync_one(orchestrator, args.sku, args.product_id, args.name)
    except ConfigurationError as e:
        logger.error(f"❌ Configuration error: {e}")
        ok = False
    except AuthFailure as e:
        logger.error(f"❌ {e}")
        ok = False
    finally:
        if notifier:
            notifier.close()
        database.close()

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
