"""
Kimland Stock Sync - Notification Service
Sends batch sync reports via Discord webhooks.
"""

import logging
from typing import Optional

import httpx

from .models import BatchSummary, SyncStatus, utcnow

logger = logging.getLogger(__name__)

# Status colors (Semaphore system)
COLOR_SUCCESS = 0x2ECC71  # Green
COLOR_WARNING = 0xF1C40F  # Yellow
COLOR_ERROR = 0xE74C3C   # Red

# Failure ratio above which a batch is reported red
ERROR_RATIO = 0.5


class NotificationService:
    """
    Sends sync reports via webhooks.

    Features:
    - Discord embeds with semaphore colours (green/yellow/red)
    - Failed references listed (first 5)
    - Never raises: a dead webhook must not fail a batch
    """

    def __init__(self, discord_webhook_url: Optional[str] = None):
        self.discord_url = discord_webhook_url
        self._client = httpx.Client(timeout=30.0)

    def send_report(self, summary: BatchSummary):
        """Send batch report to all configured webhooks."""
        if self.discord_url:
            self._send_discord(summary)

    def _determine_status(self, summary: BatchSummary) -> tuple:
        """Determine status color and emoji based on batch result."""
        if summary.total and summary.failed / summary.total > ERROR_RATIO:
            return COLOR_ERROR, "❌", "FAILED"
        if summary.failed or summary.cancelled:
            return COLOR_WARNING, "⚠️", "CANCELLED" if summary.cancelled else "PARTIAL"
        return COLOR_SUCCESS, "✅", "SUCCESS"

    def build_embed(self, summary: BatchSummary) -> dict:
        color, emoji, status_text = self._determine_status(summary)
        duration = summary.duration_ms / 1000

        fields = [
            {"name": "📊 Processed", "value": f"**{summary.processed}** / {summary.total}", "inline": True},
            {"name": "✅ Synced", "value": f"**{summary.successful}**", "inline": True},
            {"name": "❌ Failed", "value": f"**{summary.failed}**", "inline": True},
            {"name": "⏱️ Duration", "value": f"{duration:.0f}s", "inline": True},
        ]

        if summary.cancelled:
            fields.append({
                "name": "🛑 Cancelled",
                "value": f"Stopped at index {summary.stopped_at}",
                "inline": False,
            })

        failures = [r for r in summary.results if r.status != SyncStatus.SUCCESS]
        if failures:
            failure_text = "\n".join(
                f"• `{r.identifier}` {r.status.value}" + (f": {r.error_message[:60]}" if r.error_message else "")
                for r in failures[:5]
            )
            if len(failures) > 5:
                failure_text += f"\n... +{len(failures) - 5}"
            fields.append({"name": "🔍 Failures", "value": failure_text, "inline": False})

        return {
            "title": "📦 Stock Sync Report - Kimland",
            "description": f"**{emoji} {status_text}**",
            "color": color,
            "fields": fields,
            "footer": {"text": f"Kimland Stock Sync • batch {summary.batch_id or '-'}"},
            "timestamp": utcnow().isoformat(),
        }

    def _send_discord(self, summary: BatchSummary):
        """Send Discord webhook with embed."""
        try:
            response = self._client.post(self.discord_url, json={"embeds": [self.build_embed(summary)]})
            if response.status_code in (200, 204):
                logger.info("Discord notification sent successfully")
            else:
                logger.warning(f"Discord notification failed: {response.status_code}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Discord notification: {e}")

    def send_alert(self, title: str, message: str, is_error: bool = False):
        """Send a simple alert message."""
        if not self.discord_url:
            return
        try:
            embed = {
                "title": title,
                "description": message,
                "color": COLOR_ERROR if is_error else COLOR_SUCCESS,
            }
            self._client.post(self.discord_url, json={"embeds": [embed]})
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Discord alert: {e}")

    def close(self):
        """Close HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
