"""Delivery dispatcher — runs each configured channel with bounded retries."""

import logging
import time
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable, Iterable, TypeVar

from cleandoc_export.connectors.delivery_channels import (
    DELIVERY_CHANNEL_REGISTRY, get_delivery_channel,
)
from cleandoc_export.connectors.base import DeliveryChannelBase
from cleandoc_export.core.config import settings
from cleandoc_export.core.exceptions import DeliveryError
from cleandoc_export.services.csv_export_service import format_iso8601

logger = logging.getLogger("cleandoc_export")

T = TypeVar("T")

CHANNEL_ORDER = ("email", "sftp", "webhook")


def retry_operation(
    operation: Callable[[], T],
    max_attempts: int = 3,
    initial_delay: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Call ``operation`` up to ``max_attempts`` times, doubling the delay each retry.

    Errors carrying ``retryable=False`` are re-raised immediately.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except Exception as e:
            if not getattr(e, "retryable", True) or attempt >= max_attempts:
                raise
            delay = initial_delay * (2 ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs", label, attempt, max_attempts, e, delay
            )
            sleep(delay)
    raise RuntimeError("retry_operation called with max_attempts < 1")


class DeliveryService:
    """Sends an export bundle over email, SFTP and webhook, independently per channel."""

    def __init__(
        self,
        channels: Optional[Dict[str, DeliveryChannelBase]] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if channels is None:
            channels = {name: get_delivery_channel(name) for name in DELIVERY_CHANNEL_REGISTRY}
        self.channels = channels
        self.max_attempts = max_attempts or settings.DELIVERY_MAX_ATTEMPTS
        self.retry_delay = settings.DELIVERY_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.sleep = sleep

    @staticmethod
    def _empty_result(name: str) -> Dict[str, Any]:
        result = {"attempted": False, "success": False, "error": None, "timestamp": None}
        if name == "webhook":
            result["status_code"] = None
        return result

    def deliver(
        self,
        bundle,
        tenant,
        download_urls: Dict[str, Any],
        channels: Optional[Iterable[str]] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """Attempt every configured (and requested) channel in order.

        A failing channel is recorded and never stops the others.
        """
        wanted = set(channels) if channels is not None else None
        results = {}

        for name in CHANNEL_ORDER:
            result = self._empty_result(name)
            results[name] = result
            channel = self.channels.get(name)
            if channel is None or (wanted is not None and name not in wanted):
                continue
            if not channel.is_configured(tenant):
                continue

            result["attempted"] = True
            try:
                details = retry_operation(
                    lambda: channel.send(bundle, tenant, download_urls),
                    max_attempts=self.max_attempts,
                    initial_delay=self.retry_delay,
                    sleep=self.sleep,
                    label=f"{name} delivery for {bundle.tenant_id}/{bundle.report_date}",
                )
            except Exception as e:
                result["error"] = str(e)
                if isinstance(e, DeliveryError) and e.status_code is not None:
                    result["status_code"] = e.status_code
                logger.warning(
                    "❌ %s delivery failed for export %s: %s", name, bundle.export_id, e
                )
            else:
                result["success"] = True
                result.update(details or {})
                logger.info("📤 %s delivery succeeded for export %s", name, bundle.export_id)
            result["timestamp"] = format_iso8601(datetime.now(timezone.utc))

        return results

    @staticmethod
    def summarize(results: Dict[str, Dict[str, Any]]) -> Dict[str, int]:
        return {
            "total_methods": len(results),
            "successful_deliveries": sum(1 for r in results.values() if r["success"]),
            "failed_deliveries": sum(1 for r in results.values() if r["attempted"] and not r["success"]),
            "not_attempted": sum(1 for r in results.values() if not r["attempted"]),
        }


delivery_service = DeliveryService()
