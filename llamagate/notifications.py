"""Usage recording and webhook notifications for successful requests.

Both happen off the response path in detached tasks. Webhook delivery is
at-most-once: each registered URL gets a single POST, failures are logged and
never retried, and nothing tracks whether a delivery arrived.
"""

import asyncio
import json
from typing import Any, Dict, Optional, Set

import httpx

from llamagate.database import Database, WebhookEndpoint, utcnow
from llamagate.logging_config import get_logger, mask_key

logger = get_logger(__name__)


class UsageNotifier:
    """Records usage and fans out webhook notifications."""

    def __init__(self, database: Database, http_client: httpx.AsyncClient):
        self.database = database
        self.http_client = http_client
        self._tasks: Set[asyncio.Task] = set()

    def on_success(self, key: str, payload: Dict[str, Any]) -> None:
        """Schedule usage recording and notifications; returns immediately."""
        self._spawn(self._record_and_notify(key, payload))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _record_and_notify(self, key: str, payload: Dict[str, Any]) -> None:
        timestamp = utcnow()
        try:
            await self.database.log_usage(key, timestamp)
        except Exception as e:
            logger.error("usage_log_failed", api_key=mask_key(key), error=str(e))

        try:
            webhooks = await self.database.get_webhooks()
        except Exception as e:
            logger.error("webhook_lookup_failed", error=str(e))
            return

        notification = build_notification(key, payload, timestamp.isoformat())
        for webhook in webhooks:
            self._spawn(self._deliver(webhook, notification))

    async def _deliver(self, webhook: WebhookEndpoint, notification: Dict[str, Any]) -> bool:
        try:
            response = await self.http_client.post(webhook.url, json=notification)
        except Exception as e:
            logger.error(
                "webhook_request_failed",
                webhook_id=webhook.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        if response.is_success:
            logger.info("webhook_sent", webhook_id=webhook.id, status_code=response.status_code)
            return True
        logger.warning(
            "webhook_failed",
            webhook_id=webhook.id,
            status_code=response.status_code,
            response_text=response.text[:200],
        )
        return False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every scheduled recording and delivery has finished."""
        async def _wait_all() -> None:
            # Tasks spawn further delivery tasks, so loop until the set is empty.
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        if timeout is None:
            await _wait_all()
        else:
            try:
                await asyncio.wait_for(_wait_all(), timeout)
            except asyncio.TimeoutError:
                logger.warning("notification_drain_timeout", pending=len(self._tasks))


def build_notification(key: str, payload: Dict[str, Any], timestamp: str) -> Dict[str, Any]:
    """Discord-compatible message body describing one request."""
    details = {"apikey": key, **payload, "timestamp": timestamp}
    return {"content": json.dumps(details, indent=2, default=str)}
