"""Key, webhook and backend administration shared by the CLI and admin routes."""

import secrets
from typing import List, Optional

import httpx

from llamagate.config import ConfigError, DEFAULT_RATE_LIMIT, normalize_backend_url
from llamagate.database import ApiKeyRecord, Database, WebhookEndpoint
from llamagate.logging_config import get_logger, mask_key
from llamagate.rate_limiter import RateLimiter

logger = get_logger(__name__)


class AdminError(ValueError):
    """Raised for invalid administrative input."""


def generate_api_key() -> str:
    """Generate a new API key: 20 random bytes as 40 hex characters.

    Returns:
        A new API key string.
    """
    return secrets.token_hex(20)


class KeyAdmin:
    """Administrative operations on the key store.

    When a rate limiter is attached (inside the running server), removing or
    rotating a key also drops its in-memory bucket.
    """

    def __init__(
        self,
        database: Database,
        rate_limiter: Optional[RateLimiter] = None,
        default_rate_limit: int = DEFAULT_RATE_LIMIT,
    ):
        self.database = database
        self.rate_limiter = rate_limiter
        self.default_rate_limit = default_rate_limit

    @staticmethod
    def _check_rate_limit(rate_limit: int) -> int:
        if rate_limit is None or int(rate_limit) < 0:
            raise AdminError("Rate limit must be a non-negative integer")
        return int(rate_limit)

    async def generate_key(self, rate_limit: Optional[int] = None, description: Optional[str] = None) -> ApiKeyRecord:
        limit = self._check_rate_limit(self.default_rate_limit if rate_limit is None else rate_limit)
        record = await self.database.create_api_key(generate_api_key(), limit, description)
        logger.info("api_key_created", api_key=mask_key(record.key), rate_limit=limit)
        return record

    async def generate_keys(self, count: int) -> List[ApiKeyRecord]:
        if count < 1:
            raise AdminError("Invalid number of keys")
        return [await self.generate_key() for _ in range(count)]

    async def add_key(self, key: str, rate_limit: Optional[int] = None, description: Optional[str] = None) -> ApiKeyRecord:
        """Register a caller-chosen key. Generated keys are preferred."""
        key = (key or "").strip()
        if not key:
            raise AdminError("API key is required")
        if await self.database.get_key(key):
            raise AdminError("API key already exists")
        limit = self._check_rate_limit(self.default_rate_limit if rate_limit is None else rate_limit)
        record = await self.database.create_api_key(key, limit, description)
        logger.info("api_key_added", api_key=mask_key(key), rate_limit=limit)
        return record

    async def remove_key(self, key: str) -> bool:
        removed = await self.database.delete_key(key)
        if self.rate_limiter:
            self.rate_limiter.evict(key)
        if removed:
            logger.info("api_key_removed", api_key=mask_key(key))
        return removed

    async def regenerate_key(self, old_key: str) -> Optional[str]:
        """Replace ``old_key`` with a fresh key, keeping its quota and metadata."""
        new_key = generate_api_key()
        if not await self.database.regenerate_key(old_key, new_key):
            return None
        if self.rate_limiter:
            self.rate_limiter.evict(old_key)
        logger.info("api_key_regenerated", old_key=mask_key(old_key), new_key=mask_key(new_key))
        return new_key

    async def set_active(self, key: str, active: bool) -> bool:
        return await self.database.set_key_active(key, active)

    async def set_all_active(self, active: bool) -> int:
        return await self.database.set_all_keys_active(active)

    async def set_rate_limit(self, key: str, rate_limit: int) -> bool:
        return await self.database.set_rate_limit(key, self._check_rate_limit(rate_limit))

    async def set_description(self, key: str, description: Optional[str]) -> bool:
        return await self.database.set_description(key, description)

    async def key_info(self, key: str) -> Optional[ApiKeyRecord]:
        return await self.database.get_key(key)

    async def list_keys(self, active: Optional[bool] = None) -> List[ApiKeyRecord]:
        return await self.database.get_all_keys(active)

    async def add_webhook(self, url: str) -> int:
        url = (url or "").strip()
        if not url:
            raise AdminError("Webhook URL is required")
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL:
            raise AdminError(f"Invalid webhook URL: {url}")
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise AdminError(f"Invalid webhook URL: {url}")
        webhook_id = await self.database.add_webhook(url)
        logger.info("webhook_added", webhook_id=webhook_id)
        return webhook_id

    async def delete_webhook(self, webhook_id: int) -> bool:
        return await self.database.delete_webhook(webhook_id)

    async def list_webhooks(self) -> List[WebhookEndpoint]:
        return await self.database.get_webhooks()

    async def set_ollama_url(self, url: str) -> str:
        """Store a backend address override; the running server picks it up per request."""
        try:
            normalized = normalize_backend_url(url)
        except ConfigError as e:
            raise AdminError(str(e))
        await self.database.update_config(normalized)
        logger.info("ollama_url_updated", ollama_url=normalized)
        return normalized
