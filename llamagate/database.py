"""Database module for llamagate.

Supports both SQLite (local development) and PostgreSQL (production).
Auto-detects which to use based on DATABASE_URL environment variable.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List

# SQLite support
import aiosqlite

# PostgreSQL support (optional)
try:
    import asyncpg
    HAS_ASYNCPG = True
except ImportError:
    HAS_ASYNCPG = False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ApiKeyRecord:
    """Represents an API key record from the database."""
    key: str
    created_at: datetime
    last_used_at: datetime
    tokens: int  # Remaining quota in the current window
    rate_limit: int  # Tokens granted per refill window
    active: bool
    description: Optional[str]


@dataclass
class UsageEvent:
    """One successfully forwarded request."""
    id: int
    key: str
    timestamp: datetime


@dataclass
class WebhookEndpoint:
    """A URL notified after each successful request."""
    id: int
    url: str


@dataclass
class ProxyConfig:
    """Proxy configuration stored in the database."""
    ollama_url: str
    updated_at: Optional[datetime]


def create_database(database_url: Optional[str] = None, database_path: str = "./apiKeys.db") -> "Database":
    """Factory function to create the appropriate database instance."""
    if database_url:
        if not HAS_ASYNCPG:
            raise ImportError("asyncpg is required for PostgreSQL support. Install with: pip install asyncpg")
        return PostgreSQLDatabase(database_url)
    return SQLiteDatabase(database_path)


class Database(ABC):
    """Abstract base class for database operations."""

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    # API key operations
    @abstractmethod
    async def create_api_key(self, key: str, rate_limit: int, description: Optional[str] = None) -> ApiKeyRecord:
        """Insert a key with a full bucket (tokens == rate_limit)."""
        pass

    @abstractmethod
    async def get_key(self, key: str) -> Optional[ApiKeyRecord]:
        pass

    @abstractmethod
    async def get_all_keys(self, active: Optional[bool] = None) -> List[ApiKeyRecord]:
        pass

    @abstractmethod
    async def delete_key(self, key: str) -> bool:
        pass

    @abstractmethod
    async def set_key_active(self, key: str, active: bool) -> bool:
        pass

    @abstractmethod
    async def set_all_keys_active(self, active: bool) -> int:
        pass

    @abstractmethod
    async def set_rate_limit(self, key: str, rate_limit: int) -> bool:
        pass

    @abstractmethod
    async def set_description(self, key: str, description: Optional[str]) -> bool:
        pass

    @abstractmethod
    async def regenerate_key(self, old_key: str, new_key: str) -> bool:
        pass

    # Rate limit operations
    @abstractmethod
    async def update_tokens(self, key: str, tokens: int, last_used_at: datetime) -> None:
        pass

    # Usage logging
    @abstractmethod
    async def log_usage(self, key: str, timestamp: Optional[datetime] = None) -> None:
        pass

    @abstractmethod
    async def count_usage(self, key: str) -> int:
        pass

    @abstractmethod
    async def get_usage(self, key: str, limit: int = 10) -> List[UsageEvent]:
        pass

    # Webhook operations
    @abstractmethod
    async def add_webhook(self, url: str) -> int:
        pass

    @abstractmethod
    async def get_webhooks(self) -> List[WebhookEndpoint]:
        pass

    @abstractmethod
    async def delete_webhook(self, webhook_id: int) -> bool:
        pass

    # Config operations
    @abstractmethod
    async def get_config(self) -> Optional[ProxyConfig]:
        pass

    @abstractmethod
    async def update_config(self, ollama_url: str) -> None:
        pass


def _parse_ts(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteDatabase(Database):
    """SQLite database implementation for local development."""

    def __init__(self, database_path: str):
        self.database_path = database_path
        self._connection: Optional[aiosqlite.Connection] = None

    async def _get_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.database_path)
            self._connection.row_factory = aiosqlite.Row
        return self._connection

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def initialize(self) -> None:
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS apiKeys (
                key TEXT PRIMARY KEY,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_used TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                tokens INTEGER DEFAULT 10,
                rate_limit INTEGER DEFAULT 10,
                active INTEGER DEFAULT 1,
                description TEXT
            )
        """)

        # Migrations for databases created before these columns existed
        cursor = await conn.execute("PRAGMA table_info(apiKeys)")
        columns = {row["name"] for row in await cursor.fetchall()}
        for col, sql in [
            ("active", "ALTER TABLE apiKeys ADD COLUMN active INTEGER DEFAULT 1"),
            ("description", "ALTER TABLE apiKeys ADD COLUMN description TEXT"),
        ]:
            if col not in columns:
                await conn.execute(sql)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS apiUsage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key TEXT,
                timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_api_usage_key ON apiUsage(key)")

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS webhooks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                url TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS proxy_config (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                ollama_url TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await conn.commit()

    async def create_api_key(self, key: str, rate_limit: int, description: Optional[str] = None) -> ApiKeyRecord:
        conn = await self._get_connection()
        now = utcnow()
        await conn.execute(
            "INSERT INTO apiKeys (key, created_at, last_used, tokens, rate_limit, active, description) VALUES (?, ?, ?, ?, ?, 1, ?)",
            (key, now.isoformat(), now.isoformat(), rate_limit, rate_limit, description)
        )
        await conn.commit()
        return ApiKeyRecord(
            key=key, created_at=now, last_used_at=now, tokens=rate_limit,
            rate_limit=rate_limit, active=True, description=description,
        )

    async def get_key(self, key: str) -> Optional[ApiKeyRecord]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM apiKeys WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return self._row_to_api_key(row) if row else None

    async def get_all_keys(self, active: Optional[bool] = None) -> List[ApiKeyRecord]:
        conn = await self._get_connection()
        if active is None:
            cursor = await conn.execute("SELECT * FROM apiKeys ORDER BY created_at DESC")
        else:
            cursor = await conn.execute(
                "SELECT * FROM apiKeys WHERE active = ? ORDER BY created_at DESC", (1 if active else 0,)
            )
        rows = await cursor.fetchall()
        return [self._row_to_api_key(row) for row in rows]

    async def delete_key(self, key: str) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("DELETE FROM apiKeys WHERE key = ?", (key,))
        await conn.commit()
        return cursor.rowcount > 0

    async def set_key_active(self, key: str, active: bool) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("UPDATE apiKeys SET active = ? WHERE key = ?", (1 if active else 0, key))
        await conn.commit()
        return cursor.rowcount > 0

    async def set_all_keys_active(self, active: bool) -> int:
        conn = await self._get_connection()
        cursor = await conn.execute("UPDATE apiKeys SET active = ?", (1 if active else 0,))
        await conn.commit()
        return cursor.rowcount

    async def set_rate_limit(self, key: str, rate_limit: int) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("UPDATE apiKeys SET rate_limit = ? WHERE key = ?", (rate_limit, key))
        await conn.commit()
        return cursor.rowcount > 0

    async def set_description(self, key: str, description: Optional[str]) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("UPDATE apiKeys SET description = ? WHERE key = ?", (description, key))
        await conn.commit()
        return cursor.rowcount > 0

    async def regenerate_key(self, old_key: str, new_key: str) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("UPDATE apiKeys SET key = ? WHERE key = ?", (new_key, old_key))
        await conn.commit()
        return cursor.rowcount > 0

    async def update_tokens(self, key: str, tokens: int, last_used_at: datetime) -> None:
        conn = await self._get_connection()
        await conn.execute(
            "UPDATE apiKeys SET tokens = ?, last_used = ? WHERE key = ?",
            (tokens, last_used_at.isoformat(), key)
        )
        await conn.commit()

    async def log_usage(self, key: str, timestamp: Optional[datetime] = None) -> None:
        conn = await self._get_connection()
        await conn.execute(
            "INSERT INTO apiUsage (key, timestamp) VALUES (?, ?)",
            (key, (timestamp or utcnow()).isoformat())
        )
        await conn.commit()

    async def count_usage(self, key: str) -> int:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT COUNT(*) FROM apiUsage WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def get_usage(self, key: str, limit: int = 10) -> List[UsageEvent]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT id, key, timestamp FROM apiUsage WHERE key = ? ORDER BY id DESC LIMIT ?", (key, limit)
        )
        rows = await cursor.fetchall()
        return [UsageEvent(id=r["id"], key=r["key"], timestamp=_parse_ts(r["timestamp"])) for r in rows]

    async def add_webhook(self, url: str) -> int:
        conn = await self._get_connection()
        cursor = await conn.execute("INSERT INTO webhooks (url) VALUES (?)", (url,))
        await conn.commit()
        return cursor.lastrowid

    async def get_webhooks(self) -> List[WebhookEndpoint]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT id, url FROM webhooks ORDER BY id")
        rows = await cursor.fetchall()
        return [WebhookEndpoint(id=r["id"], url=r["url"]) for r in rows]

    async def delete_webhook(self, webhook_id: int) -> bool:
        conn = await self._get_connection()
        cursor = await conn.execute("DELETE FROM webhooks WHERE id = ?", (webhook_id,))
        await conn.commit()
        return cursor.rowcount > 0

    async def get_config(self) -> Optional[ProxyConfig]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM proxy_config WHERE id = 1")
        row = await cursor.fetchone()
        if not row:
            return None
        return ProxyConfig(ollama_url=row["ollama_url"], updated_at=_parse_ts(row["updated_at"]))

    async def update_config(self, ollama_url: str) -> None:
        conn = await self._get_connection()
        await conn.execute(
            "INSERT OR REPLACE INTO proxy_config (id, ollama_url, updated_at) VALUES (1, ?, ?)",
            (ollama_url, utcnow().isoformat())
        )
        await conn.commit()

    def _row_to_api_key(self, row) -> ApiKeyRecord:
        return ApiKeyRecord(
            key=row["key"],
            created_at=_parse_ts(row["created_at"]),
            last_used_at=_parse_ts(row["last_used"]) or _parse_ts(row["created_at"]),
            tokens=row["tokens"] or 0,
            rate_limit=row["rate_limit"] or 0,
            active=bool(row["active"]),
            description=row["description"],
        )


class PostgreSQLDatabase(Database):
    """PostgreSQL database implementation for production."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._pool = None

    async def _get_pool(self):
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self.database_url, min_size=2, max_size=20)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def initialize(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    key TEXT PRIMARY KEY,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    last_used TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    tokens INTEGER DEFAULT 10,
                    rate_limit INTEGER DEFAULT 10,
                    active BOOLEAN DEFAULT TRUE,
                    description TEXT
                )
            """)
            existing_cols = await conn.fetch("""
                SELECT column_name FROM information_schema.columns
                WHERE table_name = 'api_keys'
            """)
            existing_col_names = {row["column_name"] for row in existing_cols}
            if "active" not in existing_col_names:
                await conn.execute("ALTER TABLE api_keys ADD COLUMN active BOOLEAN DEFAULT TRUE")
            if "description" not in existing_col_names:
                await conn.execute("ALTER TABLE api_keys ADD COLUMN description TEXT")

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS api_usage (
                    id SERIAL PRIMARY KEY,
                    key TEXT,
                    timestamp TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_api_usage_key ON api_usage(key)")

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS webhooks (
                    id SERIAL PRIMARY KEY,
                    url TEXT NOT NULL
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS proxy_config (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    ollama_url TEXT NOT NULL,
                    updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                )
            """)

    async def create_api_key(self, key: str, rate_limit: int, description: Optional[str] = None) -> ApiKeyRecord:
        pool = await self._get_pool()
        now = utcnow()
        async with pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO api_keys (key, created_at, last_used, tokens, rate_limit, active, description) VALUES ($1, $2, $2, $3, $3, TRUE, $4)",
                key, now, rate_limit, description
            )
        return ApiKeyRecord(
            key=key, created_at=now, last_used_at=now, tokens=rate_limit,
            rate_limit=rate_limit, active=True, description=description,
        )

    async def get_key(self, key: str) -> Optional[ApiKeyRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM api_keys WHERE key = $1", key)
            return self._row_to_api_key(row) if row else None

    async def get_all_keys(self, active: Optional[bool] = None) -> List[ApiKeyRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            if active is None:
                rows = await conn.fetch("SELECT * FROM api_keys ORDER BY created_at DESC")
            else:
                rows = await conn.fetch("SELECT * FROM api_keys WHERE active = $1 ORDER BY created_at DESC", active)
            return [self._row_to_api_key(row) for row in rows]

    async def delete_key(self, key: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("DELETE FROM api_keys WHERE key = $1", key)
            return result == "DELETE 1"

    async def set_key_active(self, key: str, active: bool) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("UPDATE api_keys SET active = $1 WHERE key = $2", active, key)
            return result == "UPDATE 1"

    async def set_all_keys_active(self, active: bool) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("UPDATE api_keys SET active = $1", active)
            return int(result.split()[-1])

    async def set_rate_limit(self, key: str, rate_limit: int) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("UPDATE api_keys SET rate_limit = $1 WHERE key = $2", rate_limit, key)
            return result == "UPDATE 1"

    async def set_description(self, key: str, description: Optional[str]) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("UPDATE api_keys SET description = $1 WHERE key = $2", description, key)
            return result == "UPDATE 1"

    async def regenerate_key(self, old_key: str, new_key: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("UPDATE api_keys SET key = $1 WHERE key = $2", new_key, old_key)
            return result == "UPDATE 1"

    async def update_tokens(self, key: str, tokens: int, last_used_at: datetime) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE api_keys SET tokens = $1, last_used = $2 WHERE key = $3", tokens, last_used_at, key
            )

    async def log_usage(self, key: str, timestamp: Optional[datetime] = None) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO api_usage (key, timestamp) VALUES ($1, $2)", key, timestamp or utcnow()
            )

    async def count_usage(self, key: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval("SELECT COUNT(*) FROM api_usage WHERE key = $1", key)

    async def get_usage(self, key: str, limit: int = 10) -> List[UsageEvent]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id, key, timestamp FROM api_usage WHERE key = $1 ORDER BY id DESC LIMIT $2", key, limit
            )
            return [UsageEvent(id=r["id"], key=r["key"], timestamp=_parse_ts(r["timestamp"])) for r in rows]

    async def add_webhook(self, url: str) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval("INSERT INTO webhooks (url) VALUES ($1) RETURNING id", url)

    async def get_webhooks(self) -> List[WebhookEndpoint]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT id, url FROM webhooks ORDER BY id")
            return [WebhookEndpoint(id=r["id"], url=r["url"]) for r in rows]

    async def delete_webhook(self, webhook_id: int) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute("DELETE FROM webhooks WHERE id = $1", webhook_id)
            return result == "DELETE 1"

    async def get_config(self) -> Optional[ProxyConfig]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM proxy_config WHERE id = 1")
            if not row:
                return None
            return ProxyConfig(ollama_url=row["ollama_url"], updated_at=_parse_ts(row["updated_at"]))

    async def update_config(self, ollama_url: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO proxy_config (id, ollama_url, updated_at) VALUES (1, $1, CURRENT_TIMESTAMP)
                ON CONFLICT (id) DO UPDATE SET ollama_url = $1, updated_at = CURRENT_TIMESTAMP
            """, ollama_url)

    def _row_to_api_key(self, row) -> ApiKeyRecord:
        return ApiKeyRecord(
            key=row["key"],
            created_at=_parse_ts(row["created_at"]),
            last_used_at=_parse_ts(row["last_used"]) or _parse_ts(row["created_at"]),
            tokens=row["tokens"] or 0,
            rate_limit=row["rate_limit"] or 0,
            active=bool(row["active"]),
            description=row["description"],
        )
