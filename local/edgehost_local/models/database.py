"""SQLite storage for local KV namespaces."""
import aiosqlite
import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Values for every local namespace
CREATE TABLE IF NOT EXISTS kv_values (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value BLOB NOT NULL,
    expiration INTEGER,
    metadata TEXT,
    updated_at REAL NOT NULL,
    PRIMARY KEY (namespace, key)
);

-- Schema version table
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE INDEX IF NOT EXISTS idx_kv_expiration ON kv_values(expiration);
"""


class KVDatabase:
    """Async SQLite store shared by all local KV namespaces."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._connect_lock = asyncio.Lock()

    async def connect(self):
        """Initialize database connection and schema."""
        if self._connection is not None:
            return
        async with self._connect_lock:
            if self._connection is not None:
                return
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            connection = await aiosqlite.connect(str(self.db_path))
            try:
                connection.row_factory = aiosqlite.Row
                await connection.executescript(SCHEMA_SQL)
                await connection.execute(
                    "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                )
                await connection.commit()
            except BaseException:
                await connection.close()
                raise
            # Published only once the schema is in place
            self._connection = connection

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._connection:
            raise RuntimeError("Database not connected")
        return self._connection

    async def get(self, namespace: str, key: str) -> Optional[Tuple[bytes, Any]]:
        """Return (value, metadata) for a live key, or None."""
        async with self.conn.execute(
            "SELECT value, expiration, metadata FROM kv_values WHERE namespace = ? AND key = ?",
            (namespace, key),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        if _expired(row["expiration"]):
            await self.delete(namespace, key)
            return None
        metadata = json.loads(row["metadata"]) if row["metadata"] is not None else None
        return bytes(row["value"]), metadata

    async def put(
        self,
        namespace: str,
        key: str,
        value: bytes,
        expiration: Optional[int] = None,
        metadata: Any = None,
    ):
        await self.conn.execute(
            """INSERT OR REPLACE INTO kv_values
               (namespace, key, value, expiration, metadata, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                namespace,
                key,
                value,
                expiration,
                json.dumps(metadata) if metadata is not None else None,
                time.time(),
            ),
        )
        await self.conn.commit()

    async def delete(self, namespace: str, key: str):
        await self.conn.execute(
            "DELETE FROM kv_values WHERE namespace = ? AND key = ?", (namespace, key)
        )
        await self.conn.commit()

    async def list_keys(
        self,
        namespace: str,
        prefix: str = "",
        limit: int = 1000,
        after: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Live keys in key order, starting after the ``after`` key."""
        query = "SELECT key, expiration, metadata FROM kv_values WHERE namespace = ? AND substr(key, 1, ?) = ?"
        params: List[Any] = [namespace, len(prefix), prefix]
        if after is not None:
            query += " AND key > ?"
            params.append(after)
        query += " AND (expiration IS NULL OR expiration > ?) ORDER BY key LIMIT ?"
        params.extend([int(time.time()), limit])

        async with self.conn.execute(query, tuple(params)) as cursor:
            rows = await cursor.fetchall()

        keys = []
        for row in rows:
            entry: Dict[str, Any] = {"name": row["key"]}
            if row["expiration"] is not None:
                entry["expiration"] = row["expiration"]
            if row["metadata"] is not None:
                entry["metadata"] = json.loads(row["metadata"])
            keys.append(entry)
        return keys


def _expired(expiration: Optional[int]) -> bool:
    return expiration is not None and expiration <= time.time()
