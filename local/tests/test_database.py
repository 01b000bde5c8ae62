"""Tests for the local KV database."""
import pytest
import time
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from edgehost_local.models.database import KVDatabase


@pytest.mark.asyncio
async def test_put_and_get(test_db):
    """Test storing and reading a value with metadata."""
    await test_db.put("STATS", "visits", b"42", metadata={"owner": "test"})

    value, metadata = await test_db.get("STATS", "visits")
    assert value == b"42"
    assert metadata == {"owner": "test"}


@pytest.mark.asyncio
async def test_get_missing(test_db):
    """Test reading a key that was never written."""
    assert await test_db.get("STATS", "missing") is None


@pytest.mark.asyncio
async def test_put_replaces(test_db):
    """Test that writing a key again replaces value and metadata."""
    await test_db.put("STATS", "visits", b"1", metadata={"v": 1})
    await test_db.put("STATS", "visits", b"2")

    value, metadata = await test_db.get("STATS", "visits")
    assert value == b"2"
    assert metadata is None


@pytest.mark.asyncio
async def test_expired_key_is_removed(test_db):
    """Test that reading an expired key deletes it."""
    await test_db.put("STATS", "old", b"x", expiration=int(time.time()) - 1)

    assert await test_db.get("STATS", "old") is None
    async with test_db.conn.execute("SELECT COUNT(*) FROM kv_values") as cursor:
        row = await cursor.fetchone()
    assert row[0] == 0


@pytest.mark.asyncio
async def test_list_keys(test_db):
    """Test listing keys in order with prefix and start key."""
    for key in ("b", "a", "c", "ab"):
        await test_db.put("NS", key, key.encode())
    await test_db.put("OTHER", "a", b"other")

    keys = await test_db.list_keys("NS")
    assert [k["name"] for k in keys] == ["a", "ab", "b", "c"]

    keys = await test_db.list_keys("NS", prefix="a")
    assert [k["name"] for k in keys] == ["a", "ab"]

    keys = await test_db.list_keys("NS", after="ab", limit=1)
    assert [k["name"] for k in keys] == ["b"]


@pytest.mark.asyncio
async def test_connect_is_idempotent(test_db):
    """Test that connecting twice keeps the same connection and schema."""
    connection = test_db.conn
    await test_db.connect()
    assert test_db.conn is connection

    async with test_db.conn.execute("SELECT version FROM schema_version") as cursor:
        rows = await cursor.fetchall()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_reopen_existing_store(test_db):
    """Test that a second database on the same file keeps the data and schema."""
    await test_db.put("NS", "kept", b"1")

    other = KVDatabase(test_db.db_path)
    await other.connect()
    value, _ = await other.get("NS", "kept")
    assert value == b"1"

    async with other.conn.execute("SELECT version FROM schema_version") as cursor:
        rows = await cursor.fetchall()
    assert len(rows) == 1
    await other.close()
