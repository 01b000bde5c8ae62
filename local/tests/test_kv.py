"""Tests for the KV namespace backends."""
import asyncio
import json
import time
import pytest
import httpx
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from edgehost_local.errors import KVError
from edgehost_local.models import Credential
from edgehost_local.services.kv import (
    API_BASE_URL,
    ApiKVNamespace,
    KVNamespaceProvider,
    LocalKVNamespace,
)

ACCOUNT = "acc123"
NAMESPACE = "ns456"
BASE_PATH = f"/client/v4/accounts/{ACCOUNT}/storage/kv/namespaces/{NAMESPACE}"


class FakeKVApi:
    """In-memory stand-in for the remote KV REST API."""

    def __init__(self):
        self.values = {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        assert request.headers["authorization"] == "Bearer secret-token"
        path = request.url.path
        assert path.startswith(BASE_PATH)
        resource = path[len(BASE_PATH) + 1:]

        if resource == "keys":
            names = sorted(k for k in self.values if k.startswith(request.url.params.get("prefix", "")))
            return httpx.Response(
                200,
                json={"success": True, "result": [{"name": n} for n in names], "result_info": {"cursor": ""}},
            )

        kind, _, key = resource.partition("/")
        if request.method == "PUT":
            self.values[key] = request.content
            return httpx.Response(200, json={"success": True, "errors": [], "result": None})
        if request.method == "DELETE":
            self.values.pop(key, None)
            return httpx.Response(200, json={"success": True, "errors": [], "result": None})
        if key not in self.values:
            return httpx.Response(
                404,
                json={"success": False, "errors": [{"code": 10009, "message": "get: 'key not found'"}]},
            )
        return httpx.Response(200, content=self.values[key])


@pytest.fixture
def api():
    return FakeKVApi()


@pytest.fixture
async def api_kv(api):
    client = httpx.AsyncClient(base_url=API_BASE_URL, transport=httpx.MockTransport(api))
    kv = ApiKVNamespace(ACCOUNT, "secret-token", NAMESPACE, client=client)
    yield kv
    await kv.aclose()


@pytest.mark.asyncio
async def test_api_get_missing_key_returns_none(api_kv):
    """Test that the key-not-found error maps to None."""
    assert await api_kv.get("missing") is None


@pytest.mark.asyncio
async def test_api_put_get_and_list(api_kv, api):
    """Test writing, reading and listing through the REST API."""
    await api_kv.put("greeting", "hello")
    await api_kv.put("config", json.dumps({"debug": True}))

    assert await api_kv.get("greeting") == "hello"
    assert await api_kv.get("config", type="json") == {"debug": True}
    assert await api_kv.get("greeting", type="bytes") == b"hello"

    listing = await api_kv.list()
    assert [k["name"] for k in listing["keys"]] == ["config", "greeting"]
    assert listing["list_complete"] is True
    assert listing["cursor"] is None


@pytest.mark.asyncio
async def test_api_keys_are_escaped(api_kv, api):
    """Test that keys with slashes stay one path segment."""
    await api_kv.put("a/b c", "v")
    assert api.requests[-1].url.raw_path.endswith(b"/values/a%2Fb%20c")


@pytest.mark.asyncio
async def test_api_put_expiration_ttl(api_kv, api):
    """Test that expiration options are sent as query parameters."""
    await api_kv.put("session", "x", expiration_ttl=60)
    assert api.requests[-1].url.params["expiration_ttl"] == "60"


@pytest.mark.asyncio
async def test_api_error_raises_kv_error():
    """Test that API failures surface as KVError."""
    transport = httpx.MockTransport(
        lambda request: httpx.Response(403, json={"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]})
    )
    client = httpx.AsyncClient(base_url=API_BASE_URL, transport=transport)
    kv = ApiKVNamespace(ACCOUNT, "secret-token", NAMESPACE, client=client)

    with pytest.raises(KVError) as exc_info:
        await kv.get("anything")
    assert "Authentication error" in str(exc_info.value)
    await kv.aclose()


@pytest.mark.asyncio
async def test_put_rejects_objects(api_kv):
    """Test that only str and bytes values are accepted."""
    with pytest.raises(TypeError):
        await api_kv.put("bad", {"not": "serialized"})


# ============ Local store ============

@pytest.mark.asyncio
async def test_local_put_get_delete(test_db):
    """Test the basic local KV lifecycle."""
    kv = LocalKVNamespace(test_db, "STATS")

    assert await kv.get("visits") is None
    await kv.put("visits", "3", metadata={"source": "test"})
    assert await kv.get("visits") == "3"
    assert await kv.get_with_metadata("visits") == {"value": "3", "metadata": {"source": "test"}}

    await kv.delete("visits")
    assert await kv.get("visits") is None


@pytest.mark.asyncio
async def test_local_namespaces_are_separate(test_db):
    """Test that namespaces do not see each other's keys."""
    first = LocalKVNamespace(test_db, "FIRST")
    second = LocalKVNamespace(test_db, "SECOND")

    await first.put("key", "one")
    assert await second.get("key") is None


@pytest.mark.asyncio
async def test_local_expiration(test_db):
    """Test that expired keys disappear from reads and listings."""
    kv = LocalKVNamespace(test_db, "CACHE")
    await kv.put("old", "x", expiration=int(time.time()) - 10)
    await kv.put("fresh", "y", expiration_ttl=3600)

    assert await kv.get("old") is None
    assert await kv.get("fresh") == "y"
    listing = await kv.list()
    assert [k["name"] for k in listing["keys"]] == ["fresh"]
    assert listing["keys"][0]["expiration"] > time.time()


@pytest.mark.asyncio
async def test_local_list_pagination(test_db):
    """Test prefix filtering and cursor pagination."""
    kv = LocalKVNamespace(test_db, "ITEMS")
    for i in range(5):
        await kv.put(f"item:{i}", str(i))
    await kv.put("other", "z")

    page = await kv.list(prefix="item:", limit=2)
    assert [k["name"] for k in page["keys"]] == ["item:0", "item:1"]
    assert page["list_complete"] is False

    names = [k["name"] for k in page["keys"]]
    while not page["list_complete"]:
        page = await kv.list(prefix="item:", limit=2, cursor=page["cursor"])
        names.extend(k["name"] for k in page["keys"])

    assert names == [f"item:{i}" for i in range(5)]
    assert page["cursor"] is None


@pytest.mark.asyncio
async def test_local_list_prefix_is_literal(test_db):
    """Test that LIKE wildcards in a prefix match literally."""
    kv = LocalKVNamespace(test_db, "ITEMS")
    await kv.put("a_1", "x")
    await kv.put("ab", "y")

    listing = await kv.list(prefix="a_")
    assert [k["name"] for k in listing["keys"]] == ["a_1"]


# ============ Provider ============

@pytest.mark.asyncio
async def test_provider_without_credential_uses_local_store(temp_dir):
    """Test that the provider stores namespaces locally without a credential."""
    provider = KVNamespaceProvider(local_db_path=temp_dir / "kv.db")
    kv = provider("STATS")

    assert isinstance(kv, LocalKVNamespace)
    assert provider("STATS") is kv

    await kv.put("k", "v")
    assert await kv.get("k") == "v"
    await provider.aclose()
    assert (temp_dir / "kv.db").exists()


@pytest.mark.asyncio
async def test_provider_with_credential_uses_api():
    """Test that a credential selects the REST API backend."""
    credential = Credential(account_id=ACCOUNT, api_token="secret-token")
    provider = KVNamespaceProvider(credential, client=httpx.AsyncClient(base_url=API_BASE_URL))

    kv = provider(NAMESPACE)
    assert isinstance(kv, ApiKVNamespace)
    assert kv.namespace_id == NAMESPACE
    await provider.aclose()


@pytest.mark.asyncio
async def test_concurrent_first_reads_share_one_connection(temp_dir):
    """Test that reads racing to open a fresh store all see a missing key."""
    provider = KVNamespaceProvider(local_db_path=temp_dir / "kv.db")
    kv = provider("CACHE")

    results = await asyncio.gather(*[kv.get("k") for _ in range(8)], return_exceptions=True)
    assert results == [None] * 8

    async with kv.database.conn.execute("SELECT version FROM schema_version") as cursor:
        rows = await cursor.fetchall()
    assert len(rows) == 1
    await provider.aclose()
