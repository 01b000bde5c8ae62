"""KV namespace backends.

Scripts see the same interface whether a namespace is proxied to the remote
API (a credential is configured) or stored locally in SQLite.
"""
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import httpx

from ..errors import KVError
from ..models import Credential
from ..models.database import KVDatabase

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.cloudflare.com/client/v4"

# API error code for a key that does not exist
KEY_NOT_FOUND = 10009

DEFAULT_LIST_LIMIT = 1000


def encode_value(value: Any) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    raise TypeError(
        f"KV values must be str or bytes, not {type(value).__name__}. Use json.dumps() for objects."
    )


def decode_value(raw: bytes, value_type: str) -> Any:
    if value_type == "text":
        return raw.decode("utf-8")
    if value_type == "json":
        return json.loads(raw)
    if value_type in ("bytes", "arrayBuffer"):
        return raw
    raise ValueError(f"Unsupported KV value type: {value_type}")


class KVNamespace:
    """Common script-facing KV API. Subclasses implement the raw operations."""

    async def get(self, key: str, type: str = "text") -> Any:
        raw = await self._read(key)
        if raw is None:
            return None
        return decode_value(raw, type)

    async def get_with_metadata(self, key: str, type: str = "text") -> Dict[str, Any]:
        found = await self._read_with_metadata(key)
        if found is None:
            return {"value": None, "metadata": None}
        raw, metadata = found
        return {"value": decode_value(raw, type), "metadata": metadata}

    async def put(
        self,
        key: str,
        value: Any,
        *,
        expiration: Optional[int] = None,
        expiration_ttl: Optional[int] = None,
        metadata: Any = None,
    ) -> None:
        await self._write(
            key,
            encode_value(value),
            expiration=expiration,
            expiration_ttl=expiration_ttl,
            metadata=metadata,
        )

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def list(
        self,
        *,
        prefix: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass

    async def _read(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    async def _read_with_metadata(self, key: str) -> Optional[Tuple[bytes, Any]]:
        raise NotImplementedError

    async def _write(self, key, value: bytes, *, expiration, expiration_ttl, metadata) -> None:
        raise NotImplementedError


class ApiKVNamespace(KVNamespace):
    """Proxies a KV namespace to the remote REST API."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        namespace_id: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.account_id = account_id
        self.namespace_id = namespace_id
        self._client = client or httpx.AsyncClient(base_url=API_BASE_URL, timeout=30.0)
        self._headers = {"Authorization": f"Bearer {api_token}"}

    @property
    def _base_path(self) -> str:
        return f"/accounts/{self.account_id}/storage/kv/namespaces/{self.namespace_id}"

    def _key_path(self, resource: str, key: str) -> str:
        return f"{self._base_path}/{resource}/{quote(key, safe='')}"

    async def _read(self, key: str) -> Optional[bytes]:
        response = await self._client.get(self._key_path("values", key), headers=self._headers)
        if response.status_code == 404 and _is_key_not_found(response):
            return None
        _raise_for_api_error(response, f"get {key!r}")
        return response.content

    async def _read_with_metadata(self, key: str) -> Optional[Tuple[bytes, Any]]:
        raw = await self._read(key)
        if raw is None:
            return None
        response = await self._client.get(self._key_path("metadata", key), headers=self._headers)
        if response.status_code == 404 and _is_key_not_found(response):
            return raw, None
        _raise_for_api_error(response, f"get metadata {key!r}")
        return raw, response.json().get("result")

    async def _write(self, key, value: bytes, *, expiration, expiration_ttl, metadata) -> None:
        params = {}
        if expiration is not None:
            params["expiration"] = str(expiration)
        if expiration_ttl is not None:
            params["expiration_ttl"] = str(expiration_ttl)

        path = self._key_path("values", key)
        if metadata is not None:
            response = await self._client.put(
                path,
                params=params,
                headers=self._headers,
                files={"value": ("value", value)},
                data={"metadata": json.dumps(metadata)},
            )
        else:
            response = await self._client.put(path, params=params, headers=self._headers, content=value)
        _raise_for_api_error(response, f"put {key!r}")

    async def delete(self, key: str) -> None:
        response = await self._client.delete(self._key_path("values", key), headers=self._headers)
        if response.status_code == 404 and _is_key_not_found(response):
            return
        _raise_for_api_error(response, f"delete {key!r}")

    async def list(self, *, prefix=None, limit=None, cursor=None) -> Dict[str, Any]:
        params = {}
        if prefix:
            params["prefix"] = prefix
        if limit is not None:
            params["limit"] = str(limit)
        if cursor:
            params["cursor"] = cursor
        response = await self._client.get(f"{self._base_path}/keys", params=params, headers=self._headers)
        _raise_for_api_error(response, "list")

        data = response.json()
        next_cursor = (data.get("result_info") or {}).get("cursor") or None
        return {
            "keys": data.get("result", []),
            "list_complete": next_cursor is None,
            "cursor": next_cursor,
        }

    async def aclose(self) -> None:
        await self._client.aclose()


def _api_errors(response: httpx.Response) -> list:
    try:
        return response.json().get("errors") or []
    except ValueError:
        return []


def _is_key_not_found(response: httpx.Response) -> bool:
    errors = _api_errors(response)
    return not errors or any(e.get("code") == KEY_NOT_FOUND for e in errors)


def _raise_for_api_error(response: httpx.Response, operation: str):
    if response.is_success:
        return
    errors = _api_errors(response)
    detail = "; ".join(f"{e.get('code')}: {e.get('message')}" for e in errors) or response.text
    raise KVError(f"KV {operation} failed ({response.status_code}): {detail}")


class LocalKVNamespace(KVNamespace):
    """A namespace stored in the local SQLite database."""

    def __init__(self, database: KVDatabase, namespace: str):
        self.database = database
        self.namespace = namespace

    async def _read(self, key: str) -> Optional[bytes]:
        found = await self._read_with_metadata(key)
        return None if found is None else found[0]

    async def _read_with_metadata(self, key: str) -> Optional[Tuple[bytes, Any]]:
        await self.database.connect()
        return await self.database.get(self.namespace, key)

    async def _write(self, key, value: bytes, *, expiration, expiration_ttl, metadata) -> None:
        if expiration_ttl is not None:
            expiration = int(time.time()) + int(expiration_ttl)
        await self.database.connect()
        await self.database.put(self.namespace, key, value, expiration=expiration, metadata=metadata)

    async def delete(self, key: str) -> None:
        await self.database.connect()
        await self.database.delete(self.namespace, key)

    async def list(self, *, prefix=None, limit=None, cursor=None) -> Dict[str, Any]:
        await self.database.connect()
        limit = limit or DEFAULT_LIST_LIMIT
        # Fetch one extra row to learn whether the listing is complete
        keys = await self.database.list_keys(self.namespace, prefix or "", limit + 1, after=cursor)
        complete = len(keys) <= limit
        keys = keys[:limit]
        return {
            "keys": keys,
            "list_complete": complete,
            "cursor": None if complete else keys[-1]["name"],
        }


class KVNamespaceProvider:
    """Hands out one KV client per namespace name for the lifetime of a host."""

    def __init__(
        self,
        credential: Optional[Credential] = None,
        local_db_path: Optional[Path] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.credential = credential
        self.local_db_path = local_db_path or ":memory:"
        self._client = client
        self._namespaces: Dict[str, KVNamespace] = {}
        self._database: Optional[KVDatabase] = None

    def __call__(self, namespace: str) -> KVNamespace:
        kv = self._namespaces.get(namespace)
        if kv is None:
            if self.credential is not None:
                kv = ApiKVNamespace(
                    self.credential.account_id,
                    self.credential.api_token,
                    namespace,
                    client=self._client,
                )
            else:
                if self._database is None:
                    logger.info(f"No credential configured, KV namespaces are stored in {self.local_db_path}")
                    self._database = KVDatabase(self.local_db_path)
                kv = LocalKVNamespace(self._database, namespace)
            self._namespaces[namespace] = kv
        return kv

    async def aclose(self):
        for kv in self._namespaces.values():
            await kv.aclose()
        self._namespaces.clear()
        if self._database is not None:
            await self._database.close()
            self._database = None
