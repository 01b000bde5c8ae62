"""
In-process durable objects

A registry maps namespace bindings to live object instances created from the
script's own classes.

Lifecycle:
- The registry starts undiscovered; every namespace resolves to a stub that
  fails with "not implemented locally".
- The executor calls discover() once, after the script's first successful load.
- Instances are created on first reference to an id and live until dispose().
  Stubs still held by in-flight requests fail after that.
"""
import hashlib
import inspect
import re
import secrets
import threading
from typing import Any, Dict, List, Optional, Tuple

from ..errors import BindingResolutionError
from .http import Request, Response

_ID_PATTERN = re.compile(r"^[0-9a-f]{64}$")


class DurableObjectId:
    """Identifier of one object instance within a namespace."""

    def __init__(self, hex_id: str, name: Optional[str] = None):
        self.hex = hex_id
        self.name = name

    def __str__(self):
        return self.hex

    def __repr__(self):
        return f"DurableObjectId({self.hex!r})"

    def __eq__(self, other):
        return isinstance(other, DurableObjectId) and other.hex == self.hex

    def __hash__(self):
        return hash(self.hex)


class DurableObjectStorage:
    """In-memory storage for one instance, kept for the run's lifetime."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    async def get(self, key):
        if isinstance(key, (list, tuple)):
            return {k: self._data[k] for k in key if k in self._data}
        return self._data.get(key)

    async def put(self, key, value=None):
        if isinstance(key, dict):
            self._data.update(key)
        else:
            self._data[key] = value

    async def delete(self, key):
        if isinstance(key, (list, tuple)):
            return sum(1 for k in key if self._data.pop(k, None) is not None)
        return self._data.pop(key, None) is not None

    async def delete_all(self):
        self._data.clear()

    async def list(self, *, prefix: str = "", limit: Optional[int] = None, reverse: bool = False):
        keys = sorted((k for k in self._data if k.startswith(prefix)), reverse=reverse)
        if limit is not None:
            keys = keys[:limit]
        return {k: self._data[k] for k in keys}


class DurableObjectState:

    def __init__(self, object_id: DurableObjectId, storage: DurableObjectStorage):
        self.id = object_id
        self.storage = storage

    async def block_concurrency_while(self, fn):
        result = fn()
        if inspect.isawaitable(result):
            result = await result
        return result


class DurableObjectStub:
    """Routes fetch calls to one instance."""

    def __init__(self, namespace: "LocalDurableObjectNamespace", object_id: DurableObjectId):
        self._namespace = namespace
        self.id = object_id
        self.name = object_id.name

    async def fetch(self, url_or_request, *, method: str = "GET", headers=None, body=None) -> Response:
        if isinstance(url_or_request, Request):
            request = url_or_request
        else:
            request = Request(url_or_request, method=method, headers=headers, body=body)
        instance = self._namespace._instance(self.id)
        result = instance.fetch(request)
        if inspect.isawaitable(result):
            result = await result
        return result


class LocalDurableObjectNamespace:
    """A working namespace backed by the script's exported class."""

    def __init__(self, name: str, cls: type, env: Any):
        self.name = name
        self._cls = cls
        self._env = env
        self._instances: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.disposed = False

    def id_from_name(self, name: str) -> DurableObjectId:
        digest = hashlib.sha256(f"{self.name}:{name}".encode("utf-8")).hexdigest()
        return DurableObjectId(digest, name=name)

    def id_from_string(self, hex_id: str) -> DurableObjectId:
        if not _ID_PATTERN.match(hex_id):
            raise ValueError(f"Invalid durable object id: {hex_id!r}")
        return DurableObjectId(hex_id)

    def new_unique_id(self) -> DurableObjectId:
        return DurableObjectId(secrets.token_hex(32))

    def get(self, object_id: DurableObjectId) -> DurableObjectStub:
        return DurableObjectStub(self, object_id)

    @property
    def instance_count(self) -> int:
        return len(self._instances)

    def _instance(self, object_id: DurableObjectId) -> Any:
        with self._lock:
            if self.disposed:
                raise RuntimeError(f"Durable object namespace '{self.name}' belongs to a script run that has ended")
            instance = self._instances.get(object_id.hex)
            if instance is None:
                state = DurableObjectState(object_id, DurableObjectStorage())
                instance = self._cls(state, self._env)
                self._instances[object_id.hex] = instance
            return instance

    def _dispose(self):
        with self._lock:
            self.disposed = True
            self._instances.clear()


class UnimplementedDurableObjectNamespace:
    """Stand-in used until the script's classes have been discovered."""

    def __init__(self, name: str):
        self.name = name

    def _fail(self, *args, **kwargs):
        raise NotImplementedError(f"Durable object namespace '{self.name}' is not implemented locally")

    id_from_name = _fail
    id_from_string = _fail
    new_unique_id = _fail
    get = _fail


class DurableObjectRegistry:
    """Resolves durable object namespace bindings for one run."""

    def __init__(self):
        self._classes: Optional[Dict[str, type]] = None
        self._env: Any = None
        self._namespaces: Dict[str, LocalDurableObjectNamespace] = {}
        self._lock = threading.Lock()
        self._disposed = False

    @property
    def discovered(self) -> bool:
        return self._classes is not None

    def discover(self, exported_classes: Dict[str, type], env: Any):
        """One-shot notification that the script's classes are available."""
        if self._classes is not None:
            raise RuntimeError("Durable object classes were already discovered")
        self._classes = dict(exported_classes)
        self._env = env

    def resolve_namespace(self, binding) -> Any:
        """Return the namespace for a ``doNamespace`` binding."""
        if self._classes is None:
            return UnimplementedDurableObjectNamespace(binding.do_namespace)
        with self._lock:
            if self._disposed:
                raise RuntimeError(f"Durable object namespace '{binding.do_namespace}' belongs to a script run that has ended")
            namespace = self._namespaces.get(binding.do_namespace)
            if namespace is None:
                cls = self._classes.get(binding.class_name)
                if cls is None:
                    raise BindingResolutionError(
                        f"Durable object class '{binding.class_name}' is not exported by the script. "
                        f"Available classes: {sorted(self._classes)}"
                    )
                namespace = LocalDurableObjectNamespace(binding.do_namespace, cls, self._env)
                self._namespaces[binding.do_namespace] = namespace
            return namespace

    def stats(self) -> List[Tuple[str, int]]:
        return [(name, ns.instance_count) for name, ns in self._namespaces.items()]

    def dispose(self):
        """Destroy every instance; called when the run is torn down."""
        with self._lock:
            self._disposed = True
            for namespace in self._namespaces.values():
                namespace._dispose()
            self._namespaces.clear()
