"""Binding resolution.

Declared bindings are resolved once per run into ResolvedBinding records.
Concrete capabilities (KV clients, durable object namespaces, caches,
request metadata) come from exactly four providers, picked by binding tag.
"""
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping

from ..errors import BindingResolutionError
from ..models import (
    Binding,
    DurableObjectNamespaceBinding,
    KVNamespaceBinding,
    PlainValueBinding,
    ResolvedBinding,
    SecretBinding,
)

LOCAL_PORT_PLACEHOLDER = "${localPort}"
SECRET_ENV_PREFIX = "env:"


def resolve_binding(name: str, binding: Binding, local_port: int) -> ResolvedBinding:
    if isinstance(binding, PlainValueBinding):
        return ResolvedBinding(name, "value", binding.value.replace(LOCAL_PORT_PLACEHOLDER, str(local_port)))
    if isinstance(binding, SecretBinding):
        return ResolvedBinding(name, "secret", _resolve_secret(name, binding.secret))
    if isinstance(binding, KVNamespaceBinding):
        return ResolvedBinding(name, "kv", binding.kv_namespace)
    if isinstance(binding, DurableObjectNamespaceBinding):
        return ResolvedBinding(name, "do", binding)
    raise BindingResolutionError(f"Unsupported binding for {name}: {binding!r}")


def resolve_bindings(bindings: Mapping[str, Binding], local_port: int) -> Dict[str, ResolvedBinding]:
    """Resolve every declared binding of a script."""
    return {name: resolve_binding(name, binding, local_port) for name, binding in bindings.items()}


def _resolve_secret(name: str, secret: str) -> str:
    if not secret.startswith(SECRET_ENV_PREFIX):
        return secret
    env_name = secret[len(SECRET_ENV_PREFIX):]
    value = os.environ.get(env_name)
    if value is None:
        raise BindingResolutionError(f"Secret binding {name} needs environment variable {env_name}")
    return value


@dataclass
class CapabilityProviders:
    """The closed set of capability providers an executor is wired with."""

    caches: Callable[[], Any]
    kv_namespace: Callable[[str], Any]
    do_namespace: Callable[[DurableObjectNamespaceBinding], Any]
    cf_properties: Callable[..., Dict[str, Any]]

    def resolve(self, binding: ResolvedBinding) -> Any:
        if binding.kind in ("value", "secret"):
            return binding.value
        if binding.kind == "kv":
            return self.kv_namespace(binding.value)
        if binding.kind == "do":
            return self.do_namespace(binding.value)
        raise BindingResolutionError(f"Unknown binding kind for {binding.name}: {binding.kind}")


class WorkerEnv:
    """The ``env`` passed to module handlers.

    Bindings are resolved on access, so a durable object binding read after
    class discovery gets the working namespace instead of the stub.
    """

    def __init__(self, bindings: Mapping[str, ResolvedBinding], providers: CapabilityProviders):
        object.__setattr__(self, "_bindings", dict(bindings))
        object.__setattr__(self, "_providers", providers)

    def __getattr__(self, name: str) -> Any:
        binding = self._bindings.get(name)
        if binding is None:
            raise AttributeError(f"No binding named {name}")
        return self._providers.resolve(binding)

    def __getitem__(self, name: str) -> Any:
        binding = self._bindings.get(name)
        if binding is None:
            raise KeyError(name)
        return self._providers.resolve(binding)

    def __contains__(self, name: str) -> bool:
        return name in self._bindings

    def __iter__(self):
        return iter(self._bindings)

    def __setattr__(self, name, value):
        raise AttributeError("env is read-only")

    def __repr__(self):
        return f"WorkerEnv({sorted(self._bindings)})"
