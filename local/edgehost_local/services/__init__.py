"""Services for edgehost local."""
from .bindings import resolve_binding, resolve_bindings, CapabilityProviders, WorkerEnv
from .execution import WorkerExecution, ModuleWorkerInfo, start_local_execution
from .external_ip import ExternalIpCache, fetch_external_ip
from .kv import KVNamespace, ApiKVNamespace, LocalKVNamespace, KVNamespaceProvider
from .reloader import HotReloader
from .runner import ScriptRunner, compute_script_contents
from .sandbox import WorkerManager

__all__ = [
    "resolve_binding",
    "resolve_bindings",
    "CapabilityProviders",
    "WorkerEnv",
    "WorkerExecution",
    "ModuleWorkerInfo",
    "start_local_execution",
    "ExternalIpCache",
    "fetch_external_ip",
    "KVNamespace",
    "ApiKVNamespace",
    "LocalKVNamespace",
    "KVNamespaceProvider",
    "HotReloader",
    "ScriptRunner",
    "compute_script_contents",
    "WorkerManager",
]
