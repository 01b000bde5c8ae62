"""
In-process script execution

Runs a script's handlers directly in the host process. The sandbox child uses
the same executor on its side of the isolation boundary.

Script kinds:
- module: defines ``fetch(request, env, ctx)``; its classes are exported
- script: registers listeners with ``add_event_listener("fetch", listener)``
  and sees its bindings as globals
"""
import asyncio
import inspect
import itertools
import logging
import sys
import traceback
import types
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from ..errors import ExecutorInitError, ExecutorRuntimeError
from ..models import RequestMetadata, ResolvedBinding
from ..runtime import DurableObjectRegistry, ExecutionContext, FetchEvent, NoopCaches, Request, Response
from .bindings import CapabilityProviders, WorkerEnv
from .cf_properties import make_incoming_request_cf_properties

logger = logging.getLogger(__name__)

_module_ids = itertools.count(1)


@dataclass
class ModuleWorkerInfo:
    """What a module script exports, delivered once after a successful load."""

    exported_functions: Dict[str, Callable]
    exported_classes: Dict[str, type]
    env: WorkerEnv


class WorkerExecution:
    """A loaded script ready to handle requests."""

    def __init__(
        self,
        script_type: str,
        module: types.ModuleType,
        env: WorkerEnv,
        providers: CapabilityProviders,
        fetch_listeners: List[Callable],
        on_close: Optional[Callable[[], None]] = None,
    ):
        self.script_type = script_type
        self.module = module
        self.env = env
        self.providers = providers
        self._fetch_listeners = fetch_listeners
        self._on_close = on_close
        self.closed = False

    @classmethod
    async def start(
        cls,
        script_contents: bytes,
        script_type: str,
        bindings: Mapping[str, ResolvedBinding],
        providers: CapabilityProviders,
        *,
        script_path: str = "<script>",
        on_module_worker_info: Optional[Callable[[ModuleWorkerInfo], None]] = None,
        on_close: Optional[Callable[[], None]] = None,
    ) -> "WorkerExecution":
        """Load the script. Raises ExecutorInitError if it can't be loaded."""
        if script_type not in ("module", "script"):
            raise ExecutorInitError(f"Unsupported script type: {script_type}")

        module = types.ModuleType(f"edgehost_script_{next(_module_ids)}")
        module.__file__ = script_path
        env = WorkerEnv(bindings, providers)
        fetch_listeners: List[Callable] = []

        def add_event_listener(event_type: str, listener: Callable):
            if event_type != "fetch":
                raise ValueError(f"Unsupported event type: {event_type}")
            fetch_listeners.append(listener)

        module.caches = providers.caches()
        if script_type == "script":
            module.add_event_listener = add_event_listener
            for name, binding in bindings.items():
                setattr(module, name, providers.resolve(binding))

        # Registered so dataclasses and typing can find the script's globals
        sys.modules[module.__name__] = module
        try:
            try:
                code = compile(script_contents, script_path, "exec")
                exec(code, module.__dict__)
            except SyntaxError as e:
                raise ExecutorInitError(f"Syntax error in script {script_path}: {e}") from e
            except asyncio.CancelledError:
                raise
            except BaseException as e:
                # SystemExit and KeyboardInterrupt from a script are load failures too
                raise ExecutorInitError(
                    f"Failed to load script {script_path}: {type(e).__name__}: {e}\n{traceback.format_exc()}"
                ) from e

            if script_type == "module":
                if not callable(getattr(module, "fetch", None)):
                    raise ExecutorInitError(f"Script {script_path} does not define a fetch(request, env, ctx) handler")
                if on_module_worker_info is not None:
                    on_module_worker_info(_module_worker_info(module, env))
            elif not fetch_listeners:
                raise ExecutorInitError(f"Script {script_path} did not register a fetch listener")
        except ExecutorInitError:
            sys.modules.pop(module.__name__, None)
            raise

        return cls(script_type, module, env, providers, fetch_listeners, on_close=on_close)

    def _prepare_request(self, request: Request, metadata: RequestMetadata) -> Request:
        headers = httpx.Headers(request.headers)
        headers["cf-connecting-ip"] = metadata.cf_connecting_ip
        url = request.url
        if metadata.hostname:
            url = str(httpx.URL(url).copy_with(host=metadata.hostname))
        return request.clone(
            url=url,
            headers=headers,
            cf=self.providers.cf_properties(metadata.http_protocol),
        )

    async def fetch(self, request: Request, metadata: RequestMetadata) -> Response:
        """Run the script's fetch handler. Script failures raise ExecutorRuntimeError."""
        request = self._prepare_request(request, metadata)
        try:
            if self.script_type == "module":
                result = self.module.fetch(request, self.env, ExecutionContext())
                if inspect.isawaitable(result):
                    result = await result
            else:
                result = await self._dispatch_fetch_event(request)
        except ExecutorRuntimeError:
            raise
        except asyncio.CancelledError:
            raise
        except BaseException as e:
            raise ExecutorRuntimeError(
                f"Script threw while handling {request.method} {request.url}: {type(e).__name__}: {e}\n"
                f"{traceback.format_exc()}"
            ) from e

        if not isinstance(result, Response):
            raise ExecutorRuntimeError(f"Script returned {type(result).__name__} instead of a Response")
        return result

    async def _dispatch_fetch_event(self, request: Request) -> Any:
        event = FetchEvent(request)
        for listener in self._fetch_listeners:
            result = listener(event)
            if inspect.isawaitable(result):
                await result
            if event.responded:
                return await event.response()
        raise ExecutorRuntimeError("No fetch listener called respond_with()")

    async def close(self):
        if self.closed:
            return
        self.closed = True
        sys.modules.pop(self.module.__name__, None)
        if self._on_close is not None:
            self._on_close()


def _module_worker_info(module: types.ModuleType, env: WorkerEnv) -> ModuleWorkerInfo:
    functions = {}
    classes = {}
    for name, value in vars(module).items():
        if name.startswith("_"):
            continue
        if inspect.isclass(value) and value.__module__ == module.__name__:
            classes[name] = value
        elif inspect.isfunction(value) and value.__module__ == module.__name__:
            functions[name] = value
    return ModuleWorkerInfo(functions, classes, env)


async def start_local_execution(
    script_contents: bytes,
    script_type: str,
    bindings: Mapping[str, ResolvedBinding],
    kv_namespace_provider: Callable[[str], Any],
    *,
    script_path: str = "<script>",
    cf_properties_provider: Callable[..., Dict[str, Any]] = make_incoming_request_cf_properties,
) -> WorkerExecution:
    """Start an execution wired to a fresh durable object registry.

    The registry answers with stub namespaces until the script's classes are
    discovered, and is disposed when the execution is closed.
    """
    objects = DurableObjectRegistry()
    providers = CapabilityProviders(
        caches=NoopCaches,
        kv_namespace=kv_namespace_provider,
        do_namespace=objects.resolve_namespace,
        cf_properties=cf_properties_provider,
    )

    def on_module_worker_info(info: ModuleWorkerInfo):
        logger.debug(f"Discovered exported classes: {sorted(info.exported_classes)}")
        objects.discover(info.exported_classes, info.env)

    return await WorkerExecution.start(
        script_contents,
        script_type,
        bindings,
        providers,
        script_path=script_path,
        on_module_worker_info=on_module_worker_info,
        on_close=objects.dispose,
    )
