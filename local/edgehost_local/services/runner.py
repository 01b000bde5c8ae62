"""Script runner: owns the current execution and swaps it on reload."""
import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

from ..errors import ExecutorInitError, ExecutorNotReadyError
from ..models import Credential, RequestMetadata, ScriptConfig
from ..runtime import Request, Response
from .bindings import resolve_bindings
from .execution import WorkerExecution, start_local_execution
from .kv import KVNamespaceProvider
from .sandbox import WorkerManager

logger = logging.getLogger(__name__)


def compute_script_contents(path: Path, script_type: str) -> bytes:
    """Read a script from disk.

    Module scripts are compiled here first so syntax errors are reported
    before the running script is replaced.
    """
    try:
        contents = Path(path).read_bytes()
    except OSError as e:
        raise ExecutorInitError(f"Unable to read script {path}: {e}") from e

    if script_type == "module":
        start = time.monotonic()
        try:
            compile(contents, str(path), "exec")
        except SyntaxError as e:
            raise ExecutorInitError(f"Syntax error in script {path}: {e}") from e
        logger.info(f"Compiled {path} into module contents in {int((time.monotonic() - start) * 1000)}ms")
    return contents


class ScriptRunner:
    """Runs one configured script either in-process or in the sandbox.

    Requests always go to the most recent successful run. A reload that fails
    leaves the previous run in place.
    """

    def __init__(
        self,
        script: ScriptConfig,
        *,
        credential: Optional[Credential] = None,
        in_process: bool = False,
        local_db_path: Optional[Path] = None,
    ):
        self.script = script
        self.credential = credential
        self.in_process = in_process or script.local_in_process
        self.local_db_path = local_db_path
        self.generation = 0
        self._lock = asyncio.Lock()
        self._current: Optional[WorkerExecution] = None
        self._manager: Optional[WorkerManager] = None
        self._kv: Optional[KVNamespaceProvider] = None

    @property
    def ready(self) -> bool:
        if self.in_process:
            return self._current is not None
        return self._manager is not None and self.generation > 0

    async def start(self):
        """Start the first run. Raises ExecutorInitError if the script can't load."""
        logger.info(f"runInProcess={self.in_process}")
        async with self._lock:
            if self.in_process:
                self._kv = KVNamespaceProvider(self.credential, local_db_path=self.local_db_path)
            else:
                self._manager = await WorkerManager.start(local_db_path=self.local_db_path)
            await self._run()

    async def reload(self) -> bool:
        """Re-read the script and replace the current run.

        Returns False if the new version failed to load.
        """
        async with self._lock:
            try:
                await self._run()
            except Exception:
                logger.exception(f"Failed to reload {self.script.path}, keeping the previous version")
                return False
        return True

    async def _run(self):
        start = time.monotonic()
        contents = compute_script_contents(self.script.path, self.script.kind)
        bindings = resolve_bindings(self.script.bindings, self.script.local_port)

        if self.in_process:
            execution = await start_local_execution(
                contents,
                self.script.kind,
                bindings,
                self._kv,
                script_path=str(self.script.path),
            )
            previous, self._current = self._current, execution
            if previous is not None:
                await previous.close()
        else:
            await self._manager.run(
                contents,
                self.script.kind,
                bindings=bindings,
                credential=self.credential,
                script_path=str(self.script.path),
            )

        self.generation += 1
        logger.info(
            f"Started {self.script.name or self.script.path} (run {self.generation}) "
            f"in {int((time.monotonic() - start) * 1000)}ms"
        )

    async def fetch(self, request: Request, metadata: RequestMetadata) -> Response:
        if self.in_process:
            execution = self._current
            if execution is None:
                raise ExecutorNotReadyError("The script has not started yet")
            return await execution.fetch(request, metadata)
        if not self.ready:
            raise ExecutorNotReadyError("The script has not started yet")
        return await self._manager.fetch(request, metadata)

    async def close(self):
        if self._current is not None:
            await self._current.close()
            self._current = None
        if self._kv is not None:
            await self._kv.aclose()
            self._kv = None
        if self._manager is not None:
            await self._manager.close()
            self._manager = None
