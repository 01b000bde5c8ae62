"""FetchEvent and ExecutionContext handed to script handlers."""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Optional, Union

from .http import Request, Response

logger = logging.getLogger(__name__)


async def run_script_task(awaitable: Awaitable, description: str) -> Any:
    """Await background work started by a script, logging its failures.

    A script's SystemExit or KeyboardInterrupt must not reach the event loop,
    which would stop the whole host.
    """
    try:
        return await awaitable
    except asyncio.CancelledError:
        raise
    except BaseException:
        logger.exception(f"{description} failed")


class ExecutionContext:
    """Background work attached to a request."""

    def __init__(self):
        self._tasks = set()

    def wait_until(self, awaitable: Awaitable):
        task = asyncio.ensure_future(run_script_task(awaitable, "wait_until task"))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def pass_through_on_exception(self):
        # There is no origin to fall back to locally
        pass


class FetchEvent(ExecutionContext):
    """Event passed to classic-script ``fetch`` listeners."""

    type = "fetch"

    def __init__(self, request: Request):
        super().__init__()
        self.request = request
        self._response: Optional[Union[Response, Awaitable[Response]]] = None

    def respond_with(self, response: Any):
        if self._response is not None:
            raise RuntimeError("respond_with() was already called")
        self._response = response

    @property
    def responded(self) -> bool:
        return self._response is not None

    async def response(self) -> Any:
        result = self._response
        if inspect.isawaitable(result):
            result = await result
        return result
