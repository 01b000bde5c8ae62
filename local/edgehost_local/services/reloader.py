"""Hot reload: watch the script file and reload after changes settle."""
import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from watchfiles import Change, awatch

logger = logging.getLogger(__name__)

DEFAULT_QUIET_INTERVAL = 0.5


class HotReloader:
    """Calls ``on_reload`` once a burst of changes to ``path`` has gone quiet.

    Every add/modify event restarts the quiet period, so a burst of N rapid
    saves triggers one reload that reads the final content.
    """

    def __init__(
        self,
        path: Path,
        on_reload: Callable[[], Awaitable[object]],
        quiet_interval: float = DEFAULT_QUIET_INTERVAL,
    ):
        self.path = Path(path).resolve()
        self.on_reload = on_reload
        self.quiet_interval = quiet_interval
        self._timer: Optional[asyncio.TimerHandle] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._reloads = set()

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def notify(self, change: Change, paths: Iterable[str]):
        """Record a filesystem event."""
        if change not in (Change.added, Change.modified):
            return
        if not any(Path(p).resolve() == self.path for p in paths):
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.quiet_interval, self._fire)

    def _fire(self):
        self._timer = None
        logger.info(f"{self.path.name} changed, reloading")
        task = asyncio.create_task(self._reload())
        self._reloads.add(task)
        task.add_done_callback(self._reloads.discard)

    async def _reload(self):
        try:
            await self.on_reload()
        except Exception:
            logger.exception(f"Reload of {self.path} failed")

    async def watch(self):
        """Watch the script's directory until stop() is called."""
        self._stop_event = asyncio.Event()
        logger.info(f"Watching {self.path} for changes")
        # The directory is watched so editors that replace the file on save are followed
        async for changes in awatch(self.path.parent, stop_event=self._stop_event, debounce=50):
            for change, changed_path in changes:
                self.notify(change, [changed_path])

    def start(self):
        self._watch_task = asyncio.create_task(self.watch())

    async def stop(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._stop_event is not None:
            self._stop_event.set()
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None
        for task in list(self._reloads):
            task.cancel()
