import asyncio
import logging
from typing import Awaitable, Callable, Optional


logger = logging.getLogger(__name__)


class DebouncedCall:
    """Runs ``func`` once after ``delay`` seconds of quiet.

    Scheduling again before the timer fires cancels the pending timer and
    starts a new one. A call that is already running is not cancelled.
    """

    def __init__(self, func: Callable[[], Awaitable[None]], delay: float) -> None:
        self._func = func
        self._delay = delay
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

    def schedule(self, delay: Optional[float] = None) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay if delay is None else delay, self._fire)

    def run_now(self) -> asyncio.Task:
        self.cancel()
        return self._spawn()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._spawn()

    def _spawn(self) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self) -> None:
        try:
            await self._func()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled call %r failed", self._func)
