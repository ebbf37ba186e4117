"""Base class for pipeline stages: one asyncio task, a stop signal and an ack."""

from __future__ import annotations

import asyncio
import enum
from contextlib import suppress
from typing import TYPE_CHECKING, Any, NoReturn, TypeVar

from nextbus_collector.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger(__name__)

T = TypeVar("T")


class Wakeup(enum.Enum):
    """Reasons other than an item for ``Stage.receive`` to return."""

    STOP = "stop"
    TIMEOUT = "timeout"


def fatal(message: str, **context: Any) -> NoReturn:
    """Log at critical level and terminate the process with status 1.

    Raised inside a stage task, SystemExit propagates out of the event loop.
    """
    logger.critical(message, **context)
    raise SystemExit(1)


async def close_queues(queues: Sequence[asyncio.Queue[Any]]) -> None:
    """Mark end-of-stream on every queue, waiting for space if full."""
    for queue in queues:
        await queue.put(None)


class Stage:
    """A long-running pipeline stage.

    Subclasses implement ``run()``. ``request_stop()`` sets the stage's stop
    signal, which ``run()`` checks between units of work; the stage's stopped
    event is the acknowledgment.
    """

    name = "stage"

    def __init__(self) -> None:
        self._stop_requested = asyncio.Event()
        self._stopped = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    @property
    def has_stopped(self) -> bool:
        return self._stopped.is_set()

    def start(self) -> None:
        if self._task is not None:
            logger.warning("Stage already started, ignoring start request", stage=self.name)
            return
        self._task = asyncio.create_task(self._main(), name=self.name)

    def request_stop(self) -> None:
        self._stop_requested.set()

    async def wait_stopped(self, timeout: float | None = None) -> bool:
        """Wait for the stage to acknowledge; False if it timed out."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def stop(self, timeout: float | None = None) -> bool:
        self.request_stop()
        return await self.wait_stopped(timeout)

    async def cancel(self) -> None:
        """Forcibly cancel a stage that failed to stop on request."""
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task

    async def run(self) -> None:
        raise NotImplementedError

    async def receive(self, queue: asyncio.Queue[T], timeout: float | None = None) -> T | Wakeup:
        """Next item from ``queue``, unless stopped or timed out first.

        An item already removed from the queue is always returned, even when
        the stop signal arrived at the same time.
        """
        if self._stop_requested.is_set():
            return Wakeup.STOP
        get_task = asyncio.ensure_future(queue.get())
        stop_task = asyncio.ensure_future(self._stop_requested.wait())
        try:
            await asyncio.wait(
                {get_task, stop_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_task.cancel()
            if not get_task.done():
                get_task.cancel()
        if get_task.done() and not get_task.cancelled():
            return get_task.result()
        if self._stop_requested.is_set():
            return Wakeup.STOP
        return Wakeup.TIMEOUT

    async def wait_for_stop(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=max(timeout, 0.0))
        except asyncio.TimeoutError:
            return False
        return True

    async def _main(self) -> None:
        logger.info("Stage started", stage=self.name)
        try:
            await self.run()
        except asyncio.CancelledError:
            logger.warning("Stage cancelled", stage=self.name)
            raise
        except Exception as exc:
            logger.error("Stage failed unexpectedly", stage=self.name, exc_info=exc)
            fatal("Pipeline stage crashed", stage=self.name)
        finally:
            self._stopped.set()
        logger.info("Stage stopped", stage=self.name)
