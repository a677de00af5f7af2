"""Coordinator for in-flight lifecycle tasks.

A single asyncio task owns the in-flight bookkeeping. Submissions, drain
requests and shutdown all arrive as events on its queue and are handled in
arrival order, so a drain request always sees every submission made before
it. The loop never awaits lifecycle or network work itself; it only waits
for its next event.
"""
import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from mocktwilio.errors import InFlightTimeoutError, ServerClosedError
from mocktwilio.lifecycle import Lifecycle

logger = logging.getLogger(__name__)


@dataclass
class _Submit:
    lifecycle: Lifecycle


@dataclass
class _WaitIdle:
    waiter: asyncio.Future


class _Shutdown:
    pass


class Coordinator:
    """Spawns and tracks lifecycle tasks; serves drain and shutdown."""

    def __init__(self, on_error: Callable[[Exception], None] | None = None):
        self.on_error = on_error
        self._events: asyncio.Queue | None = None
        self._loop_task: asyncio.Task | None = None

        self._in_flight: set[asyncio.Task] = set()
        self._watchers: set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

        # Seen by lifecycles between transitions
        self._stopping = asyncio.Event()

        self._shutdown_requested = False
        self._closed = asyncio.Event()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def closed(self) -> bool:
        return self._shutdown_requested

    def start(self) -> None:
        """Start the coordinating loop on the running event loop."""
        if self._loop_task is not None:
            return
        if self._shutdown_requested:
            raise ServerClosedError("coordinator already shut down")
        self._events = asyncio.Queue()
        self._loop_task = asyncio.create_task(self._run(), name="mocktwilio-coordinator")

    def submit(self, lifecycle: Lifecycle) -> None:
        """Hand a lifecycle to the loop to run.

        Raises:
            ServerClosedError: If shutdown has begun
            RuntimeError: If the coordinator was never started
        """
        if self._shutdown_requested:
            raise ServerClosedError("server is shutting down")
        if self._events is None:
            raise RuntimeError("coordinator not started")
        self._events.put_nowait(_Submit(lifecycle))

    async def wait_in_flight(self, timeout: float | None = None) -> None:
        """Wait until no lifecycle task is running.

        Args:
            timeout: Seconds to wait before giving up; None waits forever

        Raises:
            InFlightTimeoutError: If work is still in flight when timeout elapses
        """
        if self._shutdown_requested or self._events is None:
            waiter = self._closed.wait() if self._shutdown_requested else self._idle.wait()
            try:
                await asyncio.wait_for(waiter, timeout)
            except asyncio.TimeoutError:
                raise InFlightTimeoutError(f"{self.in_flight} lifecycles still in flight") from None
            return

        waiter = asyncio.get_running_loop().create_future()
        self._events.put_nowait(_WaitIdle(waiter))
        try:
            # shield keeps the watcher's future alive after a timeout
            await asyncio.wait_for(asyncio.shield(waiter), timeout)
        except asyncio.TimeoutError:
            raise InFlightTimeoutError(f"{self.in_flight} lifecycles still in flight") from None

    async def close(self) -> None:
        """Stop accepting work and wait for running lifecycles to finish.

        Safe to call any number of times from any number of tasks; every
        caller returns once the single shutdown has completed.
        """
        if not self._shutdown_requested:
            self._shutdown_requested = True
            if self._loop_task is None:
                self._closed.set()
            else:
                self._events.put_nowait(_Shutdown())
        await self._closed.wait()

    async def _run(self) -> None:
        try:
            while True:
                event = await self._events.get()
                if isinstance(event, _Shutdown):
                    break
                if isinstance(event, _Submit):
                    self._spawn(event.lifecycle)
                elif isinstance(event, _WaitIdle):
                    watcher = asyncio.create_task(self._watch_idle(event.waiter))
                    self._watchers.add(watcher)
                    watcher.add_done_callback(self._watchers.discard)
        finally:
            logger.info(f"Coordinator shutting down, waiting on {self.in_flight} lifecycles")
            self._stopping.set()
            if self._in_flight:
                await asyncio.wait(set(self._in_flight))
            self._closed.set()
            logger.info("Coordinator stopped")

    def _spawn(self, lifecycle: Lifecycle) -> None:
        task = asyncio.create_task(
            lifecycle.run(self._stopping), name=f"{lifecycle.kind}:{lifecycle.sid}"
        )
        self._in_flight.add(task)
        self._idle.clear()
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if not self._in_flight:
            self._idle.set()

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Lifecycle {task.get_name()} failed: {error!r}", exc_info=error)
            if self.on_error is not None:
                self.on_error(error)

    async def _watch_idle(self, waiter: asyncio.Future) -> None:
        await self._idle.wait()
        if not waiter.done():
            waiter.set_result(None)
