"""Delivery of UI-visible notifications on a single execution context.

``ContextDispatcher`` is a queue drained by one pump task on the owning
event loop. ``post`` may be called from any thread; callbacks always run
on the loop that started the dispatcher, one at a time, in posting order.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

_WorkItem = Tuple[Callable[..., Any], Tuple[Any, ...]]


class ContextDispatcher:
    """Single-consumer work queue bound to an asyncio event loop."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[_WorkItem]" = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pump_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._pump_task is not None and not self._pump_task.done()

    def start(self) -> None:
        """Bind to the running loop and start the pump. Idempotent."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._pump_task = self._loop.create_task(self._pump(), name="context-dispatcher")
        logger.debug("Context dispatcher started")

    async def stop(self) -> None:
        """Stop the pump after delivering everything already queued."""
        if not self.running:
            return
        await self.drain()
        self._pump_task.cancel()
        try:
            await self._pump_task
        except asyncio.CancelledError:
            pass
        self._pump_task = None
        logger.debug("Context dispatcher stopped")

    def post(self, callback: Callable[..., Any], *args: Any) -> None:
        """Queue ``callback(*args)`` for execution on the dispatcher's loop.

        Raises:
            RuntimeError: If the dispatcher was never started
        """
        if self._loop is None:
            raise RuntimeError("ContextDispatcher.post() called before start()")
        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        if current_loop is self._loop:
            self._queue.put_nowait((callback, args))
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (callback, args))

    async def drain(self) -> None:
        """Wait until every posted callback has run."""
        # Let call_soon_threadsafe hand-offs land in the queue first
        await asyncio.sleep(0)
        await self._queue.join()

    async def _pump(self) -> None:
        while True:
            callback, args = await self._queue.get()
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Dispatched callback {getattr(callback, '__name__', callback)} failed")
            finally:
                self._queue.task_done()
