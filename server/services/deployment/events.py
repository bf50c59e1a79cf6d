"""Typed per-deployment event channels."""

import asyncio
import inspect
from typing import Any, Callable, Generic, List, Set, TypeVar

from core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Any]


class EventChannel(Generic[T]):
    """Ordered fan-out of events to subscribed callbacks.

    Listeners may be plain callables or coroutine functions. Coroutines are
    scheduled on the running loop; their tasks are kept alive until done and
    failures are logged. A closed channel drops all listeners and ignores
    further emits.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Listener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it."""
        if self._closed:
            raise RuntimeError(f"Event channel '{self.name}' is closed")
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, value: T) -> None:
        if self._closed:
            return
        for listener in list(self._listeners):
            try:
                result = listener(value)
            except Exception as e:
                logger.error("Event listener failed", channel=self.name, error=str(e))
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    def close(self) -> None:
        self._closed = True
        self._listeners.clear()

    async def drain(self) -> None:
        """Wait for scheduled listener coroutines to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Async event listener failed", channel=self.name, error=str(error))
