from __future__ import annotations

import asyncio
import collections
import inspect
import logging
from typing import Awaitable, Callable, Deque, Optional, Union

from .models import Event


log = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1024

Sink = Callable[[Event], Union[None, Awaitable[None]]]


class LoggingSink:
    """Hands events to the logging system at the level each event carries."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger("otsentinel.events")

    def __call__(self, event: Event) -> None:
        if event.port is None:
            self.logger.log(event.level, "[%s] %s", event.kind.value, event.detail, extra={"event": event.to_dict()})
        else:
            self.logger.log(event.level, "[%s] port %d: %s", event.kind.value, event.port, event.detail, extra={"event": event.to_dict()})


class EventEmitter:
    """
    Bounded fire-and-forget buffer between detection tasks and the logging sink.

    emit() never blocks and never raises on overflow: when the buffer is full
    the oldest event is discarded and counted in `dropped`.
    """

    def __init__(self, sink: Optional[Sink] = None, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.sink: Sink = sink or LoggingSink()
        self.capacity = capacity
        self.dropped = 0
        self.delivered = 0
        self._reported_drops = 0
        self._buffer: Deque[Event] = collections.deque(maxlen=capacity)
        self._wakeup: Optional[asyncio.Event] = None
        self._pump: Optional[asyncio.Task] = None
        self._closing = False

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def running(self) -> bool:
        return self._pump is not None and not self._pump.done()

    def emit(self, event: Event) -> None:
        if len(self._buffer) >= self.capacity:
            self.dropped += 1
        self._buffer.append(event)
        if self._wakeup is not None:
            self._wakeup.set()

    def start(self) -> None:
        if self.running:
            return
        self._closing = False
        self._wakeup = asyncio.Event()
        if self._buffer:
            self._wakeup.set()
        self._pump = asyncio.create_task(self._run(), name="event-pump")

    async def _deliver(self, event: Event) -> None:
        try:
            res = self.sink(event)
            if inspect.isawaitable(res):
                await res
            self.delivered += 1
        except Exception:
            log.exception("event sink failed for %s event", event.kind.value)

    def _report_drops(self) -> None:
        pending = self.dropped - self._reported_drops
        if pending:
            self._reported_drops = self.dropped
            log.warning("event buffer full: dropped %d oldest events (%d total)", pending, self.dropped)

    async def _run(self) -> None:
        assert self._wakeup is not None
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._buffer:
                await self._deliver(self._buffer.popleft())
                # let detection tasks run between deliveries
                await asyncio.sleep(0)
            self._report_drops()
            if self._closing:
                return

    async def aclose(self) -> None:
        """Deliver whatever is still buffered, then stop the pump."""
        if self._pump is None:
            return
        self._closing = True
        assert self._wakeup is not None
        self._wakeup.set()
        try:
            await self._pump
        finally:
            self._pump = None

    async def __aenter__(self) -> "EventEmitter":
        self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
