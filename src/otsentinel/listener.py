from __future__ import annotations

import asyncio
import logging
import socket
from typing import Callable, Dict, Iterable, List, Optional, Set

from .events import EventEmitter
from .log import TRACE
from .models import Event, EventKind
from .ports import BindError, bind_listener, classify_os_error


log = logging.getLogger(__name__)

# Extra time granted to accept loops after stop() before they are cancelled.
SHUTDOWN_GRACE_S = 1.0

ConnectionHook = Callable[[int, str], None]


def _format_peer(addr) -> str:
    host, port = addr[0], addr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class ListenerSupervisor:
    """
    One accept loop per listen port. Each loop waits at most `timeout` for an
    inbound connection, reports it, closes it and goes back to waiting.
    A port that cannot be bound is reported and skipped.
    """

    def __init__(
        self,
        ports: Iterable[int],
        emitter: EventEmitter,
        timeout: float,
        host: str = "0.0.0.0",
        log_idle: bool = False,
        on_connection: Optional[ConnectionHook] = None,
    ) -> None:
        self.ports: List[int] = list(ports)
        self.emitter = emitter
        self.timeout = timeout
        self.host = host
        self.log_idle = log_idle
        self.on_connection = on_connection
        self.failed: Dict[int, str] = {}
        self.accepted = 0
        self._tasks: Dict[int, asyncio.Task] = {}
        self._bound: Set[int] = set()
        self._stop = asyncio.Event()

    @property
    def bound(self) -> List[int]:
        return sorted(self._bound)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    async def start(self) -> None:
        self._stop.clear()
        for port in self.ports:
            if port in self._tasks and not self._tasks[port].done():
                continue
            try:
                sock = bind_listener(port, self.host)
            except BindError as e:
                self.failed[port] = e.reason
                self.emitter.emit(Event(kind=EventKind.BIND_FAILED, port=port, detail=f"{e.reason}: {e.detail}", level=logging.ERROR))
                continue
            self.failed.pop(port, None)
            self._bound.add(port)
            self._tasks[port] = asyncio.create_task(self._accept_loop(port, sock), name=f"listen:{port}")
            log.info("Listening on %s:%d", self.host, port)
        if self.ports and not self._tasks:
            log.error("No listen port could be bound; nothing is being monitored")

    async def _accept_loop(self, port: int, sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        try:
            with sock:
                while not self._stop.is_set():
                    try:
                        conn, addr = await asyncio.wait_for(loop.sock_accept(sock), timeout=self.timeout)
                    except asyncio.TimeoutError:
                        if self.log_idle:
                            self.emitter.emit(Event(kind=EventKind.TIMED_OUT, port=port, detail=f"no connection within {self.timeout}s", level=TRACE))
                        continue
                    except OSError as e:
                        # e.g. EMFILE; keep the port monitored and retry after one interval
                        self.emitter.emit(Event(kind=EventKind.ERROR, port=port, detail=f"accept failed ({classify_os_error(e)}): {e}", level=logging.ERROR))
                        try:
                            await asyncio.wait_for(self._stop.wait(), timeout=self.timeout)
                        except asyncio.TimeoutError:
                            pass
                        continue
                    # Detection only: no payload is read or written.
                    conn.close()
                    self.accepted += 1
                    peer = _format_peer(addr)
                    self.emitter.emit(Event(kind=EventKind.CONNECTED, port=port, detail=f"connection from {peer}", peer=peer, level=logging.WARNING))
                    if self.on_connection is not None:
                        try:
                            self.on_connection(port, addr[0])
                        except Exception:
                            log.exception("connection hook failed for port %d", port)
        finally:
            self._bound.discard(port)
            log.debug("Listener on port %d closed", port)

    async def stop(self) -> None:
        """Signal every accept loop and wait for all listening sockets to be released."""
        self._stop.set()
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.timeout + SHUTDOWN_GRACE_S)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        for port, t in self._tasks.items():
            if t.done() and not t.cancelled() and t.exception() is not None:
                log.error("Listener on port %d stopped with error: %s", port, t.exception())
        self._tasks.clear()
        log.info("All listeners stopped")

    async def __aenter__(self) -> "ListenerSupervisor":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()
