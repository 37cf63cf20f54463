from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Iterable, List, Optional

from .events import EventEmitter
from .models import Event, EventKind, Outcome, ScanReport, utcnow
from .ports import connect_probe


log = logging.getLogger(__name__)

DEFAULT_TARGET = "127.0.0.1"

ProgressCallback = Callable[[int, int], None]


class ScanSupervisor:
    """
    Runs one full connect-scan pass per call to run(). Every port gets its own
    probe, all probes run concurrently and each is bounded by `timeout`, so a
    silent port never holds up the others.
    """

    def __init__(
        self,
        ports: Iterable[int],
        emitter: EventEmitter,
        timeout: float,
        active: bool = True,
        progress: Optional[ProgressCallback] = None,
        progress_interval: float = 30.0,
    ) -> None:
        self.ports: List[int] = sorted(set(ports))
        self.emitter = emitter
        self.timeout = timeout
        self.active = active
        self.progress = progress
        self.progress_interval = progress_interval

    async def _probe(self, target: str, port: int) -> Outcome:
        outcome = await connect_probe(target, port, self.timeout)
        self.emitter.emit(Event.from_outcome(outcome))
        return outcome

    async def run(self, target: str = DEFAULT_TARGET) -> Optional[ScanReport]:
        if not self.active:
            log.debug("Active scanning is disabled; skipping scan of %s", target)
            return None

        total = len(self.ports)
        scanned = 0
        done = asyncio.Event()
        started = utcnow()
        log.info("Initiating port scan for %s (%d ports, timeout %ss)", target, total, self.timeout)

        async def ticker():
            if not self.progress or total == 0:
                return
            while True:
                try:
                    await asyncio.wait_for(done.wait(), timeout=self.progress_interval)
                    return
                except asyncio.TimeoutError:
                    self.progress(scanned, total)

        async def worker(p: int) -> Outcome:
            nonlocal scanned
            outcome = await self._probe(target, p)
            scanned += 1
            return outcome

        t_task = asyncio.create_task(ticker())
        try:
            outcomes = await asyncio.gather(*(worker(p) for p in self.ports))
        finally:
            done.set()
            with contextlib.suppress(asyncio.CancelledError):
                await t_task
        if self.progress and total:
            self.progress(scanned, total)

        report = ScanReport(
            target=target,
            started_at=started,
            finished_at=utcnow(),
            outcomes=tuple(sorted(outcomes, key=lambda o: o.port)),
        )
        level = logging.WARNING if report.open_ports else logging.INFO
        self.emitter.emit(Event(kind=EventKind.SCAN_COMPLETE, port=None, detail=report.summary(), source="scan", level=level))
        return report
