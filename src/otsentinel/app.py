from __future__ import annotations

import asyncio
import collections
import logging
import signal
from typing import Deque, Dict, Optional

from .config import Settings
from .events import EventEmitter, Sink
from .listener import ListenerSupervisor
from .models import ScanReport
from .report import write_report
from .scan import ScanSupervisor


log = logging.getLogger(__name__)

# Most recent scan reports kept in memory; older ones live only in the report files.
MAX_REPORTS = 32
# Scans allowed in flight at once (startup scan plus scan-on-connect peers).
MAX_CONCURRENT_SCANS = 4


class Sentinel:
    """Wires the emitter, the listeners and the scanner together for one process lifetime."""

    def __init__(self, settings: Settings, sink: Optional[Sink] = None, max_reports: int = MAX_REPORTS, max_concurrent_scans: int = MAX_CONCURRENT_SCANS) -> None:
        self.settings = settings
        self.emitter = EventEmitter(sink=sink, capacity=settings.event_buffer_size)
        self.listeners = ListenerSupervisor(
            settings.listen_ports,
            self.emitter,
            timeout=settings.connection_timeout,
            host=settings.listen_host,
            log_idle=settings.log_idle_timeouts,
            on_connection=self._on_connection,
        )
        self.scanner = ScanSupervisor(
            settings.scan_ports,
            self.emitter,
            timeout=settings.connection_timeout,
            active=settings.active,
            progress=lambda n, total: log.debug("Scanned %d/%d ports", n, total),
        )
        self.reports: Deque[ScanReport] = collections.deque(maxlen=max_reports)
        self.max_concurrent_scans = max_concurrent_scans
        self._scans: Dict[str, asyncio.Task] = {}
        self._stop: Optional[asyncio.Event] = None

    async def scan(self, target: Optional[str] = None) -> Optional[ScanReport]:
        """Run one scan activation and write its report files when enabled."""
        target = target or self.settings.scan_target
        report = await self.scanner.run(target)
        if report is None:
            return None
        self.reports.append(report)
        if self.settings.write_reports:
            try:
                html_path, _ = write_report(self.settings.log_dir, report)
                log.info("Scan report written to %s", html_path)
            except OSError as e:
                log.error("Could not write scan report for %s: %s", target, e)
        return report

    def trigger_scan(self, target: str) -> Optional[asyncio.Task]:
        """Schedule a scan of `target` unless one is already running for it."""
        if not self.settings.active:
            return None
        running = self._scans.get(target)
        if running is not None and not running.done():
            log.debug("Scan of %s already in progress", target)
            return running
        in_flight = sum(1 for t in self._scans.values() if not t.done())
        if in_flight >= self.max_concurrent_scans:
            log.debug("Skipping scan of %s: %d scans already running", target, in_flight)
            return None
        task = asyncio.create_task(self.scan(target), name=f"scan:{target}")
        self._scans[target] = task
        task.add_done_callback(self._scan_done)
        return task

    def _scan_done(self, task: asyncio.Task) -> None:
        for target, t in list(self._scans.items()):
            if t is task:
                del self._scans[target]
        if not task.cancelled() and task.exception() is not None:
            log.error("Scan failed: %s", task.exception())

    def _on_connection(self, port: int, peer_host: str) -> None:
        if self.settings.scan_on_connect:
            self.trigger_scan(peer_host)

    def request_stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not supported on this platform/thread; KeyboardInterrupt still ends asyncio.run
                log.debug("Cannot install handler for %s", sig.name)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                pass

    def _handle_signal(self, sig: signal.Signals) -> None:
        log.info("Received %s, initiating shutdown...", sig.name)
        self.request_stop()

    async def run(self, stop_event: Optional[asyncio.Event] = None, install_signals: bool = True) -> None:
        """Listen (and scan, when active) until stop_event is set or SIGINT/SIGTERM arrives."""
        self._stop = stop_event or asyncio.Event()
        self.emitter.start()
        if install_signals:
            self._install_signal_handlers()
        try:
            await self.listeners.start()
            if self.settings.active:
                self.trigger_scan(self.settings.scan_target)
            await self._stop.wait()
        finally:
            await self.shutdown()
            if install_signals:
                self._remove_signal_handlers()

    async def shutdown(self) -> None:
        await self.listeners.stop()
        scans = list(self._scans.values())
        for t in scans:
            t.cancel()
        if scans:
            await asyncio.gather(*scans, return_exceptions=True)
        await self.emitter.aclose()
        if self.emitter.dropped:
            log.warning("%d events were dropped while running (%d delivered)", self.emitter.dropped, self.emitter.delivered)
        else:
            log.debug("%d events delivered", self.emitter.delivered)
        log.info("Application shutdown complete.")
