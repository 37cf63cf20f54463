from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from . import __version__

from .app import Sentinel
from .config import ConfigError, Settings, get_settings
from .log import LoggingSetupError, parse_level, setup_logging
from .models import OutcomeKind, ScanReport
from .portspec import describe


_STYLES = {
    OutcomeKind.CONNECTED: "bold red",
    OutcomeKind.REFUSED: "green",
    OutcomeKind.TIMED_OUT: "yellow",
    OutcomeKind.ERROR: "magenta",
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="otsentinel", description="OT network sentinel - detect unexpected connections and open services")
    p.add_argument("--env-file", type=Path, help="Read configuration from this .env file (default: nearest .env, if any)")
    p.add_argument("--log-level", help="Override LOG_LEVEL (TRACE, DEBUG, INFO, WARN, ERROR, FATAL)")
    p.add_argument("--scan-only", action="store_true", help="Run one scan pass over SCAN_PORTS, print the results and exit")
    p.add_argument("--target", help="Scan target host (overrides SCAN_TARGET)")
    p.add_argument("--no-report", action="store_true", help="Do not write scan report files")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p.parse_args(argv)


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    changes = {}
    if args.log_level:
        try:
            parse_level(args.log_level)
        except ValueError as e:
            raise ConfigError("--log-level", str(e)) from None
        changes["log_level"] = args.log_level.upper()
    if args.target:
        changes["scan_target"] = args.target
    if args.no_report:
        changes["write_reports"] = False
    if args.scan_only:
        if not settings.scan_ports:
            raise ConfigError("SCAN_PORTS", "required for --scan-only")
        changes["active"] = True
    return replace(settings, **changes) if changes else settings


def print_report(console: Console, report: ScanReport) -> None:
    table = Table(title=f"Scan of {report.target}")
    table.add_column("Port", justify="right")
    table.add_column("Outcome")
    table.add_column("Elapsed (s)", justify="right")
    table.add_column("Detail")
    for o in report.outcomes:
        table.add_row(str(o.port), f"[{_STYLES[o.kind]}]{o.kind.value}[/]", f"{o.elapsed_s:.3f}", escape(o.reason or o.detail or ""))
    console.print(table)
    console.print(report.summary())


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    console = Console()
    console.print(f"[bold cyan]otsentinel[/] [dim]v{__version__}[/]")
    try:
        settings = apply_overrides(get_settings(dotenv_path=args.env_file), args)
        setup_logging(settings.log_level, settings.log_dir, console=console)
    except (ConfigError, LoggingSetupError) as e:
        console.print(f"[red]Configuration error:[/] {escape(str(e))}")
        return 2

    sentinel = Sentinel(settings)
    if args.scan_only:
        async def _scan_once() -> Optional[ScanReport]:
            async with sentinel.emitter:
                return await sentinel.scan()

        report = asyncio.run(_scan_once())
        if report is not None:
            print_report(console, report)
        return 0

    mode = "ACTIVE" if settings.active else "PASSIVE"
    console.print(f"[bold]Listening[/] on {settings.listen_host} ports [yellow]{describe(settings.listen_ports)}[/] ({mode}, timeout {settings.connection_timeout}s)")
    if settings.active:
        console.print(f"[bold]Scanning[/] {settings.scan_target} ports [yellow]{describe(settings.scan_ports)}[/]")
    try:
        asyncio.run(sentinel.run())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/]")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
