from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import find_dotenv, load_dotenv

from .log import parse_level
from .portspec import PortSet, PortSpecError, parse_ports


DEFAULT_TIMEOUT_SECS = 30
DEFAULT_LOG_LEVEL = "INFO"

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off", ""}


class ConfigError(RuntimeError):
    """Invalid or missing configuration; fatal at startup."""

    def __init__(self, variable: str, message: str) -> None:
        super().__init__(f"{variable}: {message}")
        self.variable = variable


def load_env(dotenv_path: Optional[Path] = None) -> None:
    """Load environment variables from a .env file (without overriding the real environment)."""
    if dotenv_path is None:
        found = find_dotenv(usecwd=True)
        if not found:
            return
        dotenv_path = Path(found)
    elif not dotenv_path.exists():
        raise ConfigError("--env-file", f"{dotenv_path} does not exist")
    load_dotenv(dotenv_path=dotenv_path, override=False)


@dataclass(frozen=True)
class Settings:
    listen_ports: PortSet
    scan_ports: PortSet
    connection_timeout: int = DEFAULT_TIMEOUT_SECS
    active: bool = False
    log_level: str = DEFAULT_LOG_LEVEL
    listen_host: str = "0.0.0.0"
    scan_target: str = "127.0.0.1"
    scan_on_connect: bool = False
    log_idle_timeouts: bool = False
    log_dir: Path = Path("logs")
    event_buffer_size: int = 1024
    write_reports: bool = True


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(name, f"expected true/false, got {raw!r}")


def _positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        raise ConfigError(name, f"must be a positive integer, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(name, f"must be a positive integer, got {raw!r}")
    return value


def _ports(name: str, spec: Optional[str]) -> PortSet:
    try:
        return parse_ports(spec)
    except PortSpecError as e:
        raise ConfigError(name, str(e)) from e


def get_settings(environ: Optional[Mapping[str, str]] = None, dotenv_path: Optional[Path] = None) -> Settings:
    """Build validated Settings from `environ` (defaults to os.environ after loading .env)."""
    if environ is None:
        load_env(dotenv_path)
        environ = os.environ
    env = environ

    listen_var = "LISTEN_PORTS" if env.get("PORTS") is None and env.get("LISTEN_PORTS") is not None else "PORTS"
    listen_ports = _ports(listen_var, env.get(listen_var))

    active = _flag(env, "ACTIVE", False)
    scan_spec = env.get("SCAN_PORTS", "")
    if scan_spec.strip():
        scan_ports = _ports("SCAN_PORTS", scan_spec)
    elif active:
        raise ConfigError("SCAN_PORTS", "required when ACTIVE=true")
    else:
        scan_ports = PortSet.empty()

    log_level = env.get("LOG_LEVEL", DEFAULT_LOG_LEVEL).strip().upper() or DEFAULT_LOG_LEVEL
    try:
        parse_level(log_level)
    except ValueError as e:
        raise ConfigError("LOG_LEVEL", str(e)) from None

    scan_on_connect = _flag(env, "SCAN_ON_CONNECT", False)
    if scan_on_connect and not active:
        raise ConfigError("SCAN_ON_CONNECT", "requires ACTIVE=true")

    return Settings(
        listen_ports=listen_ports,
        scan_ports=scan_ports,
        connection_timeout=_positive_int(env, "CONNECTION_TIMEOUT_SECS", DEFAULT_TIMEOUT_SECS),
        active=active,
        log_level=log_level,
        listen_host=env.get("LISTEN_HOST", "0.0.0.0").strip() or "0.0.0.0",
        scan_target=env.get("SCAN_TARGET", "127.0.0.1").strip() or "127.0.0.1",
        scan_on_connect=scan_on_connect,
        log_idle_timeouts=_flag(env, "LOG_IDLE_TIMEOUTS", False),
        log_dir=Path(env.get("LOG_DIR", "logs").strip() or "logs"),
        event_buffer_size=_positive_int(env, "EVENT_BUFFER_SIZE", 1024),
        write_reports=_flag(env, "WRITE_REPORTS", True),
    )
