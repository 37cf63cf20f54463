from __future__ import annotations

import asyncio
import contextlib
import errno
import re
import socket
import time
from typing import List, Optional

from .models import Outcome, OutcomeKind


DEFAULT_BACKLOG = 128

_REASONS = {
    errno.EHOSTUNREACH: "host_unreachable",
    errno.ENETUNREACH: "network_unreachable",
    errno.EACCES: "permission_denied",
    errno.EPERM: "permission_denied",
    errno.EADDRNOTAVAIL: "address_unavailable",
    errno.EADDRINUSE: "address_in_use",
    errno.ECONNRESET: "connection_reset",
    errno.ECONNREFUSED: "connection_refused",
    errno.ETIMEDOUT: "timed_out",
    errno.EMFILE: "too_many_open_files",
    errno.ENFILE: "too_many_open_files",
    errno.EAFNOSUPPORT: "address_family_unsupported",
}

# asyncio folds per-address failures into a single OSError without errno.
_ERRNO_IN_MESSAGE = re.compile(r"\[Errno (\d+)\]")


class BindError(Exception):
    def __init__(self, port: int, reason: str, detail: str) -> None:
        super().__init__(f"cannot listen on port {port}: {detail}")
        self.port = port
        self.reason = reason
        self.detail = detail


def _errnos(exc: OSError) -> List[int]:
    if exc.errno is not None:
        return [exc.errno]
    return [int(n) for n in _ERRNO_IN_MESSAGE.findall(str(exc))]


def classify_os_error(exc: BaseException) -> str:
    """Map an OS/network failure to a stable reason code."""
    if isinstance(exc, socket.gaierror):
        return "dns_failure"
    if isinstance(exc, ConnectionRefusedError):
        return "connection_refused"
    if isinstance(exc, OSError):
        codes = set(_errnos(exc))
        if len(codes) == 1:
            code = codes.pop()
            if code in _REASONS:
                return _REASONS[code]
            return f"os_error:{errno.errorcode.get(code, code)}"
    return "os_error"


async def connect_probe(host: str, port: int, timeout: float) -> Outcome:
    """One bounded TCP connect attempt. Network failures come back as an Outcome, never raised."""
    start = time.perf_counter()
    writer: Optional[asyncio.StreamWriter] = None
    kind = OutcomeKind.CONNECTED
    reason: Optional[str] = None
    detail: Optional[str] = None
    try:
        conn = asyncio.open_connection(host, port)
        _, writer = await asyncio.wait_for(conn, timeout=timeout)
    except asyncio.TimeoutError:
        kind, detail = OutcomeKind.TIMED_OUT, f"no answer within {timeout}s"
    except OSError as e:
        reason = classify_os_error(e)
        detail = str(e)
        if reason == "connection_refused":
            kind, reason = OutcomeKind.REFUSED, None
        elif reason == "timed_out":
            kind, reason = OutcomeKind.TIMED_OUT, None
        else:
            kind = OutcomeKind.ERROR
    except ValueError as e:
        # bad host string (e.g. IDNA encoding failure) before any packet is sent
        kind, reason, detail = OutcomeKind.ERROR, "invalid_target", str(e)
    finally:
        # Never exchange payload with the target: close straight away.
        if writer is not None:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
    return Outcome(
        port=port,
        kind=kind,
        host=host,
        reason=reason,
        detail=detail,
        elapsed_s=round(time.perf_counter() - start, 4),
    )


def bind_listener(port: int, host: str = "0.0.0.0", backlog: int = DEFAULT_BACKLOG) -> socket.socket:
    """Return a non-blocking listening socket on (host, port) or raise BindError."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock: Optional[socket.socket] = None
    try:
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
        sock.setblocking(False)
    except OSError as e:
        if sock is not None:
            sock.close()
        reason = classify_os_error(e)
        detail = e.strerror or str(e)
        if reason == "permission_denied" and port < 1024:
            detail += " (ports below 1024 need elevated privileges)"
        raise BindError(port, reason, detail) from e
    return sock
