from __future__ import annotations

import re
from typing import Iterable, Iterator, List, Optional, Set, Tuple


MIN_PORT = 1
MAX_PORT = 65535

_DIGITS = re.compile(r"^[0-9]+$")


class PortSpecError(ValueError):
    """Raised when a port specification cannot be parsed."""

    def __init__(self, message: str, token: Optional[str] = None) -> None:
        super().__init__(message)
        self.token = token


class EmptySpecError(PortSpecError):
    def __init__(self) -> None:
        super().__init__("Empty port spec")


class InvalidPortError(PortSpecError):
    def __init__(self, token: str) -> None:
        super().__init__(f"Invalid port: {token!r} (expected an integer in {MIN_PORT}-{MAX_PORT})", token)


class InvalidRangeError(PortSpecError):
    def __init__(self, token: str) -> None:
        super().__init__(f"Invalid port range: {token!r} (expected low-high with {MIN_PORT} <= low <= high <= {MAX_PORT})", token)


class PortSet:
    """Immutable, ascending, duplicate-free collection of TCP ports."""

    __slots__ = ("_ports",)

    def __init__(self, ports: Tuple[int, ...] = ()) -> None:
        self._ports = ports

    @classmethod
    def of(cls, ports: Iterable[int]) -> "PortSet":
        seen: Set[int] = set()
        for p in ports:
            if isinstance(p, bool) or not isinstance(p, int) or not MIN_PORT <= p <= MAX_PORT:
                raise InvalidPortError(str(p))
            seen.add(p)
        return cls(tuple(sorted(seen)))

    @classmethod
    def empty(cls) -> "PortSet":
        return cls(())

    def __iter__(self) -> Iterator[int]:
        return iter(self._ports)

    def __len__(self) -> int:
        return len(self._ports)

    def __contains__(self, port: object) -> bool:
        return port in self._ports

    def __bool__(self) -> bool:
        return bool(self._ports)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PortSet):
            return self._ports == other._ports
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._ports)

    def __repr__(self) -> str:
        return f"PortSet({describe(self)})"

    def as_tuple(self) -> Tuple[int, ...]:
        return self._ports


def _parse_bound(text: str) -> Optional[int]:
    if not _DIGITS.match(text):
        return None
    value = int(text)
    if value < MIN_PORT or value > MAX_PORT:
        return None
    return value


def parse_ports(spec: Optional[str]) -> PortSet:
    """
    Parses a port specification string into a PortSet.
    Supports:
    - Single ports: "502"
    - Ranges: "1050-1060"
    - Comma-separated: "102,502,20000"
    - Mixed: "1025,1050-1060,2020,7331"

    A single malformed token fails the whole parse.
    """
    if spec is None or not spec.strip():
        raise EmptySpecError()

    ports: Set[int] = set()
    for raw in spec.split(","):
        part = raw.strip()
        if "-" in part:
            start_s, _, end_s = part.partition("-")
            start = _parse_bound(start_s.strip())
            end = _parse_bound(end_s.strip())
            if start is None or end is None or start > end:
                raise InvalidRangeError(part)
            ports.update(range(start, end + 1))
        else:
            p = _parse_bound(part)
            if p is None:
                raise InvalidPortError(part)
            ports.add(p)

    return PortSet(tuple(sorted(ports)))


def describe(ports: Iterable[int]) -> str:
    """Compact textual form of a port collection, collapsing consecutive runs: 1025,1050-1052."""
    chunks: List[str] = []
    run_start: Optional[int] = None
    prev: Optional[int] = None
    for p in sorted(ports):
        if prev is not None and p == prev + 1:
            prev = p
            continue
        if run_start is not None:
            chunks.append(str(run_start) if run_start == prev else f"{run_start}-{prev}")
        run_start = prev = p
    if run_start is not None:
        chunks.append(str(run_start) if run_start == prev else f"{run_start}-{prev}")
    return ",".join(chunks)
