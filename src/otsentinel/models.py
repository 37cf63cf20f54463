from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutcomeKind(str, Enum):
    CONNECTED = "Connected"
    REFUSED = "Refused"
    TIMED_OUT = "TimedOut"
    ERROR = "Error"


class EventKind(str, Enum):
    CONNECTED = "Connected"
    REFUSED = "Refused"
    TIMED_OUT = "TimedOut"
    ERROR = "Error"
    BIND_FAILED = "BindFailed"
    SCAN_COMPLETE = "ScanComplete"


@dataclass(frozen=True)
class Outcome:
    port: int
    kind: OutcomeKind
    host: str
    timestamp: datetime = field(default_factory=utcnow)
    reason: Optional[str] = None
    detail: Optional[str] = None
    elapsed_s: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.kind is OutcomeKind.CONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "port": self.port,
            "kind": self.kind.value,
            "host": self.host,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "detail": self.detail,
            "elapsed_s": self.elapsed_s,
        }


@dataclass(frozen=True)
class Event:
    kind: EventKind
    port: Optional[int]
    detail: str
    timestamp: datetime = field(default_factory=utcnow)
    peer: Optional[str] = None
    source: str = "listener"
    level: int = logging.INFO

    @classmethod
    def from_outcome(cls, outcome: Outcome, source: str = "scan") -> "Event":
        # An open service on a scan target is the detection; refusals are the expected baseline.
        if outcome.kind is OutcomeKind.CONNECTED:
            level, detail = logging.WARNING, f"port {outcome.port} open on {outcome.host}"
        elif outcome.kind is OutcomeKind.REFUSED:
            level, detail = logging.DEBUG, f"port {outcome.port} closed on {outcome.host}"
        elif outcome.kind is OutcomeKind.TIMED_OUT:
            level, detail = logging.DEBUG, f"port {outcome.port} on {outcome.host} did not answer"
        else:
            level = logging.WARNING
            detail = f"probe of {outcome.host}:{outcome.port} failed ({outcome.reason}): {outcome.detail}"
        return cls(
            kind=EventKind(outcome.kind.value),
            port=outcome.port,
            detail=detail,
            timestamp=outcome.timestamp,
            source=source,
            level=level,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "port": self.port,
            "kind": self.kind.value,
            "detail": self.detail,
            "source": self.source,
        }
        if self.peer is not None:
            payload["peer"] = self.peer
        return payload


@dataclass(frozen=True)
class ScanReport:
    target: str
    started_at: datetime
    finished_at: datetime
    outcomes: Tuple[Outcome, ...] = ()

    @property
    def ports(self) -> List[int]:
        return [o.port for o in self.outcomes]

    @property
    def open_ports(self) -> List[int]:
        return [o.port for o in self.outcomes if o.is_open]

    @property
    def duration_s(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def by_port(self) -> Dict[int, Outcome]:
        return {o.port: o for o in self.outcomes}

    def counts(self) -> Dict[str, int]:
        totals = {k.value: 0 for k in OutcomeKind}
        for o in self.outcomes:
            totals[o.kind.value] += 1
        return totals

    def summary(self) -> str:
        c = self.counts()
        return (
            f"scan of {self.target} finished: {len(self.outcomes)} ports in {self.duration_s:.2f}s, "
            f"open={c['Connected']} refused={c['Refused']} timed_out={c['TimedOut']} errors={c['Error']}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "counts": self.counts(),
            "open_ports": self.open_ports,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
