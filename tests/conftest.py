from __future__ import annotations

import socket
from typing import List

import pytest

from otsentinel.models import Event, EventKind


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class CollectingSink:
    def __init__(self) -> None:
        self.events: List[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> List[Event]:
        return [e for e in self.events if e.kind is kind]


@pytest.fixture
def free_port() -> int:
    return find_free_port()


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()
