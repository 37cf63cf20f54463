import asyncio
import errno
import os
import socket
import time

import pytest

from otsentinel.events import EventEmitter
from otsentinel.listener import ListenerSupervisor
from otsentinel.log import TRACE
from otsentinel.models import EventKind

from conftest import find_free_port


async def knock(port: int) -> None:
    _, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.close()
    await writer.wait_closed()


async def wait_for_events(sink, kind, count, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if len(sink.of_kind(kind)) >= count:
            return
        await asyncio.sleep(0.02)


def port_is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind(("127.0.0.1", port))
        except OSError:
            return False
        return True


@pytest.mark.asyncio
async def test_accepted_connection_is_reported_with_peer(sink, free_port):
    async with EventEmitter(sink) as emitter:
        sup = ListenerSupervisor([free_port], emitter, timeout=0.2, host="127.0.0.1")
        async with sup:
            assert sup.bound == [free_port]
            await knock(free_port)
            await knock(free_port)
            await wait_for_events(sink, EventKind.CONNECTED, 2)
    connected = sink.of_kind(EventKind.CONNECTED)
    assert len(connected) == 2
    assert all(e.port == free_port for e in connected)
    assert all(e.peer.startswith("127.0.0.1:") for e in connected)
    assert connected[0].timestamp <= connected[1].timestamp
    assert sup.accepted == 2


@pytest.mark.asyncio
async def test_bind_failure_does_not_stop_other_ports(sink):
    good = find_free_port()
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
        holder.bind(("127.0.0.1", 0))
        holder.listen(1)
        busy = holder.getsockname()[1]
        async with EventEmitter(sink) as emitter:
            sup = ListenerSupervisor([busy, good], emitter, timeout=0.2, host="127.0.0.1")
            async with sup:
                assert sup.bound == [good]
                assert sup.failed == {busy: "address_in_use"}
                await knock(good)
                await wait_for_events(sink, EventKind.CONNECTED, 1)
    failed = sink.of_kind(EventKind.BIND_FAILED)
    assert [e.port for e in failed] == [busy]
    assert [e.port for e in sink.of_kind(EventKind.CONNECTED)] == [good]


@pytest.mark.asyncio
async def test_idle_timeouts_are_silent_by_default(sink, free_port):
    async with EventEmitter(sink) as emitter:
        async with ListenerSupervisor([free_port], emitter, timeout=0.05, host="127.0.0.1"):
            await asyncio.sleep(0.3)
    assert sink.events == []


@pytest.mark.asyncio
async def test_idle_timeouts_can_be_logged_at_trace(sink, free_port):
    async with EventEmitter(sink) as emitter:
        async with ListenerSupervisor([free_port], emitter, timeout=0.05, host="127.0.0.1", log_idle=True):
            await asyncio.sleep(0.3)
    idle = sink.of_kind(EventKind.TIMED_OUT)
    assert idle
    assert all(e.level == TRACE and e.port == free_port for e in idle)


@pytest.mark.asyncio
async def test_stop_releases_every_socket_within_one_timeout(sink):
    ports = [find_free_port() for _ in range(3)]
    timeout = 0.5
    emitter = EventEmitter(sink)
    sup = ListenerSupervisor(ports, emitter, timeout=timeout, host="127.0.0.1")
    await sup.start()
    assert sup.running
    assert not any(port_is_free(p) for p in ports)
    start = time.monotonic()
    await sup.stop()
    assert time.monotonic() - start <= timeout + 0.3
    assert not sup.running
    assert sup.bound == []
    assert all(port_is_free(p) for p in ports)


@pytest.mark.asyncio
async def test_connection_hook_receives_peer(sink, free_port):
    seen = []
    async with EventEmitter(sink) as emitter:
        async with ListenerSupervisor([free_port], emitter, timeout=0.2, host="127.0.0.1", on_connection=lambda port, host: seen.append((port, host))):
            await knock(free_port)
            await wait_for_events(sink, EventKind.CONNECTED, 1)
    assert seen == [(free_port, "127.0.0.1")]


@pytest.mark.asyncio
async def test_failing_hook_does_not_kill_accept_loop(sink, free_port):
    def hook(port, host):
        raise RuntimeError("hook broke")

    async with EventEmitter(sink) as emitter:
        async with ListenerSupervisor([free_port], emitter, timeout=0.2, host="127.0.0.1", on_connection=hook):
            await knock(free_port)
            await knock(free_port)
            await wait_for_events(sink, EventKind.CONNECTED, 2)
    assert len(sink.of_kind(EventKind.CONNECTED)) == 2


@pytest.mark.asyncio
async def test_running_out_of_descriptors_fails_remaining_ports_only(sink):
    resource = pytest.importorskip("resource")
    if not os.path.isdir("/proc/self/fd"):
        pytest.skip("needs /proc/self/fd to count open descriptors")
    ports = [find_free_port() for _ in range(8)]
    emitter = EventEmitter(sink)
    sup = ListenerSupervisor(ports, emitter, timeout=0.2, host="127.0.0.1")
    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    # os.listdir itself holds one descriptor while counting
    in_use = len(os.listdir("/proc/self/fd")) - 1
    resource.setrlimit(resource.RLIMIT_NOFILE, (in_use + 3, hard))
    try:
        await sup.start()
    finally:
        resource.setrlimit(resource.RLIMIT_NOFILE, (soft, hard))
    try:
        assert sup.bound
        assert sup.failed
        assert sorted(sup.bound + list(sup.failed)) == sorted(ports)
        assert set(sup.failed.values()) == {"too_many_open_files"}
        assert sorted(e.port for e in sink.of_kind(EventKind.BIND_FAILED)) == sorted(sup.failed)
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_transient_accept_error_is_reported_and_loop_recovers(monkeypatch, sink, free_port):
    loop = asyncio.get_running_loop()
    real_accept = loop.sock_accept
    failures = []

    async def flaky_accept(sock):
        if not failures:
            failures.append(sock)
            raise OSError(errno.EMFILE, "Too many open files")
        return await real_accept(sock)

    monkeypatch.setattr(loop, "sock_accept", flaky_accept)
    async with EventEmitter(sink) as emitter:
        async with ListenerSupervisor([free_port], emitter, timeout=0.2, host="127.0.0.1"):
            await wait_for_events(sink, EventKind.ERROR, 1)
            await knock(free_port)
            await wait_for_events(sink, EventKind.CONNECTED, 1)
    errors = sink.of_kind(EventKind.ERROR)
    assert len(errors) == 1
    assert errors[0].port == free_port
    assert "too_many_open_files" in errors[0].detail
    connected = sink.of_kind(EventKind.CONNECTED)
    assert [e.port for e in connected] == [free_port]
    assert connected[0].timestamp > errors[0].timestamp
