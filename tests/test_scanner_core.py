import asyncio
import errno

import pytest

import scanner_core
from conftest import FakeReader, FakeWriter
from models import PortState, Protocol, ScanTarget
from probe_parser import parse_probe_database
from scanner_core import PermitPool, classify_connect_error, connect_probe, scan_port, scan_tcp


class TestClassifyConnectError:
    def test_refused_is_closed(self):
        assert classify_connect_error(ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused"))[0] is PortState.CLOSED

    def test_timeout_and_permission_are_filtered(self):
        assert classify_connect_error(TimeoutError("timed out"))[0] is PortState.FILTERED
        assert classify_connect_error(PermissionError(errno.EACCES, "Permission denied"))[0] is PortState.FILTERED

    def test_unreachable_errnos_are_filtered(self):
        assert classify_connect_error(OSError(errno.ENETUNREACH, "Network is unreachable"))[0] is PortState.FILTERED
        assert classify_connect_error(OSError(errno.EHOSTUNREACH, "No route to host"))[0] is PortState.FILTERED


class TestClassifyMessageHeuristics:
    def test_refused_text(self):
        assert classify_connect_error(OSError("The remote host REFUSED the connection"))[0] is PortState.CLOSED

    def test_filtered_texts(self):
        for msg in ("connect Timeout", "destination unreachable", "administratively filtered"):
            assert classify_connect_error(OSError(msg))[0] is PortState.FILTERED, msg

    def test_unknown_defaults_to_closed(self):
        assert classify_connect_error(OSError("something odd happened"))[0] is PortState.CLOSED
        assert classify_connect_error(OSError("connection timed out"))[0] is PortState.CLOSED


@pytest.mark.asyncio
async def test_connect_probe_open(listening_socket):
    port = listening_socket.getsockname()[1]
    assert await connect_probe("127.0.0.1", port, 1000) == (PortState.OPEN, "syn-ack")


@pytest.mark.asyncio
async def test_connect_probe_refused(closed_port):
    state, reason = await connect_probe("127.0.0.1", closed_port, 1000)
    assert state is PortState.CLOSED
    assert reason == "conn-refused"


@pytest.mark.asyncio
async def test_connect_probe_deadline_is_filtered(monkeypatch):
    async def hang(host, port, **kwargs):
        await asyncio.sleep(10)

    monkeypatch.setattr(asyncio, "open_connection", hang)
    assert await connect_probe("192.0.2.1", 80, 50) == (PortState.FILTERED, "timeout")


@pytest.mark.asyncio
async def test_permit_released_when_connect_raises(monkeypatch):
    async def boom(host, port, **kwargs):
        raise RuntimeError("transport exploded")

    monkeypatch.setattr(asyncio, "open_connection", boom)
    pool = PermitPool(2)
    with pytest.raises(RuntimeError):
        await scan_port("127.0.0.1", 80, 100, pool)
    assert pool.in_flight == 0
    assert pool.acquired == pool.released == 1


def test_permit_pool_rejects_zero():
    with pytest.raises(ValueError):
        PermitPool(0)


@pytest.mark.asyncio
async def test_concurrency_bound_across_targets(monkeypatch):
    in_flight = 0
    peak = 0

    async def slow_refuse(host, port, **kwargs):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        try:
            await asyncio.sleep(0.01)
        finally:
            in_flight -= 1
        raise ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")

    monkeypatch.setattr(asyncio, "open_connection", slow_refuse)
    pool = PermitPool(3)
    ports = list(range(1000, 1020))
    targets = [ScanTarget("10.0.0.1", "a"), ScanTarget("10.0.0.2", "b")]
    results = await asyncio.gather(*(scan_tcp(t, ports, 1000, pool) for t in targets))

    assert peak <= 3
    assert pool.peak <= 3
    assert pool.acquired == pool.released == 40
    assert pool.in_flight == 0
    assert all(r.state is PortState.CLOSED for rs in results for r in rs)


@pytest.mark.asyncio
async def test_scan_20_to_22(monkeypatch, localhost):
    async def fake_open(host, port, **kwargs):
        if port == 22:
            return FakeReader(), FakeWriter()
        raise ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")

    monkeypatch.setattr(asyncio, "open_connection", fake_open)
    results = await scan_tcp(localhost, [20, 21, 22], 500, PermitPool(10))
    assert {r.port: r.state for r in results} == {
        20: PortState.CLOSED,
        21: PortState.CLOSED,
        22: PortState.OPEN,
    }
    assert all(r.protocol is Protocol.TCP and r.service is None for r in results)


@pytest.mark.asyncio
async def test_scan_with_service_detection(tcp_service, closed_port, localhost, ssh_probes_text):
    db = parse_probe_database(ssh_probes_text)
    async with tcp_service(banner=b"SSH-2.0-TestServer\r\n") as port:
        results = await scan_tcp(
            localhost, [closed_port, port], 1000, PermitPool(4),
            service_detection=True, database=db, service_timeout_ms=1000,
        )
    by_port = {r.port: r for r in results}
    assert by_port[closed_port].state is PortState.CLOSED
    assert by_port[closed_port].service is None
    assert by_port[port].state is PortState.OPEN
    assert by_port[port].service.service == "ssh"
    assert by_port[port].service.product == "TestServer"
    assert by_port[port].service.version == "2.0"


@pytest.mark.asyncio
async def test_failed_detection_keeps_open_state(listening_socket, localhost, ssh_probes_text):
    db = parse_probe_database(ssh_probes_text)
    port = listening_socket.getsockname()[1]
    results = await scan_tcp(localhost, [port], 1000, PermitPool(1), service_detection=True, database=db, service_timeout_ms=100)
    assert results[0].state is PortState.OPEN
    assert results[0].service is None


@pytest.mark.asyncio
async def test_banner_fallback_without_database(tcp_service, localhost):
    async with tcp_service(banner=b"220 ready\r\n") as port:
        results = await scan_tcp(localhost, [port], 1000, PermitPool(1), service_detection=True, database=None, service_timeout_ms=1000)
    assert results[0].banner == "220 ready"
    assert results[0].service is None


@pytest.mark.asyncio
async def test_scan_is_repeatable(tcp_service, closed_port, localhost, ssh_probes_text):
    db = parse_probe_database(ssh_probes_text)
    async with tcp_service(banner=b"SSH-2.0-TestServer\r\n") as port:
        ports = [port, closed_port, port]
        first = await scan_tcp(localhost, ports, 1000, PermitPool(2), True, db, 1000)
        second = await scan_tcp(localhost, ports, 1000, PermitPool(2), True, db, 1000)
    assert first == second
    assert len(first) == 3


@pytest.mark.asyncio
async def test_empty_port_list(localhost):
    assert await scan_tcp(localhost, [], 100, PermitPool(1)) == []


@pytest.mark.asyncio
async def test_permit_released_before_service_detection(monkeypatch):
    pool = PermitPool(1)
    seen = []

    async def fake_open(host, port, **kwargs):
        return FakeReader(), FakeWriter()

    async def fake_detect(host, port, database, timeout_ms):
        seen.append(("detect", pool.in_flight))
        return None

    async def fake_banner(host, port, timeout_ms):
        seen.append(("banner", pool.in_flight))
        return None

    monkeypatch.setattr(asyncio, "open_connection", fake_open)
    monkeypatch.setattr(scanner_core, "detect_service", fake_detect)
    monkeypatch.setattr(scanner_core, "grab_banner", fake_banner)

    await scan_port("127.0.0.1", 22, 100, pool, service_detection=True, database=object())
    await scan_port("127.0.0.1", 22, 100, pool, service_detection=True, database=None)
    assert seen == [("detect", 0), ("banner", 0)]
    assert pool.acquired == pool.released == 2
