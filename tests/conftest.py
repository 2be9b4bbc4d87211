import asyncio
import contextlib
import socket

import pytest

from models import ScanTarget


@contextlib.asynccontextmanager
async def stub_service(banner=b"", response=None):
    """Loopback TCP server: sends `banner` on connect, answers the first read with `response`."""

    async def handle(reader, writer):
        try:
            if banner:
                writer.write(banner)
                await writer.drain()
            if response is not None:
                data = await reader.read(1024)
                if data:
                    writer.write(response)
                    await writer.drain()
        except (ConnectionError, OSError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    async with server:
        yield port


class FakeReader:
    def __init__(self, data=b""):
        self.data = data

    async def read(self, n=-1):
        return self.data


class FakeWriter:
    def __init__(self):
        self.closed = False
        self.sent = b""

    def write(self, data):
        self.sent += data

    async def drain(self):
        pass

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


@pytest.fixture
def tcp_service():
    return stub_service


@pytest.fixture
def closed_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def listening_socket():
    # The kernel completes the handshake from the backlog, no accept() needed.
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.bind(("127.0.0.1", 0))
    srv.listen(16)
    yield srv
    srv.close()


@pytest.fixture
def localhost():
    return ScanTarget(ip="127.0.0.1", original="localhost")


SSH_PROBES = r"""
Probe TCP NULL q||
match ssh m/^SSH-([\d.]+)-OpenSSH[_-]([\w.]+)/ p/OpenSSH/ v/$2/ i/protocol $1/
match ssh m/^SSH-([\d.]+)-([^\s]+)/ p/$2/ v/$1/
softmatch ftp m/^220 /

Probe TCP GetRequest q|GET / HTTP/1.0\r\n\r\n|
ports 80,8080
match http m|^HTTP/1\.[01] \d\d\d[\s\S]*?\r\nServer: ([^\r\n]+)| p/$1/
softmatch http m|^HTTP/1\.[01] \d\d\d|
"""


@pytest.fixture
def ssh_probes_text():
    return SSH_PROBES
