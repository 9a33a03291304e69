"""Shared fixtures: loopback listeners, closed ports and pipes standing in for stdio."""

import os
import socket

import anyio
import pytest
from anyio.abc import SocketAttribute


class Pipe:
    """An OS pipe whose descriptors are closed at most once."""

    def __init__(self):
        self.read_fd, self.write_fd = os.pipe()
        self._open = {self.read_fd, self.write_fd}

    def write(self, data: bytes) -> None:
        os.write(self.write_fd, data)

    def close_write(self) -> None:
        self._close(self.write_fd)

    def close(self) -> None:
        for fd in list(self._open):
            self._close(fd)

    def _close(self, fd: int) -> None:
        if fd in self._open:
            self._open.discard(fd)
            os.close(fd)

    async def read_exactly(self, size: int) -> bytes:
        """Read ``size`` bytes (less on end of file) without blocking the event loop."""
        data = b""
        while len(data) < size:
            await anyio.wait_readable(self.read_fd)
            chunk = os.read(self.read_fd, size - len(data))
            if not chunk:
                break
            data += chunk
        return data


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def server():
    """A listening loopback socket."""
    listener = await anyio.create_tcp_listener(local_host="127.0.0.1")
    async with listener:
        yield listener.listeners[0]


@pytest.fixture
def server_port(server) -> str:
    return str(server.extra(SocketAttribute.local_port))


@pytest.fixture
def closed_port() -> str:
    """A loopback port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return str(sock.getsockname()[1])


@pytest.fixture
async def connected_pair(server, server_port):
    """(client, peer) ends of one established loopback connection."""
    client = await anyio.connect_tcp("127.0.0.1", int(server_port))
    peer = await server.accept()
    async with client, peer:
        yield client, peer


@pytest.fixture
def stdin_pipe():
    pipe = Pipe()
    yield pipe
    pipe.close()


@pytest.fixture
def stdout_pipe():
    pipe = Pipe()
    yield pipe
    pipe.close()
