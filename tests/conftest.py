"""Pytest fixtures for relay server testing."""
import os
import time
from typing import List

import pytest

from gamerelay.network.client import RelayClient
from gamerelay.network.protocol import (
    PROTOCOL_VERSION, FrameReader, HandshakeAck, HandshakeRequest, decode_server_message,
)
from gamerelay.network.server import RelayServer
from gamerelay.network.session import Client


class FakeSocket:
    """In-memory stand-in for a connected client socket.

    Bytes written by the server collect in `sent`; bytes put into `inbox`
    are returned by recv().
    """

    def __init__(self, address=('127.0.0.1', 40000)):
        self.sent = bytearray()
        self.inbox = bytearray()
        self.closed = False
        self.fail_sends = False
        self._address = address

    def getpeername(self):
        return self._address

    def sendall(self, data: bytes):
        if self.closed or self.fail_sends:
            raise BrokenPipeError("socket closed")
        self.sent += data

    def recv(self, size: int) -> bytes:
        if self.closed:
            raise OSError("socket closed")
        data = bytes(self.inbox[:size])
        del self.inbox[:size]
        return data

    def close(self):
        self.closed = True


def received(client: Client) -> List[object]:
    """Decode and clear everything the server sent to a fake client."""
    reader = FrameReader(decoder=decode_server_message)
    reader.feed(bytes(client.sock.sent))
    client.sock.sent.clear()

    messages = []
    while True:
        message = reader.get_message()
        if message is None:
            break
        messages.append(message)
    assert reader.pending == 0, "server sent a truncated frame"
    return messages


def wait_until(condition, timeout: float = 2.0) -> bool:
    """Poll a condition until it holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


# =============================================================================
# UNIT FIXTURES - server logic without threads or real sockets
# =============================================================================

@pytest.fixture
def server() -> RelayServer:
    """A relay server that is never started; drive it through its handlers."""
    return RelayServer(host='127.0.0.1', port=0)


@pytest.fixture
def connect(server: RelayServer):
    """Factory fixture: register a fake connection in CONNECTING state.

    Usage:
        client = connect()
    """
    port = iter(range(40000, 41000))

    def _connect() -> Client:
        client = Client(sock=FakeSocket(('127.0.0.1', next(port))))
        server.registry.add(client)
        return client

    return _connect


@pytest.fixture
def join(server: RelayServer, connect):
    """Factory fixture: connect and complete a valid handshake.

    Usage:
        alice = join("alice")
    """
    def _join(name: str) -> Client:
        client = connect()
        server.handle_message(client, HandshakeRequest(PROTOCOL_VERSION, name))
        return client

    return _join


@pytest.fixture
def players(server: RelayServer, join):
    """Three connected players with their join traffic already cleared."""
    clients = [join("alice"), join("bob"), join("carol")]
    for client in clients:
        received(client)
    return clients


# =============================================================================
# LIVE FIXTURES - real sockets and threads
# =============================================================================

@pytest.fixture
def live_server():
    """A started relay server on a free local port."""
    srv = RelayServer(host='127.0.0.1', port=0, tick_delay=0.001)
    srv.start()
    yield srv
    srv.stop()


@pytest.fixture
def open_client(live_server: RelayServer):
    """Factory fixture: connect a RelayClient to the live server."""
    clients = []

    def _open() -> RelayClient:
        client = RelayClient()
        host, port = live_server.address
        client.connect(host, port)
        clients.append(client)
        return client

    yield _open

    for client in clients:
        client.close()


@pytest.fixture
def live_join(open_client):
    """Factory fixture: connect to the live server and wait for the handshake ack."""
    def _join(name: str) -> RelayClient:
        client = open_client()
        client.handshake(name)
        client.wait_for(HandshakeAck)
        return client

    return _join


@pytest.fixture
def high_fds():
    """Occupy the low descriptor numbers so new sockets get fds above 1024.

    Request it before live_server so the server's sockets are created after.
    """
    resource = pytest.importorskip("resource")
    soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    needed = 1400
    if soft != resource.RLIM_INFINITY and soft < needed:
        if hard != resource.RLIM_INFINITY and hard < needed:
            pytest.skip(f"descriptor limit {hard} is too low")
        resource.setrlimit(resource.RLIMIT_NOFILE, (needed, hard))

    fillers = [os.open(os.devnull, os.O_RDONLY) for _ in range(1100)]
    yield
    for fd in fillers:
        os.close(fd)
    resource.setrlimit(resource.RLIMIT_NOFILE, (soft, hard))
