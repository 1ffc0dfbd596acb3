"""Shared fixtures for ragent tests."""

import socket
import socketserver
import sys
import threading
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import RAGENT_CAPABILITY
from relay.grants import EVERYONE_KEY, Grant, GrantState, MemoryGrantDirectory
from relay.identity import Identity
from relay.server.relay_server import RelayConfig, RelayServer


# ============================================================================
# Identity Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def relay_identity():
    """Identity of the relay under test."""
    return Identity.generate()


@pytest.fixture
def client_identity():
    """A fresh client identity."""
    return Identity.generate()


@pytest.fixture
def make_grant(relay_identity):
    """Build grants issued by the relay identity."""
    def _make(receiver_vk, capability=RAGENT_CAPABILITY, state=GrantState.VALID):
        return Grant(
            issuer_vk=relay_identity.verify_key,
            receiver_vk=receiver_vk,
            capability=capability,
            state=state,
        )
    return _make


@pytest.fixture
def directory():
    """Empty in-memory grant directory."""
    return MemoryGrantDirectory()


# ============================================================================
# Stream Fakes
# ============================================================================

class FakeWriter:
    """Collects writes made through the asyncio StreamWriter interface.

    *on_write* is called with each chunk, so a test can answer the server
    (for example, feed a signed reply once the nonce has been written).
    """

    def __init__(self, on_write=None):
        self.chunks = []
        self.closed = False
        self.on_write = on_write

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)

    def write(self, data):
        if self.closed:
            raise ConnectionResetError("writer closed")
        self.chunks.append(bytes(data))
        if self.on_write:
            self.on_write(bytes(data))

    async def drain(self):
        if self.closed:
            raise ConnectionResetError("writer closed")

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        return None

    def get_extra_info(self, name, default=None):
        if name == "peername":
            return ("127.0.0.1", 50000)
        return default


@pytest.fixture
def fake_writer_cls():
    return FakeWriter


# ============================================================================
# Network Fixtures
# ============================================================================

class _EchoHandler(socketserver.BaseRequestHandler):
    def handle(self):
        while True:
            try:
                data = self.request.recv(4096)
            except OSError:
                return
            if not data:
                return
            self.request.sendall(data)


class EchoServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


@pytest.fixture
def echo_upstream():
    """Threaded TCP echo server standing in for the local agent."""
    server = EchoServer(("127.0.0.1", 0), _EchoHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.server_address
    server.shutdown()
    server.server_close()


@pytest.fixture
def unused_port():
    """A local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def relay_factory(relay_identity, directory, echo_upstream):
    """Start relays in front of the echo upstream; all are stopped afterwards."""
    servers = []

    def _start(**overrides):
        settings = dict(
            identity=relay_identity,
            listen_host="127.0.0.1",
            listen_port=0,
            upstream_host=echo_upstream[0],
            upstream_port=echo_upstream[1],
            handshake_timeout=2.0,
            report_interval=None,
        )
        settings.update(overrides)
        server = RelayServer(RelayConfig(**settings), directory)
        servers.append(server)
        server.start()
        return server

    yield _start
    for server in servers:
        server.stop()


@pytest.fixture
def relay_server(relay_factory):
    """Running relay in front of the echo upstream, with an empty directory."""
    return relay_factory()


@pytest.fixture
def wildcard_grant(make_grant):
    return make_grant(EVERYONE_KEY)
