"""
pytest configuration and fixtures.
"""

import io
import os
import selectors
import socket
import threading
import time
from typing import Callable, Generator, List

import pytest

# Add the project root to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from client import EchoClient
from server import EchoServer


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll predicate until it holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


@pytest.fixture
def echo_server() -> Generator[EchoServer, None, None]:
    """An echo server serving an ephemeral port from a background thread."""
    server = EchoServer("127.0.0.1", 0)
    thread = threading.Thread(target=server.serve, daemon=True)
    thread.start()

    yield server

    server.stop()
    thread.join(timeout=5.0)


def wait_readable(sock: socket.socket, timeout: float = 5.0) -> bool:
    """Block until sock has data or EOF to read."""
    with selectors.DefaultSelector() as sel:
        sel.register(sock, selectors.EVENT_READ)
        return bool(sel.select(timeout))


def connect(port: int) -> socket.socket:
    sock = socket.create_connection(("127.0.0.1", port), timeout=5.0)
    return sock


def recv_exactly(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


class ClientRunner:
    """Runs an EchoClient in a background thread with a piped terminal."""

    def __init__(self, port: int):
        read_fd, write_fd = os.pipe()
        self.stdin = os.fdopen(read_fd, "r")
        self._typing = os.fdopen(write_fd, "w")
        self.stdout = io.StringIO()
        self.client = EchoClient("127.0.0.1", port,
                                 stdin=self.stdin, stdout=self.stdout)
        self.status = None
        self._thread = threading.Thread(target=self._run, daemon=True)

    def _run(self):
        self.status = self.client.run()

    def start(self) -> "ClientRunner":
        self._thread.start()
        return self

    def type(self, *lines: str):
        for line in lines:
            self._typing.write(line + "\n")
        self._typing.flush()

    def end_input(self):
        if not self._typing.closed:
            self._typing.close()

    @property
    def output(self) -> str:
        return self.stdout.getvalue()

    def lines(self) -> List[str]:
        return self.output.splitlines()

    def echoes(self) -> List[str]:
        prefix = "Echo from server: "
        return [line[len(prefix):] for line in self.lines()
                if line.startswith(prefix)]

    def wait_for_echoes(self, count: int, timeout: float = 5.0) -> bool:
        return wait_until(lambda: len(self.echoes()) >= count, timeout)

    def join(self, timeout: float = 5.0) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()


@pytest.fixture
def client_runner(echo_server: EchoServer) -> Generator[ClientRunner, None, None]:
    """An interactive client connected to the echo_server fixture."""
    runner = ClientRunner(echo_server.port)

    yield runner

    # The client itself ends once echo_server closes its connection.
    runner.end_input()
