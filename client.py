#!/usr/bin/env python3
import codecs
import errno
import logging
import os
import queue
import selectors
import socket
import sys
import threading

from enum import Enum
from typing import List, Optional, TextIO, Tuple

from wakeup import WakeupSelector


logging.basicConfig(level=logging.NOTSET)
logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
logger.disabled = True

HOST: str = "localhost"
PORT: int = 5000
BUFFER_SIZE: int = 256

PROMPT: str = "Type messages to send (type 'quit' to exit):"
ECHO_PREFIX: str = "Echo from server: "


class ClientState(Enum):
    CONNECTING = "connecting"
    READ_ONLY = "read_only"
    READ_WRITE = "read_write"
    CLOSED = "closed"


def is_quit(line: str) -> bool:
    return line.strip().lower() == "quit"


def parse_args(argv: List[str]) -> Tuple[str, int]:
    host: str = argv[0] if len(argv) >= 1 else HOST
    port: str = argv[1] if len(argv) >= 2 else str(PORT)
    if not port.isdigit():
        raise ValueError(f"Invalid port {port!r}, must be an integer.")
    if not 1 <= int(port) <= 65535:
        raise ValueError(f"Invalid port {port}, must be between 1-65535.")
    return host, int(port)


class EchoClient:
    """Interactive echo client.

    The event loop owns the socket and the selector. Lines typed by the user
    are read on a separate daemon thread and handed over through a queue,
    after which the selector is woken so the loop can assert write interest.
    """

    def __init__(self, host: str = HOST, port: int = PORT,
                 stdin: Optional[TextIO] = None,
                 stdout: Optional[TextIO] = None):
        self.host: str = host
        self.port: int = port
        self.stdin: TextIO = stdin if stdin is not None else sys.stdin
        self.stdout: TextIO = stdout if stdout is not None else sys.stdout

        self.selector: WakeupSelector = WakeupSelector()
        self.sock: Optional[socket.socket] = None
        self.state: ClientState = ClientState.CONNECTING

        self.pending: "queue.Queue[str]" = queue.Queue()
        self.outgoing: bytearray = bytearray()
        self.running: bool = False
        self.quitting: bool = False

        self._decoder = codecs.getincrementaldecoder("utf-8")("replace")
        self._text: str = ""
        self._output_lock = threading.Lock()

    def print(self, text: str):
        with self._output_lock:
            self.stdout.write(text + "\n")
            self.stdout.flush()

    def connect(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setblocking(False)
        try:
            err: int = sock.connect_ex((self.host, self.port))
            if err not in (0, errno.EINPROGRESS, errno.EWOULDBLOCK):
                raise OSError(err, os.strerror(err))
        except OSError:
            sock.close()
            raise
        self.sock = sock
        # Writability signals that the connect has completed or failed.
        self.selector.register(sock, selectors.EVENT_WRITE)

    def finish_connect(self):
        err: int = self.sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if err:
            self.state = ClientState.CLOSED
            raise OSError(err, os.strerror(err))
        self.print(f"Connected to server {self.sock.getpeername()}")
        self.selector.set_events(self.sock, selectors.EVENT_READ)
        self.state = ClientState.READ_ONLY

    def read(self):
        try:
            data: bytes = self.sock.recv(BUFFER_SIZE)
        except BlockingIOError:
            return
        if data:
            logger.debug(f"Received {data!r}")
            self._text += self._decoder.decode(data)
            while "\n" in self._text:
                line, _, self._text = self._text.partition("\n")
                self.print(ECHO_PREFIX + line.rstrip("\r"))
        else:
            self._text += self._decoder.decode(b"", final=True)
            if self._text:
                self.print(ECHO_PREFIX + self._text)
                self._text = ""
            if not self.quitting:
                self.print("Server closed the connection")
            self.running = False

    def write(self):
        while True:
            if not self.outgoing:
                if self.quitting:
                    break
                try:
                    line: str = self.pending.get_nowait()
                except queue.Empty:
                    break
                self.outgoing += (line + os.linesep).encode("utf-8")
                if is_quit(line):
                    self.quitting = True
            try:
                sent: int = self.sock.send(self.outgoing)
            except BlockingIOError:
                break
            logger.debug(f"Sent {bytes(self.outgoing[:sent])!r}")
            del self.outgoing[:sent]

        if not self.outgoing:
            if self.quitting:
                # Echoes still in flight are read until the server closes.
                self.sock.shutdown(socket.SHUT_WR)
            self.selector.set_events(self.sock, selectors.EVENT_READ)
            self.state = ClientState.READ_ONLY

    def dispatch(self, mask: int):
        if self.state is ClientState.CONNECTING:
            if mask & selectors.EVENT_WRITE:
                self.finish_connect()
            return
        if mask & selectors.EVENT_READ:
            self.read()
        # Lines still pending are flushed even if the read ended the loop.
        if mask & selectors.EVENT_WRITE:
            self.write()

    def rearm(self):
        if not self.running:
            return
        if self.state not in (ClientState.READ_ONLY, ClientState.READ_WRITE):
            return
        # Lines queued after quit are never sent.
        if self.outgoing or (not self.quitting and not self.pending.empty()):
            self.selector.set_events(self.sock,
                                     selectors.EVENT_READ
                                     | selectors.EVENT_WRITE)
            self.state = ClientState.READ_WRITE

    def produce(self):
        self.print(PROMPT)
        try:
            for line in iter(self.stdin.readline, ""):
                line = line.rstrip("\r\n")
                self.pending.put(line)
                self.selector.wakeup()
                if is_quit(line):
                    break
        except (OSError, ValueError) as e:
            logger.warning(f"{type(e).__name__}: {e}")

    def start_producer(self) -> threading.Thread:
        producer = threading.Thread(target=self.produce, daemon=True)
        producer.start()
        return producer

    def loop(self):
        self.running = True
        while self.running:
            for key, mask in self.selector.select():
                self.dispatch(mask)
            self.rearm()

    def close(self):
        self.state = ClientState.CLOSED
        self.running = False
        if self.sock is not None:
            self.selector.unregister(self.sock)
            self.sock.close()
            self.sock = None
        self.selector.close()

    def run(self) -> int:
        """Connect, serve the terminal until quit or server close.

        Returns the process exit status.
        """
        try:
            self.connect()
        except OSError as e:
            self.print(f"Unable to connect to {self.host}:{self.port}: "
                       f"{type(e).__name__}: {e}")
            self.close()
            return 1

        self.start_producer()
        return self.communicate()

    def communicate(self) -> int:
        """Run the event loop on a connected socket and close it afterwards."""
        status = 0
        try:
            self.loop()
        except OSError as e:
            if self.state is ClientState.CLOSED:
                self.print(f"Unable to connect to {self.host}:{self.port}: "
                           f"{type(e).__name__}: {e}")
            else:
                self.print(f"{type(e).__name__}: {e}")
            status = 1
        finally:
            self.close()
        self.print("Client exiting.")
        return status


def main():
    logger.disabled = False
    logger.setLevel(logging.INFO)
    try:
        host, port = parse_args(sys.argv[1:])
    except ValueError as e:
        sys.stderr.write(f"{e}\n")
        sys.exit(2)
    sys.exit(EchoClient(host, port).run())


if __name__ == '__main__':
    main()
