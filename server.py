#!/usr/bin/env python3
import logging
import selectors
import signal
import socket
import sys

from typing import List, Optional, Tuple

from wakeup import WakeupSelector


# Initialize a logger at debug level, but defaults to disabled.
logging.basicConfig(level=logging.NOTSET)
logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
logger.disabled = True

PORT: int = 5000
BUFFER_SIZE: int = 256
# Stop reading from a peer while this many echoed bytes are still unsent.
MAX_PENDING: int = 65536


class Connection:

    def __init__(self, sock: socket.socket, addr: Tuple):
        self.sock: socket.socket = sock
        self.addr: Tuple = addr
        self.outgoing: bytearray = bytearray()

    @property
    def interest(self) -> int:
        events = 0
        if len(self.outgoing) < MAX_PENDING:
            events |= selectors.EVENT_READ
        if self.outgoing:
            events |= selectors.EVENT_WRITE
        return events

    def flush(self) -> int:
        """Send as much pending output as the socket takes without blocking."""
        total = 0
        while self.outgoing:
            try:
                sent: int = self.sock.send(self.outgoing)
            except BlockingIOError:
                break
            del self.outgoing[:sent]
            total += sent
        return total


class EchoServer:

    def __init__(self, host: str = "", port: int = PORT):
        self.selector: WakeupSelector = WakeupSelector()
        self.connections: List[Connection] = []
        self.running: bool = False

        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self.listener.setblocking(False)
            self.listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.listener.bind((host, port))
            self.listener.listen()
        except OSError:
            self.listener.close()
            self.selector.close()
            raise
        self.selector.register(self.listener, selectors.EVENT_READ, None)
        logger.info(f"Server started on port {self.port}")

    @property
    def port(self) -> int:
        return self.listener.getsockname()[1]

    def accept(self) -> Optional[Connection]:
        try:
            sock, addr = self.listener.accept()
        except BlockingIOError:
            return None
        logger.info(f"Connected to client: {addr}")
        sock.setblocking(False)
        conn = Connection(sock, addr)
        self.selector.register(sock, selectors.EVENT_READ, conn)
        self.connections.append(conn)
        return conn

    def read(self, conn: Connection):
        try:
            data: bytes = conn.sock.recv(BUFFER_SIZE)
        except BlockingIOError:
            return
        if not data:
            logger.info(f"Client disconnected: {conn.addr}")
            # The peer may have only shut down its sending side.
            conn.flush()
            self.close(conn)
            return
        logger.debug(f"Received {data!r} from {conn.addr}")
        conn.outgoing += data
        self.write(conn)

    def write(self, conn: Connection):
        sent = conn.flush()
        if sent:
            logger.debug(f"Echoed {sent} bytes to {conn.addr}")
        self.selector.set_events(conn.sock, conn.interest)

    def close(self, conn: Connection):
        if conn in self.connections:
            self.connections.remove(conn)
            self.selector.unregister(conn.sock)
        conn.sock.close()

    def dispatch(self, key: selectors.SelectorKey, mask: int):
        if key.data is None:
            self.accept()
            return
        conn: Connection = key.data
        try:
            if mask & selectors.EVENT_READ:
                self.read(conn)
            if mask & selectors.EVENT_WRITE and conn in self.connections:
                self.write(conn)
        except OSError as e:
            logger.warning(f"{type(e).__name__}: {e}")
            self.close(conn)

    def serve(self):
        self.running = True
        try:
            while self.running:
                for key, mask in self.selector.select():
                    self.dispatch(key, mask)
        finally:
            self.shutdown()

    def stop(self):
        self.running = False
        self.selector.wakeup()

    def shutdown(self):
        logger.info("Closing the server")
        for conn in list(self.connections):
            self.close(conn)
        self.listener.close()
        self.selector.close()


_server: Optional[EchoServer] = None


def quit_gracefully(signum, frame):
    logger.info("Received interrupt signal")
    if _server is not None:
        _server.stop()


def server(port: int = PORT, host: str = ""):
    global _server
    signal.signal(signal.SIGINT, quit_gracefully)
    _server = EchoServer(host, port)
    _server.serve()


def main():
    # Enable the logger if run as main program.
    logger.disabled = False
    try:
        server(PORT)
    except OSError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
