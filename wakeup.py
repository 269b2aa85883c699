import selectors
import socket

from typing import Any, List, Mapping, Optional, Tuple


class WakeupSelector:
    """A selector whose blocking select() can be interrupted from any thread.

    A socket pair is registered internally; wakeup() writes a byte to one end
    so select() returns, and the byte is drained before the result is handed
    back, so a wakeup on its own yields an empty list.
    """

    def __init__(self):
        self._selector: selectors.BaseSelector = selectors.DefaultSelector()
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self._selector.register(self._wake_r, selectors.EVENT_READ)
        self.closed: bool = False
        self.waits: int = 0
        self.wakeups: int = 0

    def register(self, sock: socket.socket, events: int,
                 data: Any = None) -> selectors.SelectorKey:
        return self._selector.register(sock, events, data)

    def modify(self, sock: socket.socket, events: int,
               data: Any = None) -> selectors.SelectorKey:
        return self._selector.modify(sock, events, data)

    def unregister(self, sock: socket.socket) -> selectors.SelectorKey:
        return self._selector.unregister(sock)

    def get_key(self, sock: socket.socket) -> selectors.SelectorKey:
        return self._selector.get_key(sock)

    def get_map(self) -> Mapping[Any, selectors.SelectorKey]:
        return {fd: key
                for fd, key in self._selector.get_map().items()
                if key.fileobj is not self._wake_r}

    def set_events(self, sock: socket.socket, events: int) -> bool:
        """Change the interest mask only if it differs. Returns True on change."""
        key = self._selector.get_key(sock)
        if key.events == events:
            return False
        self._selector.modify(sock, events, key.data)
        return True

    def select(self, timeout: Optional[float] = None
               ) -> List[Tuple[selectors.SelectorKey, int]]:
        events = self._selector.select(timeout)
        self.waits += 1
        ready = []
        for key, mask in events:
            if key.fileobj is self._wake_r:
                self._drain()
            else:
                ready.append((key, mask))
        return ready

    def wakeup(self) -> None:
        if self.closed:
            return
        self.wakeups += 1
        try:
            self._wake_w.send(b"\0")
        except BlockingIOError:
            # Buffer full, a wakeup is already pending.
            pass
        except OSError:
            # Closed concurrently by the loop thread.
            if not self.closed:
                raise

    def _drain(self) -> None:
        try:
            while self._wake_r.recv(4096):
                pass
        except BlockingIOError:
            pass

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._selector.close()
        self._wake_r.close()
        self._wake_w.close()

    def __enter__(self) -> "WakeupSelector":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
