"""Readiness-based event loop that drives WebSocket connections.

Every registered connection is watched for input; once a write could not be
sent completely the connection also asks to be told when its socket becomes
writable, and the loop then flushes the pending data.
"""

from __future__ import annotations

import contextlib
import logging
import selectors
import threading
from typing import TYPE_CHECKING, Dict, Optional

from .protocol import ConnectionClosed, WebSocketError

if TYPE_CHECKING:
    from .connection import Connection

logger = logging.getLogger(__name__)

_API_NAMES = {
    "EpollSelector": "epoll",
    "KqueueSelector": "kqueue",
    "DevpollSelector": "devpoll",
    "PollSelector": "poll",
    "SelectSelector": "select",
}

_READ = selectors.EVENT_READ
_READ_WRITE = selectors.EVENT_READ | selectors.EVENT_WRITE


class EventLoop:
    """Dispatches socket readiness to connections, in a background thread or by hand.

    ``poll_interval`` is how long, in seconds, the background thread waits in
    one poll before checking whether it should stop.
    """

    def __init__(
        self,
        poll_interval: float = 0.1,
        selector: Optional[selectors.BaseSelector] = None,
    ) -> None:
        self.poll_interval = poll_interval
        self._selector = selector if selector is not None else selectors.DefaultSelector()
        self._conns: Dict[int, "Connection"] = {}
        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._closed = False
        self.poll_count = 0
        self.read_events = 0
        self.write_events = 0

    def __enter__(self) -> "EventLoop":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    @property
    def running(self) -> bool:
        """Whether the background thread is polling."""
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    @property
    def connection_count(self) -> int:
        """Number of connections currently registered."""
        with self._lock:
            return len(self._conns)

    def api_name(self) -> str:
        """Name of the readiness mechanism in use, such as ``epoll`` or ``kqueue``."""
        name = type(self._selector).__name__
        return _API_NAMES.get(name, name)

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        """Start polling in a background thread; calling it again does nothing."""
        with self._lock:
            if self._closed:
                raise RuntimeError("event loop is stopped")
            if self._thread is not None:
                return
            self._thread = threading.Thread(
                target=self._run, name="greatws-eventloop", daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        """Stop the background thread, close every connection and release the poller."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        with self._lock:
            if self._closed:
                return
            self._closed = True
            conns = list(self._conns.values())
        for conn in conns:
            conn.close()
        with self._lock:
            self._conns.clear()
            self._selector.close()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll(self.poll_interval)
            except Exception:
                if self._stop_event.is_set():
                    return
                logger.exception("event loop poll failed")
                self._stop_event.wait(self.poll_interval)

    # -- registration ----------------------------------------------------

    def add(self, conn: "Connection") -> None:
        """Watch a connection for input."""
        if conn.closed:
            raise ConnectionClosed("connection closed")
        with self._lock:
            if self._closed:
                raise RuntimeError("event loop is stopped")
            fd = conn.fileno()
            if fd in self._conns:
                raise KeyError(f"file descriptor {fd} is already registered")
            self._selector.register(fd, _READ, conn)
            self._conns[fd] = conn

    def remove(self, conn: "Connection") -> None:
        """Stop watching a connection; raises KeyError if it is not registered."""
        with self._lock:
            fd = self._find_fd(conn)
            if fd is None:
                raise KeyError("connection is not registered")
            del self._conns[fd]
            with contextlib.suppress(KeyError, ValueError, OSError):
                self._selector.unregister(fd)

    def want_write(self, conn: "Connection") -> None:
        """Ask to be told when the connection's socket can take more data."""
        self._set_events(conn, _READ_WRITE)

    def _find_fd(self, conn: "Connection") -> Optional[int]:
        fd = conn.fileno()
        if self._conns.get(fd) is conn:
            return fd
        for known_fd, known in self._conns.items():
            if known is conn:
                return known_fd
        return None

    def _set_events(self, conn: "Connection", events: int) -> None:
        with self._lock:
            if self._closed:
                return
            fd = self._find_fd(conn)
            if fd is None:
                return
            with contextlib.suppress(KeyError, ValueError, OSError):
                self._selector.modify(fd, events, conn)

    def _discard(self, fd: int, conn: "Connection") -> None:
        with self._lock:
            if self._conns.get(fd) is conn:
                del self._conns[fd]
                with contextlib.suppress(KeyError, ValueError, OSError):
                    self._selector.unregister(fd)

    # -- dispatch --------------------------------------------------------

    def poll(self, timeout: Optional[float]) -> int:
        """Wait for readiness and dispatch it; return the number of ready sockets.

        ``None`` or a negative timeout waits without limit, 0 returns at once.
        """
        if self._closed:
            raise RuntimeError("event loop is stopped")
        if timeout is not None and timeout < 0:
            timeout = None
        ready = self._selector.select(timeout)
        self.poll_count += 1
        for key, mask in ready:
            conn = key.data
            if conn.closed:
                self._discard(key.fd, conn)
                continue
            if mask & selectors.EVENT_READ:
                self.read_events += 1
                try:
                    conn.process_readable()
                except (OSError, WebSocketError) as exc:
                    logger.debug("closing connection after read error: %s", exc)
                    conn.close()
            if mask & selectors.EVENT_WRITE and not conn.closed:
                self.write_events += 1
                # Drop write interest first; a flush that is still incomplete asks again.
                self._set_events(conn, _READ)
                try:
                    conn.flush()
                except (OSError, WebSocketError) as exc:
                    logger.debug("closing connection after write error: %s", exc)
                    conn.close()
        return len(ready)


_default_loop: Optional[EventLoop] = None
_default_lock = threading.Lock()


def default_event_loop() -> EventLoop:
    """The shared event loop, created and started on first use."""
    global _default_loop
    with _default_lock:
        if _default_loop is None or _default_loop._closed:
            _default_loop = EventLoop()
        _default_loop.start()
        return _default_loop