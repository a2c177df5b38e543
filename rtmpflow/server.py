"""An RTMP server: accepts connections and keeps one session per stream path."""

from __future__ import annotations

import logging
import socket
import threading
from typing import Callable, Dict, List, Optional, Set

from .connection import ConnectionMode, RtmpConnection
from .rtmp import DEFAULT_PORT, Rtmp
from .session import RtmpSession

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, str], None]

PURGE_INTERVAL = 30.0
_READ_SIZE = 65536
_ACCEPT_POLL = 0.2


class _SocketLink:
    """A connected socket whose incoming bytes feed an RtmpConnection.

    Every call into the connection is made while holding ``lock``.
    """

    def __init__(self, sock: socket.socket, lock: threading.RLock) -> None:
        self._sock = sock
        self.lock = lock
        self.connection: Optional[RtmpConnection] = None
        self._closed = False
        self._thread = threading.Thread(target=self._read_loop, name="rtmp-read", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def send(self, data: bytes) -> None:
        try:
            self._sock.sendall(data)
        except OSError:
            pass

    def _read_loop(self) -> None:
        while True:
            try:
                data = self._sock.recv(_READ_SIZE)
            except OSError:
                data = b""
            with self.lock:
                connection = self.connection
                if connection is None:
                    break
                if not data:
                    connection.close()
                    break
                if not connection.feed(data):
                    break
        self.shutdown()

    def disconnect(self) -> None:
        """Close the connection, letting it leave its stream, then the socket."""
        with self.lock:
            if self.connection is not None:
                self.connection.close()
        self.shutdown()

    def shutdown(self, _connection: Optional[RtmpConnection] = None) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


class RtmpServer(Rtmp):
    """Accepts publishers and players and routes media between them."""

    def __init__(self, purge_interval: float = PURGE_INTERVAL) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self._io_lock = threading.RLock()
        self._sessions: Dict[str, RtmpSession] = {}
        self._callbacks: List[EventCallback] = []
        self._connections: Set[RtmpConnection] = set()
        self._listener: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._purge_thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._purge_interval = purge_interval

    # -- events ----------------------------------------------------------

    def set_event_callback(self, callback: EventCallback) -> None:
        """Add a callback receiving ``(event_type, stream_path)``."""
        with self._lock:
            self._callbacks.append(callback)

    def notify_event(self, event_type: str, stream_path: str) -> None:
        with self._lock:
            for callback in self._callbacks:
                if callback:
                    callback(event_type, stream_path)

    # -- sessions --------------------------------------------------------

    def add_session(self, stream_path: str) -> None:
        with self._lock:
            self._sessions.setdefault(stream_path, RtmpSession())

    def remove_session(self, stream_path: str) -> None:
        with self._lock:
            self._sessions.pop(stream_path, None)

    def has_session(self, stream_path: str) -> bool:
        with self._lock:
            return stream_path in self._sessions

    def get_session(self, stream_path: str) -> RtmpSession:
        """Return the session for ``stream_path``, creating it if needed."""
        with self._lock:
            return self._sessions.setdefault(stream_path, RtmpSession())

    def has_publisher(self, stream_path: str) -> bool:
        return self.get_session(stream_path).publisher() is not None

    def purge_idle_sessions(self) -> List[str]:
        """Drop sessions without live sinks; return their stream paths."""
        with self._lock:
            idle = [path for path, session in self._sessions.items() if session.clients() == 0]
            for path in idle:
                del self._sessions[path]
            return idle

    # -- networking ------------------------------------------------------

    def start(self, host: str = "0.0.0.0", port: int = DEFAULT_PORT) -> int:
        """Listen on ``host``:``port``; return the port actually bound."""
        if self._listener is not None:
            self.stop()

        listener = socket.create_server((host, port))
        listener.settimeout(_ACCEPT_POLL)
        self._listener = listener
        self._stopping.clear()

        self._accept_thread = threading.Thread(
            target=self._accept_loop, args=(listener,), name="rtmp-accept", daemon=True
        )
        self._purge_thread = threading.Thread(
            target=self._purge_loop, name="rtmp-purge", daemon=True
        )
        self._accept_thread.start()
        self._purge_thread.start()
        return listener.getsockname()[1]

    def stop(self) -> None:
        """Stop listening and close every connection."""
        listener = self._listener
        if listener is None:
            return
        self._stopping.set()
        listener.close()
        for thread in (self._accept_thread, self._purge_thread):
            if thread is not None:
                thread.join()
        self._listener = None
        self._accept_thread = None
        self._purge_thread = None

        with self._io_lock:
            for connection in list(self._connections):
                connection.close()
            self._connections.clear()

    def _accept_loop(self, listener: socket.socket) -> None:
        while not self._stopping.is_set():
            try:
                sock, _address = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self._on_connect(sock)

    def _purge_loop(self) -> None:
        while not self._stopping.wait(self._purge_interval):
            self.purge_idle_sessions()

    def _on_connect(self, sock: socket.socket) -> None:
        sock.settimeout(None)
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            logger.debug("cannot disable Nagle on accepted socket")
        link = _SocketLink(sock, self._io_lock)

        def on_disconnect(connection: RtmpConnection) -> None:
            self._connections.discard(connection)
            link.shutdown()

        with self._io_lock:
            connection = RtmpConnection(
                ConnectionMode.SERVER, self, link.send, on_disconnect=on_disconnect
            )
            link.connection = connection
            self._connections.add(connection)
        link.start()