"""Playing a stream from an RTMP server."""

from __future__ import annotations

import threading
from typing import Optional

from .connection import ConnectionMode, PlayCallback, RtmpConnection
from .publisher import _open_connection
from .rtmp import Rtmp
from .server import _SocketLink

DEFAULT_TIMEOUT_MS = 5000


class PlayError(Exception):
    """Raised when a stream cannot be played; ``status`` holds the peer's code."""

    def __init__(self, message: str, status: str = "") -> None:
        super().__init__(message)
        self.status = status


class RtmpClient(Rtmp):
    """Plays a stream, handing each audio and video message to a callback.

    The callback receives ``(payload, codec_id, timestamp)`` on a
    background thread.
    """

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self._link: Optional[_SocketLink] = None
        self._connection: Optional[RtmpConnection] = None
        self._frame_callback: Optional[PlayCallback] = None

    def set_frame_callback(self, callback: Optional[PlayCallback]) -> None:
        with self._lock:
            self._frame_callback = callback
            if self._link is not None and self._connection is not None:
                with self._link.lock:
                    self._connection.play_callback = callback

    def open_url(self, url: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> str:
        """Connect and start playing; return the server's status code.

        Raises PlayError when the URL is illegal, the server cannot be
        reached or playing does not start within the timeout.
        """
        with self._lock:
            timeout = timeout_ms if timeout_ms > 0 else DEFAULT_TIMEOUT_MS
            self._drop_link()
            link, connection, status = _open_connection(
                self,
                ConnectionMode.CLIENT,
                url,
                timeout,
                RtmpConnection.is_playing,
                PlayError,
                play_callback=self._frame_callback,
            )
            self._link = link
            self._connection = connection
            return status

    def close(self) -> None:
        with self._lock:
            if self._link is not None:
                self._link.disconnect()

    def is_connected(self) -> bool:
        with self._lock:
            return self._connection is not None and not self._connection.is_closed()

    def _drop_link(self) -> None:
        if self._link is not None:
            self._link.disconnect()
        self._link = None
        self._connection = None