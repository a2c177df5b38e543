"""Serving live RTMP streams to HTTP clients as FLV."""

from __future__ import annotations

import itertools
import logging
import socket
import threading
import time
import weakref
from collections import deque
from http import HTTPStatus
from typing import Callable, Deque, Dict, Optional, Tuple

from .rtmp import (
    RTMP_AAC_SEQUENCE_HEADER,
    RTMP_AUDIO,
    RTMP_AVC_SEQUENCE_HEADER,
    RTMP_CODEC_ID_H264,
    RTMP_VIDEO,
)
from .server import RtmpServer
from .session import RtmpSession
from .sink import RtmpSink

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080

_TAG_TYPE_AUDIO = 0x08
_TAG_TYPE_VIDEO = 0x09
_TAG_HEADER_LEN = 11
_READ_SIZE = 65536
_MAX_REQUEST_HEAD = 65536
_ACCEPT_POLL = 0.2
_BACKOFF = 0.001

_RESPONSES: Dict[HTTPStatus, bytes] = {
    HTTPStatus.OK: b"HTTP/1.1 200 OK\r\nContent-Type: video/x-flv\r\n\r\n",
    HTTPStatus.BAD_REQUEST: b"HTTP/1.0 400 Bad Request\r\nContent-Length: 0\r\n\r\n",
    HTTPStatus.NOT_FOUND: b"HTTP/1.1 404 Not Found\r\nContent-Length: 0\r\n\r\n",
    HTTPStatus.INTERNAL_SERVER_ERROR: b"HTTP/1.1 500 Server Error\r\nContent-Length: 0\r\n\r\n",
}

# Kept apart from the identifiers of RTMP connections sharing a session.
_sink_ids = itertools.count(1 << 32)


class HttpConnection:
    """An outgoing packet queue in front of an HTTP client's transport.

    ``write`` sends bytes to the client; ``pending`` reports how many bytes
    the transport still holds. Packets beyond ``max_queue_length`` are
    dropped, and nothing is written while the transport holds more than
    ``MAX_BUFFER_LEN`` bytes.
    """

    MAX_QUEUE_LENGTH = 1024
    MAX_BUFFER_LEN = 1024 * 1024

    def __init__(
        self,
        write: Callable[[bytes], None],
        pending: Optional[Callable[[], int]] = None,
        max_queue_length: int = MAX_QUEUE_LENGTH,
    ) -> None:
        self._write = write
        self._pending = pending or (lambda: 0)
        self.max_queue_length = max_queue_length
        self._queue: Deque[bytes] = deque()
        self._cond = threading.Condition()
        self._write_lock = threading.Lock()
        self._closed = False

    @property
    def queued(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, data: bytes) -> bool:
        """Queue ``data``; False when closed or the queue is full."""
        with self._cond:
            if self._closed or len(self._queue) >= self.max_queue_length:
                return False
            self._queue.append(bytes(data))
            self._cond.notify_all()
            return True

    def flush(self) -> bool:
        """Write the oldest queued packet; False when nothing was written."""
        with self._write_lock:
            with self._cond:
                if not self._queue or self._pending() > self.MAX_BUFFER_LEN:
                    return False
                packet = self._queue.popleft()
            self._write(packet)
            return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until a packet is queued or the connection closes; False once closed."""
        with self._cond:
            self._cond.wait_for(lambda: self._queue or self._closed, timeout)
            return not self._closed

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._queue.clear()
            self._cond.notify_all()


class _FlvViewer(RtmpSink):
    """A stream sink that writes FLV to an HTTP connection."""

    def __init__(self, connection: HttpConnection) -> None:
        self._connection = connection
        self._id = next(_sink_ids)
        self.avc_sequence_header = b""
        self.aac_sequence_header = b""
        self.has_key_frame = False
        self.has_flv_header = False
        self._playing = False

    def is_player(self) -> bool:
        return True

    def is_playing(self) -> bool:
        return self._playing

    def sink_id(self) -> int:
        return self._id

    def send_media_data(self, media_type: int, timestamp: int, payload: bytes) -> bool:
        if not payload:
            return False
        payload = bytes(payload)
        self._playing = True

        if media_type == RTMP_AVC_SEQUENCE_HEADER:
            self.avc_sequence_header = payload
            return True
        if media_type == RTMP_AAC_SEQUENCE_HEADER:
            self.aac_sequence_header = payload
            return True

        if media_type == RTMP_VIDEO:
            if not self.has_key_frame:
                frame_type = (payload[0] >> 4) & 0x0F
                codec_id = payload[0] & 0x0F
                if frame_type != 1 or codec_id != RTMP_CODEC_ID_H264:
                    return True
                self.has_key_frame = True
            self.send_video_data(timestamp, payload)
        elif media_type == RTMP_AUDIO:
            if not self.has_key_frame and self.avc_sequence_header:
                return True
            self.send_audio_data(timestamp, payload)
        return True

    def send_video_data(self, timestamp: int, payload: bytes) -> bool:
        if not self.has_flv_header:
            self._send_header()
            self._send_tag(_TAG_TYPE_VIDEO, 0, self.avc_sequence_header)
            self._send_tag(_TAG_TYPE_AUDIO, 0, self.aac_sequence_header)
        self._send_tag(_TAG_TYPE_VIDEO, timestamp, payload)
        return True

    def send_audio_data(self, timestamp: int, payload: bytes) -> bool:
        if not self.has_flv_header:
            self._send_header()
            self._send_tag(_TAG_TYPE_AUDIO, 0, self.aac_sequence_header)
        self._send_tag(_TAG_TYPE_AUDIO, timestamp, payload)
        return True

    def _send_header(self) -> None:
        flags = 0
        if self.avc_sequence_header:
            flags |= 0x01
        if self.aac_sequence_header:
            flags |= 0x04
        self._connection.send(b"FLV\x01" + bytes([flags]) + b"\x00\x00\x00\x09")
        self._connection.send(bytes(4))
        self.has_flv_header = True

    def _send_tag(self, tag_type: int, timestamp: int, payload: bytes) -> bool:
        if not payload:
            return False
        size = len(payload)
        timestamp &= 0xFFFFFFFF
        header = (
            bytes([tag_type])
            + (size & 0xFFFFFF).to_bytes(3, "big")
            + (timestamp & 0xFFFFFF).to_bytes(3, "big")
            + bytes([(timestamp >> 24) & 0xFF])
            + bytes(3)
        )
        self._connection.send(header)
        self._connection.send(bytes(payload))
        self._connection.send(((size + _TAG_HEADER_LEN) & 0xFFFFFFFF).to_bytes(4, "big"))
        return True


class HttpFlvServer:
    """Serves ``<stream path>.flv`` requests from an attached RTMP server."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rtmp_server: Optional[Callable[[], Optional[RtmpServer]]] = None
        self._listener: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._clients: Dict[socket.socket, threading.Thread] = {}

    def attach(self, rtmp_server: RtmpServer) -> None:
        """Take streams from ``rtmp_server``, which is not kept alive by this server."""
        with self._lock:
            self._rtmp_server = weakref.ref(rtmp_server)

    def _server(self) -> Optional[RtmpServer]:
        with self._lock:
            return self._rtmp_server() if self._rtmp_server is not None else None

    def route(self, uri: str) -> Tuple[HTTPStatus, Optional[str]]:
        """Resolve a request URI to a status and, when it can be played, its stream path."""
        pos = uri.find(".flv")
        if pos < 0:
            return HTTPStatus.BAD_REQUEST, None
        server = self._server()
        if server is None:
            return HTTPStatus.INTERNAL_SERVER_ERROR, None
        stream_path = uri[:pos]
        if not server.has_publisher(stream_path):
            return HTTPStatus.NOT_FOUND, None
        return HTTPStatus.OK, stream_path

    def start(self, host: str = "0.0.0.0", port: int = DEFAULT_PORT) -> int:
        """Listen on ``host``:``port``; return the port actually bound."""
        if self._listener is not None:
            self.stop()
        listener = socket.create_server((host, port))
        listener.settimeout(_ACCEPT_POLL)
        self._listener = listener
        self._stopping.clear()
        self._accept_thread = threading.Thread(
            target=self._accept_loop, args=(listener,), name="http-flv-accept", daemon=True
        )
        self._accept_thread.start()
        return listener.getsockname()[1]

    def stop(self) -> None:
        """Stop listening and disconnect every client."""
        listener = self._listener
        if listener is None:
            return
        self._stopping.set()
        listener.close()
        if self._accept_thread is not None:
            self._accept_thread.join()
        self._listener = None
        self._accept_thread = None

        with self._lock:
            clients = list(self._clients.items())
        for sock, _thread in clients:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        for _sock, thread in clients:
            thread.join()

    def _accept_loop(self, listener: socket.socket) -> None:
        while not self._stopping.is_set():
            try:
                sock, _address = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            sock.settimeout(None)
            thread = threading.Thread(
                target=self._serve, args=(sock,), name="http-flv-client", daemon=True
            )
            with self._lock:
                self._clients[sock] = thread
            thread.start()

    def _serve(self, sock: socket.socket) -> None:
        buffer = bytearray()
        try:
            while True:
                end = buffer.find(b"\r\n\r\n")
                if end < 0:
                    data = sock.recv(_READ_SIZE)
                    if not data or len(buffer) + len(data) > _MAX_REQUEST_HEAD:
                        return
                    buffer += data
                    continue
                head = bytes(buffer[:end]).decode("latin-1")
                del buffer[:end + 4]
                parts = head.split("\r\n", 1)[0].split()
                uri = parts[1].split("?", 1)[0] if len(parts) >= 2 else ""
                status, stream_path = self.route(uri)
                if status is HTTPStatus.OK and stream_path is not None:
                    self._play(sock, stream_path)
                    return
                sock.sendall(_RESPONSES[status])
        except OSError:
            pass
        finally:
            with self._lock:
                self._clients.pop(sock, None)
            sock.close()

    def _play(self, sock: socket.socket, stream_path: str) -> None:
        server = self._server()
        if server is None:
            sock.sendall(_RESPONSES[HTTPStatus.INTERNAL_SERVER_ERROR])
            return
        session: RtmpSession = server.get_session(stream_path)
        del server

        connection = HttpConnection(sock.sendall)
        viewer = _FlvViewer(connection)
        connection.send(_RESPONSES[HTTPStatus.OK])
        writer = threading.Thread(
            target=self._write_loop, args=(connection, sock), name="http-flv-write", daemon=True
        )
        writer.start()
        session.add_sink(viewer)
        self._notify("http-flv.play", stream_path + ".flv")

        try:
            while sock.recv(_READ_SIZE):
                pass
        except OSError:
            pass
        finally:
            connection.close()
            session.remove_sink(viewer)
            writer.join()
            self._notify("http-flv.stop", stream_path + ".flv")

    def _notify(self, event_type: str, stream_path: str) -> None:
        server = self._server()
        if server is not None:
            server.notify_event(event_type, stream_path)

    @staticmethod
    def _write_loop(connection: HttpConnection, sock: socket.socket) -> None:
        while connection.wait():
            try:
                if not connection.flush():
                    time.sleep(_BACKOFF)
            except OSError:
                connection.close()
                try:
                    sock.shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass
                return