"""One RTMP connection: handshake, chunk stream and command handling.

The connection is independent of any transport. Bytes received from the
peer are handed to :meth:`RtmpConnection.feed`; bytes to be sent go to the
``send`` callable given at construction.
"""

from __future__ import annotations

import itertools
import logging
import struct
import weakref
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from .amf import AmfDecoder
from .chunk import ChunkError, RtmpChunk, RtmpMessage
from .commands import (
    CONNECT_SUCCESS,
    connect_command,
    connect_result,
    control_message,
    create_stream_command,
    create_stream_result,
    delete_stream_command,
    meta_data_message,
    on_status,
    play_command,
    publish_command,
    sample_access,
)
from .handshake import HandshakeError, HandshakeState, RtmpHandshake
from .rtmp import (
    RTMP_AAC_SEQUENCE_HEADER,
    RTMP_ACK,
    RTMP_ACK_SIZE,
    RTMP_AUDIO,
    RTMP_AVC_SEQUENCE_HEADER,
    RTMP_BANDWIDTH_SIZE,
    RTMP_CHUNK_AUDIO_ID,
    RTMP_CHUNK_CONTROL_ID,
    RTMP_CHUNK_DATA_ID,
    RTMP_CHUNK_INVOKE_ID,
    RTMP_CHUNK_VIDEO_ID,
    RTMP_CODEC_ID_AAC,
    RTMP_CODEC_ID_H264,
    RTMP_FLASH_VIDEO,
    RTMP_FLEX_MESSAGE,
    RTMP_INVOKE,
    RTMP_NOTIFY,
    RTMP_SET_CHUNK_SIZE,
    RTMP_USER_EVENT,
    RTMP_VIDEO,
    Rtmp,
)
from .sink import RtmpSink

logger = logging.getLogger(__name__)

PlayCallback = Callable[[bytes, int, int], None]
Task = Callable[[], None]

_PEER_BANDWIDTH_LIMIT_DYNAMIC = 2
_ids = itertools.count(1)

_PUBLISH_FAILURES = frozenset({
    "NetStream.publish.Unauthorized",
    "NetStream.Publish.BadConnection",
    "NetStream.Publish.BadName",
})
_PLAY_FAILURES = frozenset({
    "NetStream.play.Unauthorized",
    "NetStream.Play.UnpublishNotify",
    "NetStream.Play.BadConnection",
})


class ConnectionMode(Enum):
    SERVER = "server"
    PUBLISHER = "publisher"
    CLIENT = "client"


class ConnectionState(Enum):
    HANDSHAKE = "handshake"
    START_CONNECT = "start_connect"
    START_CREATE_STREAM = "start_create_stream"
    START_DELETE_STREAM = "start_delete_stream"
    START_PLAY = "start_play"
    START_PUBLISH = "start_publish"


def _run_now(task: Task) -> None:
    task()


def _is_key_frame(payload: bytes) -> bool:
    frame_type = (payload[0] >> 4) & 0x0F
    codec_id = payload[0] & 0x0F
    return frame_type == 1 and codec_id == RTMP_CODEC_ID_H264


class RtmpConnection(RtmpSink):
    """An RTMP connection acting as server side, publisher or player.

    ``owner`` supplies the settings (an :class:`Rtmp`). In server mode it
    must also offer ``has_publisher``, ``add_session``, ``get_session`` and
    ``notify_event``. ``schedule`` runs outgoing media sends; by default they
    run at once. ``on_disconnect`` is called once when the connection closes.
    """

    def __init__(
        self,
        mode: ConnectionMode,
        owner: Optional[Rtmp],
        send: Callable[[bytes], None],
        *,
        sink_id: Optional[int] = None,
        schedule: Optional[Callable[[Task], None]] = None,
        on_disconnect: Optional[Callable[["RtmpConnection"], None]] = None,
        play_callback: Optional[PlayCallback] = None,
    ) -> None:
        self.mode = mode
        self._owner = owner
        self._send = send
        self._sink_id = next(_ids) if sink_id is None else sink_id
        self._schedule = schedule or _run_now
        self._on_disconnect = on_disconnect
        self.play_callback = play_callback

        first = HandshakeState.C0C1 if mode is ConnectionMode.SERVER else HandshakeState.S0S1S2
        self._handshake = RtmpHandshake(first)
        self._chunk = RtmpChunk()
        self._buffer = bytearray()
        self._decoder = AmfDecoder()
        self.state = ConnectionState.HANDSHAKE
        self._closed = False

        settings = owner if owner is not None else Rtmp()
        self._peer_bandwidth = settings.peer_bandwidth
        self._acknowledgement_size = settings.acknowledgement_size
        self._max_gop_cache_len = settings.gop_cache_len
        self._max_chunk_size = settings.chunk_size
        self.stream_path = settings.stream_path
        self.stream_name = settings.stream_name
        self.app = settings.app

        self._stream_id = 0
        self._number = 0
        self._status = ""
        self.meta_data: Dict[str, Any] = {}
        self._session_ref: Optional[Callable[[], Any]] = None

        self._playing = False
        self._publishing = False
        self.has_key_frame = False
        self.avc_sequence_header = b""
        self.aac_sequence_header = b""

    # -- state -----------------------------------------------------------

    @property
    def stream_id(self) -> int:
        return self._stream_id

    def is_closed(self) -> bool:
        return self._closed

    def status(self) -> str:
        """The last status code the peer reported."""
        return self._status or "unknown error"

    def is_player(self) -> bool:
        return self.state is ConnectionState.START_PLAY

    def is_publisher(self) -> bool:
        return self.state is ConnectionState.START_PUBLISH

    def is_playing(self) -> bool:
        return self._playing

    def is_publishing(self) -> bool:
        return self._publishing

    def sink_id(self) -> int:
        return self._sink_id

    def _session(self) -> Any:
        return self._session_ref() if self._session_ref is not None else None

    # -- input -----------------------------------------------------------

    def feed(self, data: bytes) -> bool:
        """Process bytes from the peer.

        Returns False, and closes the connection, when the peer's data
        cannot be accepted.
        """
        if self._closed:
            return False
        self._buffer += data
        try:
            ok = self._on_read()
        except (HandshakeError, ChunkError) as exc:
            logger.info("rtmp connection error: %s", exc)
            ok = False
        if not ok:
            self.close()
        return ok

    def _on_read(self) -> bool:
        if self._handshake.is_completed():
            return self._handle_chunks()

        reply = self._handshake.parse(self._buffer)
        if reply:
            self._write(reply)

        ok = True
        if self._handshake.is_completed():
            if self._buffer:
                ok = self._handle_chunks()
            if self.mode in (ConnectionMode.PUBLISHER, ConnectionMode.CLIENT):
                self._set_chunk_size()
                self._connect()
        return ok

    def _handle_chunks(self) -> bool:
        for message in self._chunk.parse(self._buffer):
            if not self._handle_message(message):
                return False
        return True

    def _handle_message(self, message: RtmpMessage) -> bool:
        type_id = message.type_id
        if type_id == RTMP_VIDEO:
            return self._handle_video(message)
        if type_id == RTMP_AUDIO:
            return self._handle_audio(message)
        if type_id == RTMP_INVOKE:
            return self._handle_invoke(message)
        if type_id == RTMP_NOTIFY:
            return self._handle_notify(message)
        if type_id == RTMP_FLEX_MESSAGE:
            logger.info("unsupported rtmp flex message")
            return False
        if type_id == RTMP_SET_CHUNK_SIZE:
            if len(message.payload) < 4:
                return False
            (size,) = struct.unpack_from(">I", message.payload)
            if size == 0:
                return False
            self._chunk.in_chunk_size = size
            return True
        if type_id == RTMP_FLASH_VIDEO:
            logger.info("unsupported rtmp flash video")
            return False
        if type_id in (RTMP_BANDWIDTH_SIZE, RTMP_ACK, RTMP_ACK_SIZE, RTMP_USER_EVENT):
            return True
        logger.info("unknown message type: %d", type_id)
        return True

    def _handle_invoke(self, message: RtmpMessage) -> bool:
        decoder = self._decoder
        decoder.reset()
        payload = bytes(message.payload)
        used = decoder.decode(payload, 1)
        method = decoder.string

        if self.mode in (ConnectionMode.PUBLISHER, ConnectionMode.CLIENT):
            used += decoder.decode(payload[used:])
            if method == "_result":
                return self._handle_result()
            if method == "onStatus":
                return self._handle_on_status()
        elif message.stream_id == 0:
            used += decoder.decode(payload[used:])
            if method == "connect":
                return self._handle_connect()
            if method == "createStream":
                return self._handle_create_stream()
        elif message.stream_id == self._stream_id:
            used += decoder.decode(payload[used:], 3)
            self.stream_name = decoder.string
            self.stream_path = f"/{self.app}/{self.stream_name}"
            if len(payload) > used:
                used += decoder.decode(payload[used:])

            if method == "publish":
                return self._handle_publish()
            if method == "play":
                return self._handle_play()
            if method == "play2":
                return self._handle_play2()
            if method == "DeleteStream":
                return self._handle_delete_stream()
        return True

    def _handle_notify(self, message: RtmpMessage) -> bool:
        decoder = self._decoder
        payload = bytes(message.payload)
        decoder.reset()
        used = decoder.decode(payload, 1)
        if decoder.string != "@setDataFrame":
            return True

        decoder.reset()
        used += decoder.decode(payload[used:], 1)
        if decoder.string == "onMetaData":
            decoder.decode(payload[used:])
            self.meta_data = dict(decoder.objects)
            if self._owner is None:
                return False
            session = self._session()
            if session is not None:
                session.set_meta_data(self.meta_data)
                session.send_meta_data(self.meta_data)
        return True

    def _handle_video(self, message: RtmpMessage) -> bool:
        payload = bytes(message.payload)
        if not payload:
            return True
        frame_type = (payload[0] >> 4) & 0x0F
        codec_id = payload[0] & 0x0F

        if self.mode is ConnectionMode.CLIENT:
            if self._playing and self.state is ConnectionState.START_PLAY and self.play_callback:
                self.play_callback(payload, codec_id, message.timestamp)
        elif self.mode is ConnectionMode.SERVER:
            if self._owner is None:
                return False
            session = self._session()
            if session is None:
                return False
            media_type = RTMP_VIDEO
            if frame_type == 1 and codec_id == RTMP_CODEC_ID_H264 and len(payload) > 1 and payload[1] == 0:
                self.avc_sequence_header = payload
                session.set_avc_sequence_header(payload)
                media_type = RTMP_AVC_SEQUENCE_HEADER
            session.send_media_data(media_type, message.timestamp, payload)
        return True

    def _handle_audio(self, message: RtmpMessage) -> bool:
        payload = bytes(message.payload)
        if not payload:
            return True
        sound_format = (payload[0] >> 4) & 0x0F
        codec_id = payload[0] & 0x0F

        if self.mode is ConnectionMode.CLIENT:
            if self.state is ConnectionState.START_PLAY and self._playing and self.play_callback:
                self.play_callback(payload, codec_id, message.timestamp)
            return True

        if self._owner is None or self.mode is not ConnectionMode.SERVER:
            return False
        session = self._session()
        if session is None:
            return False
        media_type = RTMP_AUDIO
        if sound_format == RTMP_CODEC_ID_AAC and len(payload) > 1 and payload[1] == 0:
            self.aac_sequence_header = payload
            session.set_aac_sequence_header(payload)
            media_type = RTMP_AAC_SEQUENCE_HEADER
        session.send_media_data(media_type, message.timestamp, payload)
        return True

    # -- publisher and player side --------------------------------------

    def handshake(self) -> None:
        """Send the opening C0 and C1 packets."""
        self._write(self._handshake.build_c0c1())

    def _next_transaction(self) -> int:
        self._number += 1
        return self._number

    def _connect(self) -> bool:
        swf_url = tc_url = None
        if self.mode in (ConnectionMode.PUBLISHER, ConnectionMode.CLIENT):
            if self._owner is None:
                return False
            swf_url = self._owner.swf_url
            tc_url = self._owner.tc_url
        payload = connect_command(self._next_transaction(), self.app, swf_url, tc_url)
        self.state = ConnectionState.START_CONNECT
        return self._send_invoke(RTMP_CHUNK_INVOKE_ID, payload)

    def _create_stream(self) -> bool:
        payload = create_stream_command(self._next_transaction())
        self.state = ConnectionState.START_CREATE_STREAM
        return self._send_invoke(RTMP_CHUNK_INVOKE_ID, payload)

    def _publish(self) -> bool:
        payload = publish_command(self._next_transaction(), self.stream_name)
        self.state = ConnectionState.START_PUBLISH
        return self._send_invoke(RTMP_CHUNK_INVOKE_ID, payload)

    def _play(self) -> bool:
        payload = play_command(self._next_transaction(), self.stream_name)
        self.state = ConnectionState.START_PLAY
        return self._send_invoke(RTMP_CHUNK_INVOKE_ID, payload)

    def _delete_stream(self) -> bool:
        payload = delete_stream_command(self._next_transaction(), self._stream_id)
        self.state = ConnectionState.START_DELETE_STREAM
        return self._send_invoke(RTMP_CHUNK_INVOKE_ID, payload)

    def _handle_result(self) -> bool:
        decoder = self._decoder
        if self.state is ConnectionState.START_CONNECT:
            if decoder.has_object("code") and decoder.get_object("code") == CONNECT_SUCCESS:
                self._create_stream()
                return True
        elif self.state is ConnectionState.START_CREATE_STREAM:
            if decoder.number > 0:
                self._stream_id = int(decoder.number)
                if self.mode is ConnectionMode.PUBLISHER:
                    self._publish()
                elif self.mode is ConnectionMode.CLIENT:
                    self._play()
                return True
        return False

    def _handle_on_status(self) -> bool:
        decoder = self._decoder
        ok = True
        code = decoder.get_object("code") if decoder.has_object("code") else None

        if self.state in (ConnectionState.START_PUBLISH, ConnectionState.START_PLAY) and code is not None:
            self._status = str(code)
            if self.mode is ConnectionMode.PUBLISHER:
                if self._status == "NetStream.Publish.Start":
                    self._publishing = True
                elif self._status in _PUBLISH_FAILURES:
                    ok = False
            elif self.mode is ConnectionMode.CLIENT:
                if self._status == "NetStream.Play.Start":
                    self._playing = True
                elif self._status in _PLAY_FAILURES:
                    ok = False

        if self.state is ConnectionState.START_DELETE_STREAM and code is not None:
            if code != "NetStream.Unpublish.Success":
                ok = False
        return ok

    # -- server side -----------------------------------------------------

    def _handle_connect(self) -> bool:
        decoder = self._decoder
        if not decoder.has_object("app"):
            return False
        app = decoder.get_object("app")
        if not isinstance(app, str) or not app:
            return False
        self.app = app

        self._send_acknowledgement()
        self._set_peer_bandwidth()
        self._set_chunk_size()
        return self._send_invoke(RTMP_CHUNK_INVOKE_ID, connect_result(decoder.number))

    def _handle_create_stream(self) -> bool:
        stream_id = self._chunk.stream_id
        payload = create_stream_result(self._decoder.number, stream_id)
        self._send_invoke(RTMP_CHUNK_INVOKE_ID, payload)
        self._stream_id = stream_id
        return True

    def _handle_publish(self) -> bool:
        server: Any = self._owner
        if server is None:
            return False

        failed = True
        if server.has_publisher(self.stream_path):
            status = on_status("error", "NetStream.Publish.BadName", "Stream already publishing.")
        elif self.state is ConnectionState.START_PUBLISH:
            status = on_status(
                "error", "NetStream.Publish.BadConnection", "Connection already publishing."
            )
        else:
            failed = False
            status = on_status("status", "NetStream.Publish.Start", "Start publising.")
            server.add_session(self.stream_path)
            self._session_ref = weakref.ref(server.get_session(self.stream_path))
            server.notify_event("publish.start", self.stream_path)

        self._send_invoke(RTMP_CHUNK_INVOKE_ID, status)
        if not failed:
            self.state = ConnectionState.START_PUBLISH
            self._publishing = True

        session = self._session()
        if session is not None:
            session.set_gop_cache(self._max_gop_cache_len)
            session.add_sink(self)
        return True

    def _handle_play(self) -> bool:
        server: Any = self._owner
        if server is None:
            return False

        reset = on_status("status", "NetStream.Play.Reset", "Resetting and playing stream.")
        if not self._send_invoke(RTMP_CHUNK_INVOKE_ID, reset):
            return False
        start = on_status("status", "NetStream.Play.Start", "Started playing.")
        if not self._send_invoke(RTMP_CHUNK_INVOKE_ID, start):
            return False
        if not self._send_notify(RTMP_CHUNK_DATA_ID, sample_access()):
            return False

        self.state = ConnectionState.START_PLAY
        self._session_ref = weakref.ref(server.get_session(self.stream_path))
        session = self._session()
        if session is not None:
            session.add_sink(self)
        server.notify_event("play.start", self.stream_path)
        return True

    def _handle_play2(self) -> bool:
        self._handle_play()
        return False

    def _handle_delete_stream(self) -> bool:
        server: Any = self._owner
        if server is None:
            return False

        if self.stream_path:
            session = self._session()
            if session is not None:
                self._schedule(lambda: session.remove_sink(self))
                if self._publishing:
                    server.notify_event("publish.stop", self.stream_path)
                elif self._playing:
                    server.notify_event("play.stop", self.stream_path)
            self._playing = False
            self._publishing = False
            self.has_key_frame = False
            self._chunk.clear()
        return True

    # -- closing ---------------------------------------------------------

    def on_close(self) -> None:
        """Leave the stream: the server side drops its sink, a publisher deletes its stream."""
        if self.mode is ConnectionMode.SERVER:
            self._handle_delete_stream()
        elif self.mode is ConnectionMode.PUBLISHER:
            self._delete_stream()

    def close(self) -> None:
        """Close the connection once, leaving the stream first."""
        if self._closed:
            return
        self.on_close()
        self._closed = True
        if self._on_disconnect is not None:
            self._on_disconnect(self)

    # -- output ----------------------------------------------------------

    def _write(self, data: bytes) -> None:
        if not self._closed and data:
            self._send(data)

    def _send_chunks(self, csid: int, message: RtmpMessage) -> None:
        self._write(self._chunk.create_chunk(csid, message))

    def _set_peer_bandwidth(self) -> None:
        message = control_message(
            RTMP_BANDWIDTH_SIZE, self._peer_bandwidth, _PEER_BANDWIDTH_LIMIT_DYNAMIC
        )
        self._send_chunks(RTMP_CHUNK_CONTROL_ID, message)

    def _send_acknowledgement(self) -> None:
        self._send_chunks(
            RTMP_CHUNK_CONTROL_ID, control_message(RTMP_ACK_SIZE, self._acknowledgement_size)
        )

    def _set_chunk_size(self) -> None:
        self._chunk.out_chunk_size = self._max_chunk_size
        self._send_chunks(
            RTMP_CHUNK_CONTROL_ID, control_message(RTMP_SET_CHUNK_SIZE, self._max_chunk_size)
        )

    def _send_invoke(self, csid: int, payload: bytes) -> bool:
        return self._send_command(RTMP_INVOKE, csid, payload)

    def _send_notify(self, csid: int, payload: bytes) -> bool:
        return self._send_command(RTMP_NOTIFY, csid, payload)

    def _send_command(self, type_id: int, csid: int, payload: bytes) -> bool:
        if self._closed:
            return False
        message = RtmpMessage(
            type_id=type_id, stream_id=self._stream_id, payload=payload, length=len(payload)
        )
        self._send_chunks(csid, message)
        return True

    def _send_media(self, type_id: int, csid: int, timestamp: int, payload: bytes) -> None:
        message = RtmpMessage(
            type_id=type_id,
            stream_id=self._stream_id,
            timestamp=timestamp,
            payload=payload,
            length=len(payload),
        )
        self._send_chunks(csid, message)

    def send_meta_data(self, meta_data: Mapping[str, Any]) -> bool:
        if self._closed or not meta_data:
            return False
        return self._send_notify(RTMP_CHUNK_DATA_ID, meta_data_message(meta_data))

    def send_media_data(self, media_type: int, timestamp: int, payload: bytes) -> bool:
        """Send a stream message to this player.

        Once an AVC sequence header is known, video and audio are held back
        until the first H.264 key frame.
        """
        if self._closed or not payload:
            return False
        payload = bytes(payload)
        self._playing = True

        if media_type == RTMP_AVC_SEQUENCE_HEADER:
            self.avc_sequence_header = payload
        elif media_type == RTMP_AAC_SEQUENCE_HEADER:
            self.aac_sequence_header = payload

        def task() -> None:
            if (
                not self.has_key_frame
                and self.avc_sequence_header
                and media_type not in (RTMP_AVC_SEQUENCE_HEADER, RTMP_AAC_SEQUENCE_HEADER)
            ):
                if not _is_key_frame(payload):
                    return
                self.has_key_frame = True

            if media_type in (RTMP_VIDEO, RTMP_AVC_SEQUENCE_HEADER):
                self._send_media(RTMP_VIDEO, RTMP_CHUNK_VIDEO_ID, timestamp, payload)
            elif media_type in (RTMP_AUDIO, RTMP_AAC_SEQUENCE_HEADER):
                self._send_media(RTMP_AUDIO, RTMP_CHUNK_AUDIO_ID, timestamp, payload)

        self._schedule(task)
        return True

    def send_video_data(self, timestamp: int, payload: bytes) -> bool:
        if not payload:
            return False
        payload = bytes(payload)
        self._schedule(lambda: self._send_media(RTMP_VIDEO, RTMP_CHUNK_VIDEO_ID, timestamp, payload))
        return True

    def send_audio_data(self, timestamp: int, payload: bytes) -> bool:
        if not payload:
            return False
        payload = bytes(payload)
        self._schedule(lambda: self._send_media(RTMP_AUDIO, RTMP_CHUNK_VIDEO_ID, timestamp, payload))
        return True