"""Publishing H.264 video and AAC audio to an RTMP server."""

from __future__ import annotations

import dataclasses
import socket
import struct
import threading
import time
from typing import Callable, Optional, Tuple, Type

from .connection import ConnectionMode, PlayCallback, RtmpConnection
from .rtmp import RTMP_CODEC_ID_AAC, RTMP_CODEC_ID_H264, MediaInfo, Rtmp
from .server import _SocketLink

DEFAULT_TIMEOUT_MS = 10000
_POLL_MS = 100
_MIN_WAIT_MS = 1000

SAMPLING_FREQUENCIES = (
    96000, 88200, 64000, 48000, 44100, 32000, 24000, 22050,
    16000, 12000, 11025, 8000, 7350, 0, 0, 0,
)

_AAC_SOUND_RATE = 3
_AAC_SOUND_SIZE = 1
_AAC_SOUND_TYPE = 1


class PublishError(Exception):
    """Raised when a stream cannot be published; ``status`` holds the peer's code."""

    def __init__(self, message: str, status: str = "") -> None:
        super().__init__(message)
        self.status = status


def is_key_frame(data: bytes) -> bool:
    """True when the first NAL unit is an IDR slice or an SPS."""
    start = 0
    if data[:3] == b"\x00\x00\x01":
        start = 3
    elif data[:4] == b"\x00\x00\x00\x01":
        start = 4
    if len(data) <= start:
        return False
    return (data[start] & 0x1F) in (5, 7)


def _open_connection(
    owner: Rtmp,
    mode: ConnectionMode,
    url: str,
    timeout_ms: int,
    ready: Callable[[RtmpConnection], bool],
    error: Type[Exception],
    play_callback: Optional[PlayCallback] = None,
) -> Tuple[_SocketLink, RtmpConnection, str]:
    """Connect to ``url`` and wait until ``ready`` holds for the connection."""
    started = time.monotonic()
    try:
        owner.parse_rtmp_url(url)
    except ValueError as exc:
        raise error(f"rtmp url ({url}) was illegal") from exc

    try:
        sock = socket.create_connection((owner.ip, owner.port), timeout=timeout_ms / 1000)
    except OSError as exc:
        raise error(f"cannot connect to {owner.ip}:{owner.port}: {exc}") from exc
    sock.settimeout(None)

    link = _SocketLink(sock, threading.RLock())
    connection = RtmpConnection(
        mode, owner, link.send, on_disconnect=link.shutdown, play_callback=play_callback
    )
    link.connection = connection
    with link.lock:
        connection.handshake()
    link.start()

    remaining = timeout_ms - int((time.monotonic() - started) * 1000)
    if remaining < 0:
        remaining = _MIN_WAIT_MS
    while True:
        time.sleep(_POLL_MS / 1000)
        remaining -= _POLL_MS
        with link.lock:
            done = connection.is_closed() or ready(connection)
        if done or remaining <= 0:
            break

    with link.lock:
        status = connection.status()
        ok = ready(connection)
    if not ok:
        link.disconnect()
        raise error(f"rtmp stream was not started: {status}", status)
    return link, connection, status


class RtmpPublisher(Rtmp):
    """Pushes Annex B H.264 frames and raw AAC frames to an RTMP server."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self._link: Optional[_SocketLink] = None
        self._connection: Optional[RtmpConnection] = None
        self.media_info = MediaInfo()
        self.avc_sequence_header = b""
        self.aac_sequence_header = b""
        self.audio_tag = 0
        self.has_key_frame = False
        self._epoch = time.monotonic()

    def set_media_info(self, media_info: MediaInfo) -> None:
        """Build the AVC and AAC sequence headers from ``media_info``.

        A codec whose configuration is missing is switched off (its id set
        to 0). The sample rate and channel count are taken from the AAC
        AudioSpecificConfig.
        """
        with self._lock:
            info = dataclasses.replace(media_info)

            if info.audio_codec_id == RTMP_CODEC_ID_AAC:
                config = bytes(info.audio_specific_config)
                if config:
                    if len(config) < 2:
                        raise ValueError("AAC AudioSpecificConfig needs at least two bytes")
                    tag = (
                        ((RTMP_CODEC_ID_AAC & 0xF) << 4)
                        | ((_AAC_SOUND_RATE & 0x3) << 2)
                        | ((_AAC_SOUND_SIZE & 0x1) << 1)
                        | (_AAC_SOUND_TYPE & 0x1)
                    )
                    self.audio_tag = tag
                    self.aac_sequence_header = bytes([tag, 0]) + config
                    index = ((config[0] & 0x07) << 1) | ((config[1] & 0x80) >> 7)
                    info.audio_channel = (config[1] & 0x78) >> 3
                    info.audio_samplerate = SAMPLING_FREQUENCIES[index]
                else:
                    info.audio_codec_id = 0

            if info.video_codec_id == RTMP_CODEC_ID_H264:
                sps = bytes(info.sps)
                pps = bytes(info.pps)
                if sps and pps:
                    if len(sps) < 4:
                        raise ValueError("SPS needs at least four bytes")
                    header = bytearray([0x17, 0x00, 0x00, 0x00, 0x00])
                    header += bytes([0x01, sps[1], sps[2], sps[3], 0xFF])
                    header.append(0xE1)
                    header += struct.pack(">H", len(sps) & 0xFFFF)
                    header += sps
                    header.append(0x01)
                    header += struct.pack(">H", len(pps) & 0xFFFF)
                    header += pps
                    self.avc_sequence_header = bytes(header)
                else:
                    info.video_codec_id = 0

            self.media_info = info

    def open_url(self, url: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> str:
        """Connect and start publishing; return the server's status code.

        Raises PublishError when the URL is illegal, the server cannot be
        reached or publishing does not start within the timeout.
        """
        with self._lock:
            timeout = timeout_ms if timeout_ms > 0 else DEFAULT_TIMEOUT_MS
            self._drop_link()
            link, connection, status = _open_connection(
                self,
                ConnectionMode.PUBLISHER,
                url,
                timeout,
                RtmpConnection.is_publishing,
                PublishError,
            )
            self._link = link
            self._connection = connection
            self.has_key_frame = self.media_info.video_codec_id != RTMP_CODEC_ID_H264
            return status

    def close(self) -> None:
        with self._lock:
            if self._link is not None:
                self._drop_link()
                self.has_key_frame = False

    def is_connected(self) -> bool:
        with self._lock:
            return self._connection is not None and not self._connection.is_closed()

    def _drop_link(self) -> None:
        if self._link is not None:
            self._link.disconnect()
        self._link = None
        self._connection = None

    def _require_connection(self) -> Tuple[_SocketLink, RtmpConnection]:
        if self._link is None or self._connection is None or self._connection.is_closed():
            raise PublishError("not connected")
        return self._link, self._connection

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._epoch) * 1000)

    def push_video_frame(self, data: bytes) -> bool:
        """Send one H.264 frame (an IDR frame with SPS and PPS, or a P frame).

        Returns False when the frame is dropped because no key frame has
        been sent yet or the video codec is not H.264.
        """
        data = bytes(data)
        with self._lock:
            link, connection = self._require_connection()
            if len(data) <= 5:
                raise ValueError("video frame is too short")
            if self.media_info.video_codec_id != RTMP_CODEC_ID_H264:
                return False

            with link.lock:
                if not self.has_key_frame:
                    if not is_key_frame(data):
                        return False
                    self.has_key_frame = True
                    self._epoch = time.monotonic()
                    connection.send_video_data(0, self.avc_sequence_header)
                    connection.send_audio_data(0, self.aac_sequence_header)

                timestamp = self._elapsed_ms()
                frame_tag = 0x17 if is_key_frame(data) else 0x27
                payload = (
                    bytes([frame_tag, 1, 0, 0, 0])
                    + struct.pack(">I", len(data) & 0xFFFFFFFF)
                    + data
                )
                connection.send_video_data(timestamp, payload)
            return True

    def push_audio_frame(self, data: bytes) -> bool:
        """Send one raw AAC frame; False when it is dropped before the first key frame."""
        data = bytes(data)
        with self._lock:
            link, connection = self._require_connection()
            if not data:
                raise ValueError("audio frame is empty")
            if not self.has_key_frame or self.media_info.audio_codec_id != RTMP_CODEC_ID_AAC:
                return False

            with link.lock:
                timestamp = self._elapsed_ms()
                connection.send_audio_data(timestamp, bytes([self.audio_tag, 1]) + data)
            return True