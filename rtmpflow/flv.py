"""HTTP-FLV output: FLV headers, tags and a sink that writes them."""

from __future__ import annotations

import struct
from typing import Callable

from .rtmp import (
    RTMP_AAC_SEQUENCE_HEADER,
    RTMP_AUDIO,
    RTMP_AVC_SEQUENCE_HEADER,
    RTMP_CODEC_ID_H264,
    RTMP_VIDEO,
)
from .sink import RtmpSink

FLV_TAG_TYPE_AUDIO = 0x08
FLV_TAG_TYPE_VIDEO = 0x09
_TAG_HEADER_SIZE = 11
_PREVIOUS_TAG_SIZE_0 = bytes(4)


def flv_header(has_video: bool, has_audio: bool) -> bytes:
    """The nine-byte FLV file header."""
    flags = (0x01 if has_video else 0) | (0x04 if has_audio else 0)
    return b"FLV\x01" + bytes([flags]) + struct.pack(">I", 9)


def flv_tag(tag_type: int, timestamp: int, payload: bytes) -> bytes:
    """An FLV tag followed by its PreviousTagSize field.

    Raises ValueError for an empty payload.
    """
    if not payload:
        raise ValueError("FLV tag payload is empty")
    size = len(payload)
    header = bytes([
        tag_type & 0xFF,
        (size >> 16) & 0xFF,
        (size >> 8) & 0xFF,
        size & 0xFF,
        (timestamp >> 16) & 0xFF,
        (timestamp >> 8) & 0xFF,
        timestamp & 0xFF,
        (timestamp >> 24) & 0xFF,
        0,
        0,
        0,
    ])
    return header + bytes(payload) + struct.pack(">I", (size + _TAG_HEADER_SIZE) & 0xFFFFFFFF)


class FlvSink(RtmpSink):
    """A player that turns a stream into FLV bytes handed to ``send``.

    Video is held back until the first H.264 key frame; the FLV header and
    the sequence headers go out before the first tag.
    """

    def __init__(self, send: Callable[[bytes], None], sink_id: int) -> None:
        self._send = send
        self._sink_id = sink_id
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
        return self._sink_id

    def send_media_data(self, media_type: int, timestamp: int, payload: bytes) -> bool:
        if not payload:
            return False

        self._playing = True

        if media_type == RTMP_AVC_SEQUENCE_HEADER:
            self.avc_sequence_header = bytes(payload)
            return True
        if media_type == RTMP_AAC_SEQUENCE_HEADER:
            self.aac_sequence_header = bytes(payload)
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
            self._send_tag(FLV_TAG_TYPE_VIDEO, 0, self.avc_sequence_header)
            self._send_tag(FLV_TAG_TYPE_AUDIO, 0, self.aac_sequence_header)
        self._send_tag(FLV_TAG_TYPE_VIDEO, timestamp, payload)
        return True

    def send_audio_data(self, timestamp: int, payload: bytes) -> bool:
        if not self.has_flv_header:
            self._send_header()
            self._send_tag(FLV_TAG_TYPE_AUDIO, 0, self.aac_sequence_header)
        self._send_tag(FLV_TAG_TYPE_AUDIO, timestamp, payload)
        return True

    def _send_header(self) -> None:
        self._send(flv_header(bool(self.avc_sequence_header), bool(self.aac_sequence_header)))
        self._send(_PREVIOUS_TAG_SIZE_0)
        self.has_flv_header = True

    def _send_tag(self, tag_type: int, timestamp: int, payload: bytes) -> None:
        if payload:
            self._send(flv_tag(tag_type, timestamp, payload))