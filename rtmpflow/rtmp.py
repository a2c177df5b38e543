"""RTMP protocol constants, media description and URL settings."""

from __future__ import annotations

import re
from dataclasses import dataclass

RTMP_VERSION = 0x03

RTMP_SET_CHUNK_SIZE = 0x01
RTMP_ABORT_MESSAGE = 0x02
RTMP_ACK = 0x03
RTMP_USER_EVENT = 0x04
RTMP_ACK_SIZE = 0x05
RTMP_BANDWIDTH_SIZE = 0x06
RTMP_AUDIO = 0x08
RTMP_VIDEO = 0x09
RTMP_FLEX_MESSAGE = 0x11
RTMP_NOTIFY = 0x12
RTMP_INVOKE = 0x14
RTMP_FLASH_VIDEO = 0x16

RTMP_CHUNK_TYPE_0 = 0
RTMP_CHUNK_TYPE_1 = 1
RTMP_CHUNK_TYPE_2 = 2
RTMP_CHUNK_TYPE_3 = 3

RTMP_CHUNK_CONTROL_ID = 2
RTMP_CHUNK_INVOKE_ID = 3
RTMP_CHUNK_AUDIO_ID = 4
RTMP_CHUNK_VIDEO_ID = 5
RTMP_CHUNK_DATA_ID = 6

RTMP_CODEC_ID_H264 = 7
RTMP_CODEC_ID_AAC = 10
RTMP_CODEC_ID_G711A = 7
RTMP_CODEC_ID_G711U = 8

RTMP_AVC_SEQUENCE_HEADER = 0x18
RTMP_AAC_SEQUENCE_HEADER = 0x19

DEFAULT_PORT = 1935
MAX_CHUNK_SIZE = 60000

_HOST_PORT_PATH = re.compile(r"([^:]+):\s*(\d+)/\s*(\S+)")
_HOST_PATH = re.compile(r"([^/]+)/\s*(\S+)")
_APP_STREAM = re.compile(r"/([^/]+)/\s*(\S+)")


@dataclass
class MediaInfo:
    """Description of the audio and video carried by a published stream."""

    video_codec_id: int = RTMP_CODEC_ID_H264
    video_framerate: int = 0
    video_width: int = 0
    video_height: int = 0
    sps: bytes = b""
    pps: bytes = b""
    sei: bytes = b""

    audio_codec_id: int = RTMP_CODEC_ID_AAC
    audio_channel: int = 0
    audio_samplerate: int = 0
    audio_frame_len: int = 0
    audio_specific_config: bytes = b""

    @property
    def sps_size(self) -> int:
        return len(self.sps)

    @property
    def pps_size(self) -> int:
        return len(self.pps)

    @property
    def sei_size(self) -> int:
        return len(self.sei)

    @property
    def audio_specific_config_size(self) -> int:
        return len(self.audio_specific_config)


class Rtmp:
    """Settings shared by RTMP servers, publishers and clients."""

    def __init__(self) -> None:
        self.port = DEFAULT_PORT
        self.url = ""
        self.tc_url = ""
        self.swf_url = ""
        self.ip = ""
        self.app = ""
        self.stream_name = ""
        self.stream_path = ""

        self.peer_bandwidth = 5000000
        self.acknowledgement_size = 5000000
        self.chunk_size = 128
        self.gop_cache_len = 0

    def set_chunk_size(self, size: int) -> None:
        """Set the outgoing chunk size; values outside 1..60000 are ignored."""
        if 0 < size <= MAX_CHUNK_SIZE:
            self.chunk_size = size

    def set_gop_cache(self, length: int = 5000) -> None:
        self.gop_cache_len = length

    def set_peer_bandwidth(self, size: int) -> None:
        self.peer_bandwidth = size

    def parse_rtmp_url(self, url: str) -> None:
        """Take host, port, app and stream name from an ``rtmp://`` URL.

        Raises ValueError when the URL does not have that form.
        """
        if "rtmp://" not in url:
            raise ValueError(f"not an rtmp url: {url!r}")

        rest = url[7:]
        match = _HOST_PORT_PATH.match(rest)
        if match:
            ip, port_text, path = match.groups()
            port = int(port_text) & 0xFFFF
        else:
            match = _HOST_PATH.match(rest)
            if not match:
                raise ValueError(f"illegal rtmp url: {url!r}")
            ip, path = match.groups()
            port = DEFAULT_PORT

        stream_path = "/" + path
        parts = _APP_STREAM.match(stream_path)
        if not parts:
            raise ValueError(f"rtmp url has no app and stream name: {url!r}")
        app, stream_name = parts.groups()

        self.ip = ip
        self.port = port
        self.stream_path = stream_path
        self.url = url
        self.app = app
        self.stream_name = stream_name
        self.tc_url = self.swf_url = f"rtmp://{ip}:{port}/{app}"