"""RTMP chunk stream: splitting messages into chunks and reassembling them."""

from __future__ import annotations

import struct
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple, Union

from .rtmp import RTMP_CHUNK_TYPE_0, RTMP_CHUNK_TYPE_1, RTMP_CHUNK_TYPE_3

DEFAULT_CHUNK_SIZE = 128
DEFAULT_STREAM_ID = 1
EXTENDED_TIMESTAMP = 0xFFFFFF
MIN_CSID = 2
MAX_CSID = 65599
_MESSAGE_HEADER_LEN = (11, 7, 3, 0)
_FULL_HEADER_LEN = 11


class ChunkError(Exception):
    """Raised when chunk data cannot be parsed or a chunk cannot be built."""


@dataclass
class RtmpMessage:
    """An RTMP message, complete or still being reassembled.

    ``timestamp`` is the absolute message timestamp; ``header_timestamp``
    and ``extend_timestamp`` hold the values read from chunk headers while
    the message is being assembled.
    """

    type_id: int = 0
    stream_id: int = 0
    timestamp: int = 0
    payload: Union[bytes, bytearray] = b""
    length: int = 0
    csid: int = 0
    index: int = 0
    header_timestamp: int = 0
    extend_timestamp: int = 0

    def __post_init__(self) -> None:
        if not self.length and self.payload:
            self.length = len(self.payload)

    def is_completed(self) -> bool:
        return self.length > 0 and self.index == self.length

    def clear(self) -> None:
        """Prepare for the next message on the same chunk stream."""
        self.index = 0
        self.header_timestamp = 0
        self.extend_timestamp = 0
        self.payload = bytearray(self.length)


class _State(Enum):
    HEADER = "header"
    BODY = "body"


def _basic_header(fmt: int, csid: int) -> bytes:
    if csid >= 64 + 255:
        return bytes([(fmt << 6) | 1, (csid - 64) & 0xFF, ((csid - 64) >> 8) & 0xFF])
    if csid >= 64:
        return bytes([fmt << 6, (csid - 64) & 0xFF])
    return bytes([(fmt << 6) | csid])


class RtmpChunk:
    """Chunk parser for incoming data and chunk builder for outgoing messages."""

    def __init__(self) -> None:
        self.in_chunk_size = DEFAULT_CHUNK_SIZE
        self.out_chunk_size = DEFAULT_CHUNK_SIZE
        self.stream_id = DEFAULT_STREAM_ID
        self._state = _State.HEADER
        self._csid: Optional[int] = None
        self._messages: Dict[int, RtmpMessage] = {}

    def clear(self) -> None:
        """Forget every partially received message."""
        self._messages.clear()

    def parse(self, buffer: bytearray) -> Iterator[RtmpMessage]:
        """Consume chunks from ``buffer``, yielding each completed message.

        Stops when more data is needed; unconsumed bytes stay in ``buffer``.
        Settings such as ``in_chunk_size`` may be changed between messages.
        """
        while buffer:
            if self._state is _State.HEADER:
                if not self._parse_header(buffer):
                    return
            else:
                used, message = self._parse_body(buffer)
                if message is not None:
                    yield message
                if not used:
                    return

    def _parse_header(self, buffer: bytearray) -> int:
        size = len(buffer)
        flags = buffer[0]
        used = 1

        csid = flags & 0x3F
        if csid == 0:
            if size < used + 2:
                return 0
            csid = buffer[1] + 64
            used += 1
        elif csid == 1:
            if size < used + 3:
                return 0
            csid = buffer[2] * 256 + buffer[1] + 64
            used += 2

        fmt = flags >> 6
        header_len = _MESSAGE_HEADER_LEN[fmt]
        if size < used + header_len:
            return 0
        header = bytes(buffer[used:used + header_len]) + bytes(_FULL_HEADER_LEN - header_len)
        used += header_len

        message = self._messages.setdefault(csid, RtmpMessage(csid=csid, payload=bytearray()))
        timestamp = int.from_bytes(header[0:3], "big")
        extended = 0
        if timestamp >= EXTENDED_TIMESTAMP or message.header_timestamp >= EXTENDED_TIMESTAMP:
            if size < used + 4:
                return 0
            (extended,) = struct.unpack_from(">I", buffer, used)
            used += 4

        self._csid = csid
        message.csid = csid

        if fmt in (RTMP_CHUNK_TYPE_0, RTMP_CHUNK_TYPE_1):
            length = int.from_bytes(header[3:6], "big")
            if message.length != length or len(message.payload) != length:
                message.length = length
                message.payload = bytearray(length)
            message.index = 0
            message.type_id = header[6]

        if fmt == RTMP_CHUNK_TYPE_0:
            message.stream_id = int.from_bytes(header[7:10], "little")

        if message.index == 0:
            if fmt == RTMP_CHUNK_TYPE_0:
                message.timestamp = 0
                message.header_timestamp = timestamp
                message.extend_timestamp = extended
            elif message.header_timestamp >= EXTENDED_TIMESTAMP:
                message.extend_timestamp += extended
            else:
                message.header_timestamp += timestamp

        self._state = _State.BODY
        del buffer[:used]
        return used

    def _parse_body(self, buffer: bytearray) -> Tuple[int, Optional[RtmpMessage]]:
        if self._csid is None:
            raise ChunkError("chunk body without a chunk header")

        message = self._messages[self._csid]
        chunk_size = min(message.length - message.index, self.in_chunk_size)
        if len(buffer) < chunk_size:
            return 0, None
        if message.index + chunk_size > message.length:
            raise ChunkError("chunk overruns its message")

        if not isinstance(message.payload, bytearray):
            message.payload = bytearray(message.payload)
        message.payload[message.index:message.index + chunk_size] = buffer[:chunk_size]
        message.index += chunk_size

        if message.index >= message.length or message.index % self.in_chunk_size == 0:
            self._state = _State.HEADER

        del buffer[:chunk_size]

        if not chunk_size or message.index != message.length:
            return chunk_size, None

        if message.header_timestamp >= EXTENDED_TIMESTAMP:
            message.timestamp += message.extend_timestamp
        else:
            message.timestamp += message.header_timestamp

        completed = replace(message, payload=bytes(message.payload))
        self._csid = None
        message.clear()
        return chunk_size, completed

    def create_chunk(self, csid: int, message: RtmpMessage) -> bytes:
        """Split ``message`` into chunks of ``out_chunk_size`` on stream ``csid``."""
        if not MIN_CSID <= csid <= MAX_CSID:
            raise ChunkError(f"chunk stream id {csid} out of range")
        length = message.length
        if length > len(message.payload):
            raise ChunkError("message length exceeds its payload")
        payload = bytes(message.payload[:length])

        extended = b""
        if message.timestamp >= EXTENDED_TIMESTAMP:
            extended = struct.pack(">I", message.timestamp & 0xFFFFFFFF)

        out = bytearray(_basic_header(RTMP_CHUNK_TYPE_0, csid))
        out += min(message.timestamp, EXTENDED_TIMESTAMP).to_bytes(3, "big")
        out += (length & 0xFFFFFF).to_bytes(3, "big")
        out.append(message.type_id & 0xFF)
        out += struct.pack("<I", message.stream_id & 0xFFFFFFFF)
        out += extended

        step = self.out_chunk_size
        for offset in range(0, length, step):
            if offset:
                out += _basic_header(RTMP_CHUNK_TYPE_3, csid)
                out += extended
            out += payload[offset:offset + step]
        return bytes(out)