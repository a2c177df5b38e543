"""AMF0 encoding and decoding of the values used by RTMP commands."""

from __future__ import annotations

import struct
from enum import IntEnum
from typing import Any, Dict, Mapping, Optional, Union

AmfValue = Union[str, float, bool, Dict[str, Any]]

_STRING_ERRORS = "surrogateescape"


class Amf0Type(IntEnum):
    """AMF0 type markers."""

    NUMBER = 0x00
    BOOLEAN = 0x01
    STRING = 0x02
    OBJECT = 0x03
    MOVIECLIP = 0x04
    NULL = 0x05
    UNDEFINED = 0x06
    REFERENCE = 0x07
    ECMA_ARRAY = 0x08
    OBJECT_END = 0x09
    STRICT_ARRAY = 0x0A
    DATE = 0x0B
    LONG_STRING = 0x0C
    UNSUPPORTED = 0x0D
    RECORDSET = 0x0E
    XML_DOC = 0x0F
    TYPED_OBJECT = 0x10
    AVMPLUS = 0x11
    INVALID = 0xFF


class AmfDecoder:
    """Decodes a sequence of AMF0 values.

    The last decoded string, number and boolean are kept in ``string``,
    ``number`` and ``boolean``; the last decoded object or ECMA array is
    kept in ``objects``.
    """

    def __init__(self) -> None:
        self.string = ""
        self.number = 0.0
        self.boolean = False
        self.objects: Dict[str, AmfValue] = {}
        self._kind: Optional[Amf0Type] = None

    def reset(self) -> None:
        """Forget the decoded string, number and objects."""
        self.string = ""
        self.number = 0.0
        self.objects = {}
        self._kind = None

    def has_object(self, key: str) -> bool:
        return key in self.objects

    def get_object(self, key: str) -> AmfValue:
        """Return the value stored under ``key`` in the decoded object."""
        return self.objects[key]

    def decode(self, data: bytes, n: int = -1) -> int:
        """Decode up to ``n`` values (all when negative); return bytes used."""
        data = bytes(data)
        size = len(data)
        used = 0
        while size > used:
            marker = data[used]
            used += 1
            consumed = 0

            if marker == Amf0Type.NUMBER:
                self._kind = Amf0Type.NUMBER
                if size - used >= 8:
                    (self.number,) = struct.unpack_from(">d", data, used)
                    consumed = 8
            elif marker == Amf0Type.BOOLEAN:
                self._kind = Amf0Type.BOOLEAN
                if size - used >= 1:
                    self.boolean = data[used] != 0
                    consumed = 1
            elif marker == Amf0Type.STRING:
                self._kind = Amf0Type.STRING
                if size - used >= 2:
                    (length,) = struct.unpack_from(">H", data, used)
                    if length > size - used - 2:
                        break
                    start = used + 2
                    self.string = data[start:start + length].decode(
                        "utf-8", _STRING_ERRORS
                    )
                    consumed = 2 + length
            elif marker == Amf0Type.OBJECT:
                self._kind = Amf0Type.OBJECT
                self.objects, consumed = _decode_object(data, used)
            elif marker == Amf0Type.ECMA_ARRAY:
                self._kind = Amf0Type.ECMA_ARRAY
                if size - used >= 4:
                    self.objects, consumed = _decode_object(data, used + 4)
                    consumed += 4
                else:
                    self.objects = {}
            elif marker == Amf0Type.NULL:
                self._kind = Amf0Type.NULL

            used += consumed
            n -= 1
            if n == 0:
                break
        return used

    def _last_value(self) -> AmfValue:
        if self._kind == Amf0Type.NUMBER:
            return self.number
        if self._kind == Amf0Type.BOOLEAN:
            return self.boolean
        if self._kind in (Amf0Type.OBJECT, Amf0Type.ECMA_ARRAY):
            return dict(self.objects)
        return self.string


def _decode_object(data: bytes, pos: int) -> tuple[Dict[str, AmfValue], int]:
    """Decode key/value pairs starting at ``pos`` until the end marker."""
    objects: Dict[str, AmfValue] = {}
    used = 0
    size = len(data)
    while pos + used < size:
        start = pos + used
        if size - start < 2:
            break
        (key_len,) = struct.unpack_from(">H", data, start)
        if size - start - 2 < key_len:
            break
        key = data[start + 2:start + 2 + key_len].decode("utf-8", _STRING_ERRORS)
        inner = AmfDecoder()
        consumed = inner.decode(data[start + 2 + key_len:], 1)
        used += 2 + key_len + consumed
        if consumed <= 1:
            break
        objects[key] = inner._last_value()
    return objects, used


class AmfEncoder:
    """Builds a sequence of AMF0 values."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def reset(self) -> None:
        self._buffer.clear()

    @property
    def data(self) -> bytes:
        return bytes(self._buffer)

    @property
    def size(self) -> int:
        return len(self._buffer)

    def __bytes__(self) -> bytes:
        return self.data

    def __len__(self) -> int:
        return len(self._buffer)

    def encode_string(self, value: Union[str, bytes], is_object: bool = True) -> None:
        """Append a string; without a type marker when ``is_object`` is false."""
        raw = value.encode("utf-8", _STRING_ERRORS) if isinstance(value, str) else bytes(value)
        if len(raw) < 65536:
            if is_object:
                self._buffer.append(Amf0Type.STRING)
            self._buffer += struct.pack(">H", len(raw))
        else:
            if is_object:
                self._buffer.append(Amf0Type.LONG_STRING)
            self._buffer += struct.pack(">I", len(raw))
        self._buffer += raw

    def encode_number(self, value: float) -> None:
        self._buffer.append(Amf0Type.NUMBER)
        self._buffer += struct.pack(">d", float(value))

    def encode_boolean(self, value: bool) -> None:
        self._buffer.append(Amf0Type.BOOLEAN)
        self._buffer.append(1 if value else 0)

    def encode_objects(self, objects: Mapping[str, Any]) -> None:
        """Append an object, or a null marker when ``objects`` is empty."""
        if not objects:
            self._buffer.append(Amf0Type.NULL)
            return
        self._buffer.append(Amf0Type.OBJECT)
        self._encode_properties(objects)

    def encode_ecma(self, objects: Mapping[str, Any]) -> None:
        """Append an ECMA array holding ``objects``."""
        self._buffer.append(Amf0Type.ECMA_ARRAY)
        self._buffer += struct.pack(">I", 0)
        self._encode_properties(objects)

    def _encode_properties(self, objects: Mapping[str, Any]) -> None:
        for key, value in objects.items():
            self.encode_string(key, is_object=False)
            if isinstance(value, bool):
                self.encode_boolean(value)
            elif isinstance(value, (int, float)):
                self.encode_number(value)
            elif isinstance(value, (str, bytes)):
                self.encode_string(value)
            else:
                raise TypeError(f"unsupported AMF value for {key!r}: {type(value).__name__}")
        self.encode_string("", is_object=False)
        self._buffer.append(Amf0Type.OBJECT_END)