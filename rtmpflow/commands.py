"""AMF0 command payloads and protocol control messages exchanged on a connection."""

from __future__ import annotations

import struct
from typing import Any, Dict, Mapping, Optional

from .amf import AmfEncoder
from .chunk import RtmpMessage

FMS_VERSION = "FMS/4,5,0,297"
FMS_CAPABILITIES = 255.0
FMS_MODE = 1.0
CONNECT_SUCCESS = "NetConnection.Connect.Success"
_MAX_UINT32 = 0xFFFFFFFF


def _command(name: str, transaction_id: float) -> AmfEncoder:
    encoder = AmfEncoder()
    encoder.encode_string(name)
    encoder.encode_number(transaction_id)
    return encoder


def connect_command(
    transaction_id: float,
    app: str,
    swf_url: Optional[str] = None,
    tc_url: Optional[str] = None,
) -> bytes:
    """The ``connect`` command a publisher or player sends first."""
    encoder = _command("connect", transaction_id)
    objects: Dict[str, Any] = {"app": app, "type": "nonprivate"}
    if swf_url is not None:
        objects["swfUrl"] = swf_url
    if tc_url is not None:
        objects["tcUrl"] = tc_url
    encoder.encode_objects(objects)
    return encoder.data


def create_stream_command(transaction_id: float) -> bytes:
    """The ``createStream`` command."""
    encoder = _command("createStream", transaction_id)
    encoder.encode_objects({})
    return encoder.data


def publish_command(transaction_id: float, stream_name: str) -> bytes:
    """The ``publish`` command for ``stream_name``."""
    encoder = _command("publish", transaction_id)
    encoder.encode_objects({})
    encoder.encode_string(stream_name)
    return encoder.data


def play_command(transaction_id: float, stream_name: str) -> bytes:
    """The ``play`` command for ``stream_name``."""
    encoder = _command("play", transaction_id)
    encoder.encode_objects({})
    encoder.encode_string(stream_name)
    return encoder.data


def delete_stream_command(transaction_id: float, stream_id: int) -> bytes:
    """The ``DeleteStream`` command for the message stream ``stream_id``."""
    encoder = _command("DeleteStream", transaction_id)
    encoder.encode_objects({})
    encoder.encode_number(stream_id)
    return encoder.data


def connect_result(transaction_id: float) -> bytes:
    """The server's successful reply to ``connect``."""
    encoder = _command("_result", transaction_id)
    encoder.encode_objects({
        "fmsVer": FMS_VERSION,
        "capabilities": FMS_CAPABILITIES,
        "mode": FMS_MODE,
    })
    encoder.encode_objects({
        "level": "status",
        "code": CONNECT_SUCCESS,
        "description": "Connection succeeded.",
        "objectEncoding": 0.0,
    })
    return encoder.data


def create_stream_result(transaction_id: float, stream_id: int) -> bytes:
    """The server's reply to ``createStream`` carrying the new stream id."""
    encoder = _command("_result", transaction_id)
    encoder.encode_objects({})
    encoder.encode_number(stream_id)
    return encoder.data


def on_status(level: str, code: str, description: str) -> bytes:
    """An ``onStatus`` notification with the given status object."""
    encoder = _command("onStatus", 0)
    encoder.encode_objects({})
    encoder.encode_objects({"level": level, "code": code, "description": description})
    return encoder.data


def sample_access() -> bytes:
    """The ``|RtmpSampleAccess`` data message sent to a new player."""
    encoder = AmfEncoder()
    encoder.encode_string("|RtmpSampleAccess")
    encoder.encode_boolean(True)
    encoder.encode_boolean(True)
    return encoder.data


def meta_data_message(meta_data: Mapping[str, Any]) -> bytes:
    """An ``onMetaData`` data message; raises ValueError for empty metadata."""
    if not meta_data:
        raise ValueError("metadata is empty")
    encoder = AmfEncoder()
    encoder.encode_string("onMetaData")
    encoder.encode_ecma(meta_data)
    return encoder.data


def control_message(message_type: int, value: int, extra: Optional[int] = None) -> RtmpMessage:
    """A protocol control message whose payload is a 32-bit value.

    ``extra``, when given, is appended as one byte (the limit type of a
    peer bandwidth message).
    """
    if not 0 <= value <= _MAX_UINT32:
        raise ValueError(f"control value {value} out of range")
    payload = struct.pack(">I", value)
    if extra is not None:
        if not 0 <= extra <= 0xFF:
            raise ValueError(f"control extra byte {extra} out of range")
        payload += bytes([extra])
    return RtmpMessage(type_id=message_type, payload=payload, length=len(payload))