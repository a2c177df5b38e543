"""RTMP and HTTP-FLV live streaming: server, publisher, player and protocol building blocks."""

__version__ = "0.1.0"

__all__ = [
    "amf",
    "chunk",
    "client",
    "commands",
    "connection",
    "flv",
    "h264",
    "handshake",
    "http_flv",
    "publisher",
    "rtmp",
    "server",
    "session",
    "sink",
]