"""The simple (unencrypted) RTMP handshake."""

from __future__ import annotations

import os
from enum import Enum

from .rtmp import RTMP_VERSION

HANDSHAKE_SIZE = 1536
_RANDOM_OFFSET = 9
_RANDOM_SIZE = HANDSHAKE_SIZE + 1 - _RANDOM_OFFSET


class HandshakeState(Enum):
    C0C1 = "c0c1"
    S0S1S2 = "s0s1s2"
    C2 = "c2"
    COMPLETE = "complete"


class HandshakeError(Exception):
    """Raised when the peer's handshake cannot be accepted."""


def _version_and_random() -> bytes:
    """Version byte, eight zero bytes (time and zero fields) and random filler."""
    return bytes([RTMP_VERSION]) + bytes(_RANDOM_OFFSET - 1) + os.urandom(_RANDOM_SIZE)


class RtmpHandshake:
    """Handshake state machine for either side of a connection.

    A server starts in ``C0C1``, waiting for the client's first packet; a
    client starts in ``S0S1S2`` after sending its own C0C1.
    """

    def __init__(self, state: HandshakeState) -> None:
        self.state = state

    def is_completed(self) -> bool:
        return self.state is HandshakeState.COMPLETE

    def build_c0c1(self) -> bytes:
        """Return the client's opening C0 and C1 packets."""
        return _version_and_random()

    def parse(self, buffer: bytearray) -> bytes:
        """Consume handshake bytes from ``buffer`` and return the reply.

        Returns an empty reply when more data is needed, in which case
        nothing is consumed.
        """
        available = len(buffer)

        if self.state is HandshakeState.S0S1S2:
            needed = 1 + 2 * HANDSHAKE_SIZE
            if available < needed:
                return b""
            self._check_version(buffer[0])
            reply = bytes(buffer[1:1 + HANDSHAKE_SIZE])
            self.state = HandshakeState.COMPLETE
        elif self.state is HandshakeState.C0C1:
            needed = 1 + HANDSHAKE_SIZE
            if available < needed:
                return b""
            self._check_version(buffer[0])
            reply = _version_and_random() + bytes(buffer[1:needed])
            self.state = HandshakeState.C2
        elif self.state is HandshakeState.C2:
            needed = HANDSHAKE_SIZE
            if available < needed:
                return b""
            reply = b""
            self.state = HandshakeState.COMPLETE
        else:
            raise HandshakeError("handshake already completed")

        del buffer[:needed]
        return reply

    @staticmethod
    def _check_version(version: int) -> None:
        if version != RTMP_VERSION:
            raise HandshakeError(f"unsupported rtmp version {version:#x}")