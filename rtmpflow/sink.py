"""The interface of anything that receives a stream's media."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping


class RtmpSink(ABC):
    """A receiver of stream data: a publisher, an RTMP player or an FLV viewer."""

    def send_meta_data(self, meta_data: Mapping[str, Any]) -> bool:
        return True

    @abstractmethod
    def send_media_data(self, media_type: int, timestamp: int, payload: bytes) -> bool:
        """Deliver a media message of ``media_type``."""

    @abstractmethod
    def send_video_data(self, timestamp: int, payload: bytes) -> bool:
        """Deliver a video message."""

    @abstractmethod
    def send_audio_data(self, timestamp: int, payload: bytes) -> bool:
        """Deliver an audio message."""

    def is_player(self) -> bool:
        return False

    def is_publisher(self) -> bool:
        return False

    def is_playing(self) -> bool:
        return False

    def is_publishing(self) -> bool:
        return False

    @abstractmethod
    def sink_id(self) -> int:
        """Identifier unique among the sinks of one session."""