"""A published stream: its sinks, sequence headers and GOP cache."""

from __future__ import annotations

import threading
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from .rtmp import (
    RTMP_AAC_SEQUENCE_HEADER,
    RTMP_AUDIO,
    RTMP_AVC_SEQUENCE_HEADER,
    RTMP_CODEC_ID_AAC,
    RTMP_CODEC_ID_H264,
    RTMP_VIDEO,
)
from .sink import RtmpSink

_MAX_GOPS = 2


@dataclass
class AVFrame:
    """A cached audio or video message."""

    media_type: int
    timestamp: int
    payload: bytes


class RtmpSession:
    """Fans out one publisher's media to its players.

    Sinks are held by weak reference; a sink that has been garbage collected
    is dropped the next time the session walks its sinks.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.meta_data: Dict[str, Any] = {}
        self.has_publisher = False
        self._publisher: Optional[Callable[[], Optional[RtmpSink]]] = None
        self._sinks: Dict[int, "weakref.ReferenceType[RtmpSink]"] = {}
        self.avc_sequence_header = b""
        self.aac_sequence_header = b""
        self._gop_index = 0
        self.max_gop_cache_len = 0
        self._gop_cache: Dict[int, List[AVFrame]] = {}

    def set_meta_data(self, meta_data: Mapping[str, Any]) -> None:
        with self._lock:
            self.meta_data = dict(meta_data)

    def set_avc_sequence_header(self, header: bytes) -> None:
        with self._lock:
            self.avc_sequence_header = bytes(header)

    def set_aac_sequence_header(self, header: bytes) -> None:
        with self._lock:
            self.aac_sequence_header = bytes(header)

    def set_gop_cache(self, length: int) -> None:
        with self._lock:
            self.max_gop_cache_len = length

    def _reset_stream(self) -> None:
        self.avc_sequence_header = b""
        self.aac_sequence_header = b""
        self._gop_cache.clear()
        self._gop_index = 0

    def add_sink(self, sink: RtmpSink) -> None:
        with self._lock:
            self._sinks[sink.sink_id()] = weakref.ref(sink)
            if sink.is_publisher():
                self._reset_stream()
                self.has_publisher = True
                self._publisher = weakref.ref(sink)

    def remove_sink(self, sink: RtmpSink) -> None:
        with self._lock:
            if sink.is_publisher():
                self._reset_stream()
                self.has_publisher = False
                self._publisher = None
            self._sinks.pop(sink.sink_id(), None)

    def clients(self) -> int:
        """Number of sinks that are still alive."""
        with self._lock:
            return sum(1 for ref in self._sinks.values() if ref() is not None)

    def publisher(self) -> Optional[RtmpSink]:
        with self._lock:
            return self._publisher() if self._publisher is not None else None

    def _live_sinks(self) -> List[RtmpSink]:
        live = []
        for key, ref in list(self._sinks.items()):
            sink = ref()
            if sink is None:
                del self._sinks[key]
            else:
                live.append(sink)
        return live

    def send_meta_data(self, meta_data: Mapping[str, Any]) -> None:
        """Pass metadata on to every player."""
        with self._lock:
            for sink in self._live_sinks():
                if sink.is_player():
                    sink.send_meta_data(meta_data)

    def send_media_data(self, media_type: int, timestamp: int, payload: bytes) -> None:
        """Cache the message if GOP caching is on and pass it to every player.

        A player that is not playing yet first gets the metadata, both
        sequence headers and the cached GOP.
        """
        with self._lock:
            if self.max_gop_cache_len > 0:
                self._save_gop(media_type, timestamp, payload)

            for sink in self._live_sinks():
                if not sink.is_player():
                    continue
                if not sink.is_playing():
                    sink.send_meta_data(self.meta_data)
                    sink.send_media_data(RTMP_AVC_SEQUENCE_HEADER, 0, self.avc_sequence_header)
                    sink.send_media_data(RTMP_AAC_SEQUENCE_HEADER, 0, self.aac_sequence_header)
                    self._send_gop(sink)
                sink.send_media_data(media_type, timestamp, payload)

    def save_gop(self, media_type: int, timestamp: int, payload: bytes) -> None:
        """Add the message to the GOP cache when it belongs there."""
        with self._lock:
            self._save_gop(media_type, timestamp, payload)

    def _save_gop(self, media_type: int, timestamp: int, payload: bytes) -> None:
        if not payload:
            return
        gop = self._gop_cache.get(self._gop_index) if self._gop_cache else None
        keep = False

        if media_type == RTMP_VIDEO:
            frame_type = (payload[0] >> 4) & 0x0F
            codec_id = payload[0] & 0x0F
            if frame_type == 1 and codec_id == RTMP_CODEC_ID_H264:
                if len(payload) > 1 and payload[1] == 1 and self.max_gop_cache_len > 0:
                    if len(self._gop_cache) == _MAX_GOPS:
                        del self._gop_cache[min(self._gop_cache)]
                    self._gop_index += 1
                    gop = []
                    self._gop_cache[self._gop_index] = gop
                    keep = True
            elif codec_id == RTMP_CODEC_ID_H264 and gop is not None:
                keep = self.max_gop_cache_len > 0 and 1 <= len(gop) < self.max_gop_cache_len
        elif media_type == RTMP_AUDIO and gop is not None:
            sound_format = (payload[0] >> 4) & 0x0F
            if sound_format == RTMP_CODEC_ID_AAC:
                keep = (
                    self.max_gop_cache_len > 0
                    and 2 <= len(gop) < self.max_gop_cache_len
                    and timestamp > 0
                )

        if keep and gop is not None:
            gop.append(AVFrame(media_type, timestamp, bytes(payload)))

    def _send_gop(self, sink: RtmpSink) -> None:
        if not self._gop_cache:
            return
        for frame in self._gop_cache[min(self._gop_cache)]:
            if frame.media_type == RTMP_VIDEO:
                sink.send_video_data(frame.timestamp, frame.payload)
            elif frame.media_type == RTMP_AUDIO:
                sink.send_audio_data(frame.timestamp, frame.payload)