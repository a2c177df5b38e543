import pytest

from rtmpflow.rtmp import RTMP_VIDEO
from rtmpflow.session import RtmpSession
from rtmpflow.sink import RtmpSink


class MinimalSink(RtmpSink):
    def __init__(self, ident):
        self.ident = ident
        self.received = []

    def send_media_data(self, media_type, timestamp, payload):
        self.received.append((media_type, timestamp, payload))
        return True

    def send_video_data(self, timestamp, payload):
        return False

    def send_audio_data(self, timestamp, payload):
        return False

    def sink_id(self):
        return self.ident


def test_default_roles_are_false():
    sink = MinimalSink(3)
    assert RtmpSink.is_player(sink) is False
    assert RtmpSink.is_publisher(sink) is False
    assert RtmpSink.is_playing(sink) is False
    assert RtmpSink.is_publishing(sink) is False


def test_default_meta_data_accepted():
    assert RtmpSink.send_meta_data(MinimalSink(3), {"width": 640.0}) is True


def test_session_counts_sink_and_skips_non_player():
    sink = MinimalSink(9)
    session = RtmpSession()
    session.add_sink(sink)
    assert session.clients() == 1
    session.send_media_data(RTMP_VIDEO, 10, b"\x27\x01")
    assert sink.received == []
    session.remove_sink(sink)
    assert session.clients() == 0


def test_abstract_sink_cannot_be_created():
    with pytest.raises(TypeError):
        RtmpSink()