import gc

from rtmpflow.rtmp import (
    RTMP_AAC_SEQUENCE_HEADER,
    RTMP_AUDIO,
    RTMP_AVC_SEQUENCE_HEADER,
    RTMP_VIDEO,
)
from rtmpflow.session import RtmpSession
from rtmpflow.sink import RtmpSink

KEY = bytes([0x17, 0x01, 0, 0, 0, 1])
INTER = bytes([0x27, 0x01, 0, 0, 0, 2])
AUDIO = bytes([0xAF, 0x01, 0x21])


class RecordingSink(RtmpSink):
    def __init__(self, ident, player=False, publisher=False, playing=False):
        self.ident = ident
        self.player = player
        self.publisher = publisher
        self.playing = playing
        self.calls = []

    def send_meta_data(self, meta_data):
        self.calls.append(("meta", dict(meta_data)))
        return True

    def send_media_data(self, media_type, timestamp, payload):
        self.calls.append(("media", media_type, timestamp, bytes(payload)))
        return True

    def send_video_data(self, timestamp, payload):
        self.calls.append(("video", timestamp, bytes(payload)))
        return True

    def send_audio_data(self, timestamp, payload):
        self.calls.append(("audio", timestamp, bytes(payload)))
        return True

    def is_player(self):
        return self.player

    def is_publisher(self):
        return self.publisher

    def is_playing(self):
        return self.playing

    def sink_id(self):
        return self.ident


def test_add_and_remove_sinks():
    session = RtmpSession()
    first, second = RecordingSink(1), RecordingSink(2, player=True)
    session.add_sink(first)
    session.add_sink(second)
    assert session.clients() == 2
    session.remove_sink(first)
    assert session.clients() == 1


def test_dead_sink_is_not_counted():
    session = RtmpSession()
    sink = RecordingSink(1, player=True)
    session.add_sink(sink)
    del sink
    gc.collect()
    assert session.clients() == 0


def test_publisher_tracking():
    session = RtmpSession()
    assert session.publisher() is None
    session.add_sink(RecordingSink(1, player=True))
    assert session.publisher() is None
    pub = RecordingSink(2, publisher=True)
    session.add_sink(pub)
    assert session.publisher() is pub
    assert session.has_publisher
    session.remove_sink(pub)
    assert session.publisher() is None
    assert not session.has_publisher


def test_new_player_gets_headers_first():
    session = RtmpSession()
    session.set_meta_data({"width": 640.0})
    session.set_avc_sequence_header(b"\x17\x00abc")
    session.set_aac_sequence_header(b"\xaf\x00de")
    player = RecordingSink(1, player=True)
    session.add_sink(player)
    session.send_media_data(RTMP_VIDEO, 40, KEY)
    assert player.calls == [
        ("meta", {"width": 640.0}),
        ("media", RTMP_AVC_SEQUENCE_HEADER, 0, b"\x17\x00abc"),
        ("media", RTMP_AAC_SEQUENCE_HEADER, 0, b"\xaf\x00de"),
        ("media", RTMP_VIDEO, 40, KEY),
    ]


def test_playing_player_gets_only_data_and_non_player_nothing():
    session = RtmpSession()
    player = RecordingSink(1, player=True, playing=True)
    other = RecordingSink(2)
    session.add_sink(player)
    session.add_sink(other)
    session.send_media_data(RTMP_AUDIO, 5, AUDIO)
    assert player.calls == [("media", RTMP_AUDIO, 5, AUDIO)]
    assert other.calls == []


def test_meta_data_goes_to_players_only():
    session = RtmpSession()
    player = RecordingSink(1, player=True, playing=True)
    other = RecordingSink(2)
    session.add_sink(player)
    session.add_sink(other)
    session.send_meta_data({"fps": 25.0})
    assert player.calls == [("meta", {"fps": 25.0})]
    assert other.calls == []


def test_gop_cache_is_replayed_to_new_player():
    session = RtmpSession()
    session.set_gop_cache(10)
    session.send_media_data(RTMP_VIDEO, 0, KEY)
    session.send_media_data(RTMP_VIDEO, 40, INTER)
    session.send_media_data(RTMP_AUDIO, 50, AUDIO)
    player = RecordingSink(1, player=True)
    session.add_sink(player)
    session.send_media_data(RTMP_VIDEO, 80, INTER)
    replayed = [call for call in player.calls if call[0] in ("video", "audio")]
    assert replayed == [
        ("video", 0, KEY),
        ("video", 40, INTER),
        ("audio", 50, AUDIO),
        ("video", 80, INTER),
    ]
    assert player.calls[-1] == ("media", RTMP_VIDEO, 80, INTER)


def test_gop_cache_keeps_two_gops():
    session = RtmpSession()
    session.set_gop_cache(10)
    for timestamp in (0, 100, 200):
        session.save_gop(RTMP_VIDEO, timestamp, KEY)
    player = RecordingSink(1, player=True)
    session.add_sink(player)
    session.send_media_data(RTMP_AUDIO, 300, AUDIO)
    replayed = [call for call in player.calls if call[0] == "video"]
    assert replayed == [("video", 100, KEY)]


def test_without_gop_cache_nothing_is_replayed():
    session = RtmpSession()
    session.send_media_data(RTMP_VIDEO, 0, KEY)
    player = RecordingSink(1, player=True)
    session.add_sink(player)
    session.send_media_data(RTMP_VIDEO, 40, INTER)
    assert [call for call in player.calls if call[0] == "video"] == []


def test_publisher_resets_sequence_headers():
    session = RtmpSession()
    session.set_avc_sequence_header(b"\x17\x00abc")
    session.add_sink(RecordingSink(1, publisher=True))
    player = RecordingSink(2, player=True)
    session.add_sink(player)
    session.send_media_data(RTMP_VIDEO, 0, KEY)
    assert ("media", RTMP_AVC_SEQUENCE_HEADER, 0, b"") in player.calls
    assert session.avc_sequence_header == b""