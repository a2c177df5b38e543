import socket
import time

import pytest

from rtmpflow.publisher import PublishError, RtmpPublisher, is_key_frame
from rtmpflow.rtmp import MediaInfo
from rtmpflow.server import RtmpServer

SPS = b"\x67\x64\x00\x1f\xac\xd9"
PPS = b"\x68\xee\x3c\x80"
KEY_FRAME = b"\x00\x00\x00\x01\x65" + bytes(range(200))
P_FRAME = b"\x00\x00\x00\x01\x41" + bytes(range(50))


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def unused_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def running():
    server = RtmpServer()
    events = []
    server.set_event_callback(lambda kind, path: events.append((kind, path)))
    port = server.start("127.0.0.1", 0)
    yield server, port, events
    server.stop()


@pytest.mark.parametrize(
    "data, expected",
    [
        (b"\x00\x00\x00\x01\x65\x88", True),
        (b"\x00\x00\x01\x67\x64\x00", True),
        (b"\x00\x00\x00\x01\x41\x9a", False),
        (b"\x65\x88\x84", True),
        (b"\x00\x00\x01", False),
    ],
)
def test_is_key_frame(data, expected):
    assert is_key_frame(data) is expected


@pytest.mark.parametrize(
    "config, rate",
    [(b"\x12\x10", 44100), (b"\x11\x90", 48000)],
)
def test_set_media_info_reads_aac_config(config, rate):
    publisher = RtmpPublisher()
    publisher.set_media_info(MediaInfo(audio_specific_config=config))
    assert publisher.media_info.audio_samplerate == rate
    assert publisher.media_info.audio_channel == 2
    assert publisher.aac_sequence_header == b"\xaf\x00" + config


def test_set_media_info_without_aac_config_disables_audio():
    publisher = RtmpPublisher()
    publisher.set_media_info(MediaInfo())
    assert publisher.media_info.audio_codec_id == 0
    assert publisher.aac_sequence_header == b""


def test_set_media_info_rejects_short_aac_config():
    with pytest.raises(ValueError):
        RtmpPublisher().set_media_info(MediaInfo(audio_specific_config=b"\x12"))


def test_set_media_info_builds_avc_header():
    publisher = RtmpPublisher()
    publisher.set_media_info(MediaInfo(sps=SPS, pps=PPS))
    header = publisher.avc_sequence_header
    assert header[:5] == b"\x17\x00\x00\x00\x00"
    assert header[5:9] == b"\x01" + SPS[1:4]
    assert SPS in header
    assert header.endswith(PPS)


def test_set_media_info_without_sps_disables_video():
    publisher = RtmpPublisher()
    publisher.set_media_info(MediaInfo(pps=PPS))
    assert publisher.media_info.video_codec_id == 0


def test_push_without_connection_raises():
    publisher = RtmpPublisher()
    with pytest.raises(PublishError):
        publisher.push_video_frame(KEY_FRAME)
    with pytest.raises(PublishError):
        publisher.push_audio_frame(b"\x21\x10")


def test_open_illegal_url_raises():
    publisher = RtmpPublisher()
    with pytest.raises(PublishError):
        publisher.open_url("http://127.0.0.1/live/cam", 500)
    assert publisher.is_connected() is False


def test_open_unreachable_server_raises():
    publisher = RtmpPublisher()
    with pytest.raises(PublishError):
        publisher.open_url(f"rtmp://127.0.0.1:{unused_port()}/live/cam", 500)


def test_second_publisher_gets_bad_name(running):
    _server, port, _events = running
    url = f"rtmp://127.0.0.1:{port}/live/dup"
    first = RtmpPublisher()
    second = RtmpPublisher()
    try:
        first.open_url(url, 3000)
        with pytest.raises(PublishError) as info:
            second.open_url(url, 3000)
        assert info.value.status == "NetStream.Publish.BadName"
        assert first.is_connected() is True
    finally:
        first.close()
        second.close()