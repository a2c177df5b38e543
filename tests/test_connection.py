import struct

import pytest

from rtmpflow.chunk import RtmpChunk, RtmpMessage
from rtmpflow.commands import connect_command, connect_result, control_message, meta_data_message
from rtmpflow.connection import ConnectionMode, ConnectionState, RtmpConnection
from rtmpflow.rtmp import (
    RTMP_ACK_SIZE,
    RTMP_AUDIO,
    RTMP_AVC_SEQUENCE_HEADER,
    RTMP_BANDWIDTH_SIZE,
    RTMP_FLEX_MESSAGE,
    RTMP_INVOKE,
    RTMP_NOTIFY,
    RTMP_SET_CHUNK_SIZE,
    RTMP_VIDEO,
    Rtmp,
)
from rtmpflow.session import RtmpSession

URL = "rtmp://127.0.0.1:1935/live/test"
PATH = "/live/test"
SEQ = bytes([0x17, 0x00, 0, 0, 0, 1, 2, 3])
KEY = bytes([0x17, 0x01, 0, 0, 0, 0, 0, 0, 2, 0x65, 0x88])
INTER = bytes([0x27, 0x01, 0, 0, 0, 0, 0, 0, 2, 0x41, 0x9A])


class FakeServer(Rtmp):
    def __init__(self):
        super().__init__()
        self.sessions = {}
        self.events = []

    def add_session(self, path):
        self.sessions.setdefault(path, RtmpSession())

    def get_session(self, path):
        return self.sessions.setdefault(path, RtmpSession())

    def has_publisher(self, path):
        return self.get_session(path).publisher() is not None

    def notify_event(self, event_type, path):
        self.events.append((event_type, path))


def settings():
    owner = Rtmp()
    owner.parse_rtmp_url(URL)
    return owner


def pump(peer, server_side, to_server, to_peer):
    while to_server or to_peer:
        if to_server:
            server_side.feed(to_server.pop(0))
        if to_peer:
            peer.feed(to_peer.pop(0))


def messages(data):
    return list(RtmpChunk().parse(bytearray(data)))


def chunked(type_id, payload, stream_id=0, csid=3, chunk_size=128):
    builder = RtmpChunk()
    builder.out_chunk_size = chunk_size
    return builder.create_chunk(csid, RtmpMessage(type_id=type_id, stream_id=stream_id, payload=payload))


def handshaken_server():
    out = []
    server = FakeServer()
    conn = RtmpConnection(ConnectionMode.SERVER, server, out.append)
    conn.feed(b"\x03" + bytes(1536))
    conn.feed(bytes(1536))
    out.clear()
    return conn, out, server


def test_server_handshake_echoes_c1():
    out = []
    conn = RtmpConnection(ConnectionMode.SERVER, FakeServer(), out.append)
    c1 = bytes(range(256)) * 6
    assert conn.feed(b"\x03" + c1)
    reply = b"".join(out)
    assert len(reply) == 1 + 1536 + 1536
    assert reply[0] == 3
    assert reply[1537:] == c1


def test_bad_handshake_version_closes():
    conn = RtmpConnection(ConnectionMode.SERVER, FakeServer(), lambda data: None)
    assert conn.feed(b"\x06" + bytes(1536)) is False
    assert conn.is_closed()


def test_server_connect_reply():
    conn, out, _ = handshaken_server()
    assert conn.feed(chunked(RTMP_INVOKE, connect_command(1, "live")))
    msgs = messages(b"".join(out))
    assert [m.type_id for m in msgs] == [RTMP_ACK_SIZE, RTMP_BANDWIDTH_SIZE, RTMP_SET_CHUNK_SIZE, RTMP_INVOKE]
    assert msgs[0].payload == struct.pack(">I", 5000000)
    assert msgs[1].payload == struct.pack(">I", 5000000) + b"\x02"
    assert msgs[2].payload == struct.pack(">I", 128)
    assert msgs[3].payload == connect_result(1)
    assert conn.app == "live"


def test_connect_without_app_fails():
    conn, _, _ = handshaken_server()
    assert conn.feed(chunked(RTMP_INVOKE, connect_command(1, ""))) is False
    assert conn.is_closed()


def test_flex_message_fails():
    conn, _, _ = handshaken_server()
    assert conn.feed(chunked(RTMP_FLEX_MESSAGE, b"\x00\x01")) is False
    assert conn.is_closed()


def test_set_chunk_size_applies_to_incoming_chunks():
    conn, _, _ = handshaken_server()
    assert conn.feed(chunked(RTMP_SET_CHUNK_SIZE, struct.pack(">I", 4096), csid=2))
    app = "a" * 300
    assert conn.feed(chunked(RTMP_INVOKE, connect_command(1, app), chunk_size=4096))
    assert conn.app == app


def test_set_chunk_size_zero_fails():
    conn, _, _ = handshaken_server()
    assert conn.feed(chunked(RTMP_SET_CHUNK_SIZE, bytes(4), csid=2)) is False


def test_publish_flow():
    server = FakeServer()
    to_server, to_peer = [], []
    peer = RtmpConnection(ConnectionMode.PUBLISHER, settings(), to_server.append)
    server_side = RtmpConnection(ConnectionMode.SERVER, server, to_peer.append)
    peer.handshake()
    pump(peer, server_side, to_server, to_peer)
    assert peer.is_publishing()
    assert peer.status() == "NetStream.Publish.Start"
    assert peer.stream_id == 1
    assert server_side.is_publisher()
    assert server_side.stream_path == PATH
    assert server.events == [("publish.start", PATH)]
    assert server.sessions[PATH].publisher() is server_side


def test_second_publisher_is_rejected():
    server = FakeServer()
    first_to_server, first_to_peer = [], []
    first_peer = RtmpConnection(ConnectionMode.PUBLISHER, settings(), first_to_server.append)
    first_server = RtmpConnection(ConnectionMode.SERVER, server, first_to_peer.append)
    first_peer.handshake()
    pump(first_peer, first_server, first_to_server, first_to_peer)

    second_to_server, second_to_peer = [], []
    second_peer = RtmpConnection(ConnectionMode.PUBLISHER, settings(), second_to_server.append)
    second_server = RtmpConnection(ConnectionMode.SERVER, server, second_to_peer.append)
    second_peer.handshake()
    pump(second_peer, second_server, second_to_server, second_to_peer)

    assert second_peer.status() == "NetStream.Publish.BadName"
    assert second_peer.is_closed()
    assert not second_peer.is_publishing()
    assert server.has_publisher(PATH)


def test_play_flow_delivers_frames_after_key_frame():
    server = FakeServer()
    pub_to_server, pub_to_peer = [], []
    pub_peer = RtmpConnection(ConnectionMode.PUBLISHER, settings(), pub_to_server.append)
    pub_server = RtmpConnection(ConnectionMode.SERVER, server, pub_to_peer.append)
    pub_peer.handshake()
    pump(pub_peer, pub_server, pub_to_server, pub_to_peer)

    frames = []
    play_to_server, play_to_peer = [], []
    play_peer = RtmpConnection(
        ConnectionMode.CLIENT, settings(), play_to_server.append,
        play_callback=lambda *args: frames.append(args),
    )
    play_server = RtmpConnection(ConnectionMode.SERVER, server, play_to_peer.append)
    play_peer.handshake()
    pump(play_peer, play_server, play_to_server, play_to_peer)

    assert play_peer.is_playing()
    assert play_peer.status() == "NetStream.Play.Start"
    assert ("play.start", PATH) in server.events
    assert play_server.is_player()

    pub_peer.send_video_data(0, SEQ)
    pub_peer.send_video_data(20, INTER)
    pub_peer.send_video_data(40, KEY)
    pump(pub_peer, pub_server, pub_to_server, pub_to_peer)
    pump(play_peer, play_server, play_to_server, play_to_peer)

    payloads = [frame[0] for frame in frames]
    assert INTER not in payloads
    assert payloads[0] == SEQ
    assert frames[-1] == (KEY, 7, 40)
    assert server.sessions[PATH].avc_sequence_header == SEQ


def test_server_close_stops_publishing():
    server = FakeServer()
    to_server, to_peer = [], []
    peer = RtmpConnection(ConnectionMode.PUBLISHER, settings(), to_server.append)
    server_side = RtmpConnection(ConnectionMode.SERVER, server, to_peer.append)
    peer.handshake()
    pump(peer, server_side, to_server, to_peer)
    server_side.close()
    assert server_side.is_closed()
    assert not server_side.is_publishing()
    assert ("publish.stop", PATH) in server.events
    assert server.sessions[PATH].publisher() is None


def test_status_defaults_to_unknown_error():
    conn = RtmpConnection(ConnectionMode.CLIENT, settings(), lambda data: None)
    assert conn.status() == "unknown error"
    assert conn.state is ConnectionState.HANDSHAKE


def test_send_meta_data():
    out = []
    conn = RtmpConnection(ConnectionMode.SERVER, FakeServer(), out.append)
    assert conn.send_meta_data({}) is False
    assert conn.send_meta_data({"width": 640.0})
    msgs = messages(b"".join(out))
    assert len(msgs) == 1
    assert msgs[0].type_id == RTMP_NOTIFY
    assert msgs[0].payload == meta_data_message({"width": 640.0})


def test_send_media_data_waits_for_key_frame():
    out = []
    conn = RtmpConnection(ConnectionMode.SERVER, FakeServer(), out.append)
    assert conn.send_media_data(RTMP_AVC_SEQUENCE_HEADER, 0, SEQ)
    assert conn.send_media_data(RTMP_VIDEO, 10, INTER)
    assert conn.send_media_data(RTMP_VIDEO, 20, KEY)
    assert conn.send_media_data(RTMP_VIDEO, 30, INTER)
    msgs = messages(b"".join(out))
    assert [m.payload for m in msgs] == [SEQ, KEY, INTER]
    assert all(m.type_id == RTMP_VIDEO for m in msgs)
    assert [m.timestamp for m in msgs] == [0, 20, 30]
    assert conn.is_playing()
    assert conn.has_key_frame


def test_empty_payload_is_refused():
    conn = RtmpConnection(ConnectionMode.SERVER, FakeServer(), lambda data: None)
    assert conn.send_media_data(RTMP_VIDEO, 0, b"") is False
    assert conn.send_video_data(0, b"") is False
    assert conn.send_audio_data(0, b"") is False


def test_send_audio_data_uses_audio_type():
    out = []
    conn = RtmpConnection(ConnectionMode.SERVER, FakeServer(), out.append)
    assert conn.send_audio_data(5, b"\xaf\x01\x21")
    msgs = messages(b"".join(out))
    assert msgs[0].type_id == RTMP_AUDIO
    assert msgs[0].payload == b"\xaf\x01\x21"


def test_closed_connection_writes_nothing():
    out = []
    conn = RtmpConnection(ConnectionMode.SERVER, FakeServer(), out.append)
    conn.close()
    conn.send_video_data(0, KEY)
    assert out == []
    assert conn.feed(b"\x03") is False


def test_schedule_defers_media_sends():
    out = []
    tasks = []
    conn = RtmpConnection(ConnectionMode.SERVER, FakeServer(), out.append, schedule=tasks.append)
    conn.send_video_data(0, KEY)
    assert out == []
    assert len(tasks) == 1
    tasks.pop()()
    assert messages(b"".join(out))[0].payload == KEY


def test_explicit_sink_id_and_disconnect_callback():
    closed = []
    conn = RtmpConnection(
        ConnectionMode.SERVER, FakeServer(), lambda data: None, sink_id=42, on_disconnect=closed.append
    )
    assert conn.sink_id() == 42
    conn.close()
    conn.close()
    assert closed == [conn]


@pytest.mark.parametrize("mode", [ConnectionMode.PUBLISHER, ConnectionMode.CLIENT])
def test_handshake_sends_c0c1(mode):
    out = []
    conn = RtmpConnection(mode, settings(), out.append)
    conn.handshake()
    data = b"".join(out)
    assert len(data) == 1537
    assert data[0] == 3
    assert control_message(RTMP_ACK_SIZE, 1).type_id == RTMP_ACK_SIZE