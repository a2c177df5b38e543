# rtmpflow

A live-streaming library built around the RTMP protocol, using only the
Python standard library.

- **RTMP server** (`RtmpServer`): accepts publishers and players and fans each
  published stream out to every player. An optional GOP cache lets a new
  player start on a key frame.
- **HTTP-FLV server** (`HttpFlvServer`): serves a stream that is being
  published to an attached RTMP server as `/<app>/<stream>.flv`.
- **Publisher** (`RtmpPublisher`): pushes H.264 and AAC frames to an RTMP server.
- **Client** (`RtmpClient`): plays an RTMP stream and hands each audio or video
  message to a callback.
- **Building blocks**: AMF0 encoding and decoding, the RTMP handshake and chunk
  stream, command payload builders, a transport-independent connection state
  machine, FLV header and tag writers, and an H.264 Annex B NAL unit finder.

## Modules

| Module                 | What it provides                                                                   |
|------------------------|------------------------------------------------------------------------------------|
| `rtmpflow.amf`         | `Amf0Type`, `AmfEncoder`, `AmfDecoder`                                             |
| `rtmpflow.rtmp`        | protocol constants, `MediaInfo`, `Rtmp` (chunk size, GOP cache, peer bandwidth, URL parsing) |
| `rtmpflow.h264`        | `find_nal`                                                                         |
| `rtmpflow.handshake`   | `RtmpHandshake`, `HandshakeState`, `HandshakeError`                                |
| `rtmpflow.chunk`       | `RtmpChunk`, `RtmpMessage`, `ChunkError`                                           |
| `rtmpflow.sink`        | `RtmpSink`, the interface every stream receiver implements                         |
| `rtmpflow.session`     | `RtmpSession`, `AVFrame`                                                           |
| `rtmpflow.flv`         | `flv_header`, `flv_tag`, `FlvSink`                                                 |
| `rtmpflow.commands`    | builders for connect, createStream, publish, play, DeleteStream, `_result`, `onStatus`, metadata and control messages |
| `rtmpflow.connection`  | `RtmpConnection`, `ConnectionMode`, `ConnectionState`                              |
| `rtmpflow.server`      | `RtmpServer`                                                                       |
| `rtmpflow.publisher`   | `RtmpPublisher`, `PublishError`, `is_key_frame`                                    |
| `rtmpflow.client`      | `RtmpClient`, `PlayError`                                                          |
| `rtmpflow.http_flv`    | `HttpFlvServer`, `HttpConnection`                                                  |

## Running a server

```python
from rtmpflow.http_flv import HttpFlvServer
from rtmpflow.server import RtmpServer

rtmp = RtmpServer()
rtmp.set_gop_cache()  # cache up to 5000 messages per GOP
rtmp.set_event_callback(lambda event, path: print(event, path))
rtmp_port = rtmp.start("0.0.0.0", 1935)

flv = HttpFlvServer()
flv.attach(rtmp)      # held by weak reference: keep `rtmp` alive
http_port = flv.start("0.0.0.0", 8080)

...

flv.stop()
rtmp.stop()
```

`start` returns the port actually bound, so port 0 picks a free one. The
event callback receives `(event_type, stream_path)` for `publish.start`,
`publish.stop`, `play.start`, `play.stop`, `http-flv.play` and
`http-flv.stop`. Sessions without any live sink are dropped every 30 seconds
(`purge_idle_sessions` does it on demand).

`HttpFlvServer.route(uri)` decides each request:

- **200** with `Content-Type: video/x-flv`, then the FLV stream, when the URI
  contains `.flv` and the path before it has a publisher;
- **400** when the URI does not contain `.flv`;
- **404** when the stream has no publisher;
- **500** when no RTMP server is attached (or it has been garbage collected).

## Publishing

```python
from rtmpflow.publisher import PublishError, RtmpPublisher
from rtmpflow.rtmp import MediaInfo

publisher = RtmpPublisher()
publisher.set_media_info(MediaInfo(sps=sps, pps=pps, audio_specific_config=b"\x12\x10"))
try:
    status = publisher.open_url("rtmp://localhost/live/demo", 5000)
except PublishError as exc:
    print("refused:", exc.status)
else:
    publisher.push_video_frame(annexb_frame)
    publisher.push_audio_frame(raw_aac_frame)
    publisher.close()
```

`set_media_info` builds the AVC sequence header from the SPS and PPS and the
AAC sequence header from the AudioSpecificConfig, from which it also sets the
sample rate and channel count. A codec whose configuration is missing is
switched off.

`push_video_frame` returns False and drops the frame until the first key
frame, that is a frame whose first NAL unit is an IDR slice or an SPS (see
`is_key_frame`); the sequence headers are sent just before it.
`push_audio_frame` likewise returns False before the first key frame.
Both raise `PublishError` when not connected.

## Playing

```python
from rtmpflow.client import PlayError, RtmpClient

client = RtmpClient()
client.set_frame_callback(lambda payload, codec_id, timestamp: ...)
status = client.open_url("rtmp://localhost:1935/live/demo", 5000)
```

The callback runs on a background thread with each audio and video message
payload. A failed connection raises `PlayError`, whose `status` holds the
server's code.

## RTMP URLs

`Rtmp.parse_rtmp_url` accepts `rtmp://host[:port]/app/stream`, the port
defaulting to 1935. It sets `ip`, `port`, `app`, `stream_name`,
`stream_path` (`/app/stream`), `tc_url` and `swf_url`, and raises
`ValueError` for anything else.

## Protocol building blocks

AMF0:

```python
from rtmpflow.amf import AmfDecoder, AmfEncoder

encoder = AmfEncoder()
encoder.encode_string("connect")
encoder.encode_number(1.0)
encoder.encode_objects({"app": "live", "type": "nonprivate"})

decoder = AmfDecoder()
decoder.decode(encoder.data)
decoder.get_object("app")   # "live"
```

The decoder reads numbers, booleans, strings, objects, ECMA arrays and null.

Chunks: `RtmpChunk.create_chunk(csid, message)` splits an `RtmpMessage` into
chunks of `out_chunk_size` bytes; `RtmpChunk.parse(buffer)` consumes a
`bytearray` and yields each completed message, leaving partial data in place.

`RtmpConnection` does no I/O of its own: give it a `send` callable, feed it
received bytes with `feed`, and it runs the handshake and the server,
publisher or player side of the protocol.

FLV: `flv_header(has_video, has_audio)` returns the nine-byte file header;
`flv_tag(tag_type, timestamp, payload)` returns the 11-byte tag header, the
payload and the trailing PreviousTagSize. Tag type 8 is audio, 9 is video.
`FlvSink` turns a stream into those bytes for any `send` callable.

`find_nal(data)` returns `(start, end)` of the first NAL unit after a start
code, or None.

## What it does not do

- There is no command-line program; servers are started from Python.
- The HTTP server serves only `.flv` streams: no static files or directory
  listings.
- Only the simple RTMP handshake is implemented; there is no authentication,
  RTMPS or AMF3.