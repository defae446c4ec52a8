import base64
import queue
import socket
import threading

import pytest

from greatws.callback import Callback
from greatws.client import (
    accept_key,
    dial,
    dial_config,
    generate_key,
    options_to_config,
)
from greatws.config import (
    DialOption,
    with_bind_http_header,
    with_decompress_and_compress,
    with_event_loop,
    with_http_header,
    with_on_message_func,
    with_reply_ping,
)
from greatws.eventloop import EventLoop
from greatws.protocol import (
    FrameParser,
    Opcode,
    ProtocolViolation,
    decompress_message,
    encode_frame,
)


def _read_request(conn):
    buf = b""
    while b"\r\n\r\n" not in buf:
        chunk = conn.recv(4096)
        if not chunk:
            raise ConnectionError("client went away")
        buf += chunk
    head = buf.split(b"\r\n\r\n", 1)[0].decode("latin-1")
    first, *lines = head.split("\r\n")
    headers = {}
    for line in lines:
        name, _, value = line.partition(":")
        headers[name.strip().lower()] = value.strip()
    return {"path": first.split(" ")[1], "headers": headers}


def _switching(request, extra=""):
    key = request["headers"]["sec-websocket-key"]
    return (
        "HTTP/1.1 101 Switching Protocols\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Accept: {accept_key(key)}\r\n"
        f"{extra}\r\n"
    ).encode("latin-1")


def _drain(conn):
    try:
        while conn.recv(4096):
            pass
    except OSError:
        pass


def _read_frame(conn):
    parser = FrameParser()
    while True:
        data = conn.recv(4096)
        if not data:
            raise ConnectionError("client went away")
        frames = parser.feed(data)
        if frames:
            return frames[0]


class _Server:
    def __init__(self, handler):
        self.handler = handler
        self.requests = []
        self.errors = []
        self._stop = threading.Event()
        self._listener = socket.create_server(("127.0.0.1", 0))
        self._listener.settimeout(0.1)
        port = self._listener.getsockname()[1]
        self.url = f"ws://127.0.0.1:{port}/path?x=1"
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self):
        while not self._stop.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with conn:
                conn.settimeout(3)
                try:
                    request = _read_request(conn)
                    self.requests.append(request)
                    self.handler(conn, request)
                except OSError as exc:
                    self.errors.append(exc)

    def close(self):
        self._stop.set()
        self._thread.join(5)
        self._listener.close()


@pytest.fixture
def loop():
    ev = EventLoop(poll_interval=0.02)
    ev.start()
    yield ev
    ev.stop()


def test_accept_key_rfc_example():
    assert accept_key("dGhlIHNhbXBsZSBub25jZQ==") == "s3pPLMBiTxaQ9kYGzzhZRbK+xOo="


def test_generate_key_is_random_16_bytes():
    first, second = generate_key(), generate_key()
    assert len(base64.b64decode(first)) == 16
    assert first != second


def _status_200(conn, request):
    conn.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 0\r\n\r\n")


def _no_upgrade(conn, request):
    conn.sendall(b"HTTP/1.1 101 Switching Protocols\r\n\r\n")


def _bad_connection(conn, request):
    conn.sendall(
        b"HTTP/1.1 101 Switching Protocols\r\nUpgrade: websocket\r\nConnection: xx\r\n\r\n"
    )


def _no_accept(conn, request):
    conn.sendall(
        b"HTTP/1.1 101 Switching Protocols\r\nUpgrade: websocket\r\nConnection: Upgrade\r\n\r\n"
    )


BAD_RESPONSES = [_status_200, _no_upgrade, _bad_connection, _no_accept]


@pytest.mark.parametrize("respond", BAD_RESPONSES)
def test_dial_rejects_bad_response(loop, respond):
    server = _Server(respond)
    try:
        with pytest.raises(ProtocolViolation):
            dial(server.url, with_event_loop(loop))
    finally:
        server.close()


@pytest.mark.parametrize("respond", BAD_RESPONSES)
def test_dial_config_rejects_bad_response(loop, respond):
    server = _Server(respond)
    try:
        config = options_to_config(with_event_loop(loop))
        with pytest.raises(ProtocolViolation):
            dial_config(server.url, config)
    finally:
        server.close()


def test_request_carries_handshake_headers(loop):
    server = _Server(_status_200)
    try:
        with pytest.raises(ProtocolViolation):
            dial(
                server.url,
                with_event_loop(loop),
                with_http_header({"X-Test": "value"}),
                with_decompress_and_compress(),
            )
    finally:
        server.close()
    request = server.requests[0]
    headers = request["headers"]
    assert request["path"] == "/path?x=1"
    assert headers["upgrade"] == "websocket"
    assert headers["connection"] == "Upgrade"
    assert headers["sec-websocket-version"] == "13"
    assert headers["x-test"] == "value"
    assert headers["sec-websocket-extensions"].startswith("permessage-deflate")
    assert len(base64.b64decode(headers["sec-websocket-key"])) == 16


def test_dial_exchanges_frames(loop):
    from_client = queue.Queue()

    def handler(conn, request):
        conn.sendall(_switching(request))
        conn.sendall(encode_frame(b"hello", Opcode.BINARY))
        from_client.put(_read_frame(conn))
        _drain(conn)

    received = queue.Queue()
    server = _Server(handler)
    try:
        conn = dial(
            server.url,
            with_event_loop(loop),
            with_on_message_func(lambda c, op, payload: received.put((op, payload))),
        )
        assert received.get(timeout=3) == (Opcode.BINARY, b"hello")
        conn.write_message(Opcode.BINARY, b"ping!")
        frame = from_client.get(timeout=3)
        assert frame.payload == b"ping!"
        assert frame.header.masked is True
        assert frame.opcode == Opcode.BINARY
        conn.close()
        assert conn.closed
    finally:
        server.close()


def test_dial_calls_on_open(loop):
    opened = []

    class Recorder(Callback):
        def on_open(self, conn):
            opened.append(conn)

    def handler(conn, request):
        conn.sendall(_switching(request))
        _drain(conn)

    from greatws.config import with_callback

    server = _Server(handler)
    try:
        conn = dial(server.url, with_event_loop(loop), with_callback(Recorder()))
        assert opened == [conn]
        conn.close()
    finally:
        server.close()


def test_bind_http_header_receives_response_headers(loop):
    def handler(conn, request):
        conn.sendall(_switching(request, "X-Server: demo\r\n"))
        _drain(conn)

    bound = {"stale": "1"}
    server = _Server(handler)
    try:
        conn = dial(server.url, with_event_loop(loop), with_bind_http_header(bound))
        conn.close()
    finally:
        server.close()
    assert bound["X-Server"] == "demo"
    assert bound["Upgrade"] == "websocket"
    assert "stale" not in bound


def test_deflate_negotiated_and_used(loop):
    from_client = queue.Queue()
    extension = (
        "Sec-WebSocket-Extensions: permessage-deflate; "
        "server_no_context_takeover; client_no_context_takeover\r\n"
    )

    def handler(conn, request):
        conn.sendall(_switching(request, extension))
        from_client.put(_read_frame(conn))
        _drain(conn)

    server = _Server(handler)
    try:
        conn = dial(server.url, with_event_loop(loop), with_decompress_and_compress())
        assert conn.deflate.compression is True
        assert conn.deflate.decompression is True
        conn.write_message(Opcode.TEXT, b"hello hello hello")
        frame = from_client.get(timeout=3)
        assert frame.header.rsv1 is True
        assert decompress_message(frame.payload) == b"hello hello hello"
        conn.close()
    finally:
        server.close()


def test_deflate_off_when_server_declines(loop):
    def handler(conn, request):
        conn.sendall(_switching(request))
        _drain(conn)

    server = _Server(handler)
    try:
        conn = dial(server.url, with_event_loop(loop), with_decompress_and_compress())
        assert conn.deflate.compression is False
        assert conn.deflate.decompression is False
        conn.close()
    finally:
        server.close()


def test_unknown_scheme_rejected(loop):
    with pytest.raises(ValueError):
        dial("http://127.0.0.1:1/", with_event_loop(loop))


def test_dial_config_without_event_loop():
    with pytest.raises(RuntimeError):
        dial_config("ws://127.0.0.1:1/", DialOption())


def test_dial_config_with_stopped_event_loop():
    idle = EventLoop()
    try:
        with pytest.raises(RuntimeError):
            dial_config("ws://127.0.0.1:1/", DialOption(event_loop=idle))
    finally:
        idle.stop()


def test_options_to_config_applies_options_and_starts_loop():
    ev = EventLoop(poll_interval=0.02)
    try:
        config = options_to_config(with_event_loop(ev), with_reply_ping())
        assert config.event_loop is ev
        assert config.reply_ping is True
        assert ev.running is True
    finally:
        ev.stop()