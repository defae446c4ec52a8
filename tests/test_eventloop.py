import selectors
import socket
import threading

import pytest

from greatws.callback import FuncCallback
from greatws.config import Config
from greatws.connection import Connection
from greatws.eventloop import EventLoop, default_event_loop
from greatws.protocol import ConnectionClosed, FrameParser, Opcode, encode_frame


def _make(loop, **config_kwargs):
    messages = []
    closes = []
    cb = FuncCallback(
        on_message=lambda c, op, data: messages.append((op, data)),
        on_close=lambda c, err: closes.append(err),
    )
    a, b = socket.socketpair()
    b.setblocking(False)
    config = Config(callback=cb, event_loop=loop, **config_kwargs)
    conn = Connection(a, client=False, config=config)
    return conn, b, messages, closes


def _read_frames(peer, loop, count, attempts=3000):
    parser = FrameParser()
    frames = []
    for _ in range(attempts):
        try:
            data = peer.recv(1 << 20)
        except BlockingIOError:
            data = b""
        if data:
            frames += parser.feed(data)
        if len(frames) >= count:
            break
        loop.poll(0.01)
    return frames


def test_api_name_of_select_selector():
    loop = EventLoop(selector=selectors.SelectSelector())
    assert loop.api_name() == "select"
    loop.stop()


def test_poll_delivers_message():
    loop = EventLoop()
    conn, peer, messages, _ = _make(loop)
    loop.add(conn)
    peer.sendall(encode_frame(b"hello", Opcode.BINARY, mask_key=0x12345678))
    handled = loop.poll(1.0)
    assert handled == 1
    assert messages == [(Opcode.BINARY, b"hello")]
    assert loop.read_events == 1
    assert loop.poll_count == 1
    loop.stop()
    peer.close()


def test_poll_without_data_returns_zero():
    loop = EventLoop()
    conn, peer, messages, _ = _make(loop)
    loop.add(conn)
    assert loop.poll(0) == 0
    assert messages == []
    loop.stop()
    peer.close()


def test_add_and_remove_track_connections():
    loop = EventLoop()
    conn, peer, _, _ = _make(loop)
    loop.add(conn)
    assert loop.connection_count == 1
    with pytest.raises(KeyError):
        loop.add(conn)
    loop.remove(conn)
    assert loop.connection_count == 0
    with pytest.raises(KeyError):
        loop.remove(conn)
    loop.stop()
    conn.close()
    peer.close()


def test_add_closed_connection_raises():
    loop = EventLoop()
    conn, peer, _, _ = _make(loop)
    conn.close()
    with pytest.raises(ConnectionClosed):
        loop.add(conn)
    loop.stop()
    peer.close()


def test_peer_close_closes_connection():
    loop = EventLoop()
    conn, peer, _, closes = _make(loop)
    loop.add(conn)
    peer.close()
    loop.poll(1.0)
    assert conn.closed
    assert len(closes) == 1
    assert isinstance(closes[0], EOFError)
    assert loop.connection_count == 0
    loop.stop()


def test_ping_is_answered_with_pong():
    loop = EventLoop()
    conn, peer, messages, _ = _make(loop, reply_ping=True)
    loop.add(conn)
    peer.sendall(encode_frame(b"hi", Opcode.PING, mask_key=1))
    loop.poll(1.0)
    frames = _read_frames(peer, loop, 1)
    assert [(f.opcode, f.payload) for f in frames] == [(Opcode.PONG, b"hi")]
    assert messages == [(Opcode.PING, b"hi")]
    loop.stop()
    peer.close()


def test_pending_write_is_flushed_when_writable():
    loop = EventLoop()
    conn, peer, _, _ = _make(loop)
    loop.add(conn)
    payload = bytes(range(256)) * (16 * 1024)
    conn.write_message(Opcode.BINARY, payload)
    frames = _read_frames(peer, loop, 1)
    assert len(frames) == 1
    assert frames[0].opcode == Opcode.BINARY
    assert frames[0].payload == payload
    assert loop.write_events >= 1
    loop.stop()
    peer.close()


def test_background_thread_dispatches():
    loop = EventLoop(poll_interval=0.05)
    got = threading.Event()
    received = []

    def on_message(c, op, data):
        received.append((op, data))
        got.set()

    a, b = socket.socketpair()
    conn = Connection(a, config=Config(callback=FuncCallback(on_message=on_message), event_loop=loop))
    loop.start()
    assert loop.running
    loop.add(conn)
    b.sendall(encode_frame(b"text", Opcode.TEXT, mask_key=7))
    assert got.wait(5.0)
    assert received == [(Opcode.TEXT, b"text")]
    loop.stop()
    assert not loop.running
    b.close()


def test_stop_closes_connections_and_prevents_restart():
    loop = EventLoop()
    conn, peer, _, closes = _make(loop)
    loop.add(conn)
    loop.stop()
    assert conn.closed
    assert len(closes) == 1
    assert loop.connection_count == 0
    with pytest.raises(RuntimeError):
        loop.start()
    with pytest.raises(RuntimeError):
        loop.poll(0)
    peer.close()


def test_context_manager_starts_and_stops():
    with EventLoop(poll_interval=0.05) as loop:
        assert loop.running
    assert not loop.running


def test_default_event_loop_is_shared_and_running():
    first = default_event_loop()
    second = default_event_loop()
    assert first is second
    assert first.running