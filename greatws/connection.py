"""A WebSocket connection over a non-blocking socket: frame handling,
buffered writes, deadlines and close bookkeeping."""

from __future__ import annotations

import contextlib
import random
import socket
import threading
from typing import Callable, List, Optional, Union

from .config import Config, DeflateConfig
from .protocol import (
    MAX_CONTROL_FRAME_SIZE,
    NORMAL_CLOSURE,
    PROTOCOL_ERROR,
    ConnectionClosed,
    Frame,
    FrameHeader,
    FrameParser,
    Opcode,
    ProtocolViolation,
    WebSocketError,
    close_payload,
    compress_message,
    decompress_message,
    parse_close_payload,
)

_READ_SIZE = 64 * 1024
_CONTROL_WRITE_TIMEOUT = 2.0


class _Deadline:
    """A resettable timer that runs an action once when it expires."""

    def __init__(self) -> None:
        self._timer: Optional[threading.Timer] = None

    def reset(self, seconds: float, action: Callable[[], None]) -> None:
        if seconds < 0:
            raise ValueError("invalid deadline")
        self.cancel()
        timer = threading.Timer(seconds, action)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class Connection:
    """One WebSocket connection.

    Incoming bytes are handed to :meth:`feed` (or read from the socket by
    :meth:`process_readable`); complete messages go to the configured
    callback. Writes that the socket cannot take at once are buffered and
    sent by :meth:`flush` when the socket becomes writable.
    """

    def __init__(
        self,
        sock: socket.socket,
        client: bool = False,
        config: Optional[Config] = None,
        deflate: Optional[DeflateConfig] = None,
    ) -> None:
        self.config = config if config is not None else Config()
        self.sock = sock
        self.client = client
        self.callback = self.config.callback
        self.deflate = deflate if deflate is not None else DeflateConfig()
        self._fd = sock.fileno()
        sock.setblocking(False)
        self._parser = FrameParser(self.config.read_max_message)
        self._fragment_header: Optional[FrameHeader] = None
        self._fragments: List[bytes] = []
        self._wbuf = bytearray()
        self._lock = threading.RLock()
        self._closed = False
        self._close_notified = False
        self._read_deadline = _Deadline()
        self._write_deadline = _Deadline()
        if self.config.read_timeout > 0:
            self._reset_read_deadline()

    # -- state -----------------------------------------------------------

    @property
    def closed(self) -> bool:
        """Whether the connection has been closed."""
        return self._closed

    def fileno(self) -> int:
        """The socket's file descriptor, or -1 once closed."""
        return self._fd

    # -- reading ---------------------------------------------------------

    def process_readable(self) -> None:
        """Read everything the socket has and process the frames in it."""
        if self._closed:
            return
        if self.config.read_timeout > 0:
            self._reset_read_deadline()
        while not self._closed:
            try:
                data = self.sock.recv(_READ_SIZE)
            except InterruptedError:
                continue
            except BlockingIOError:
                return
            except OSError as exc:
                self._close(exc)
                raise
            if not data:
                self._close(EOFError("connection closed by peer"))
                return
            self.feed(data)

    def feed(self, data: bytes) -> None:
        """Process received bytes; raises the protocol error that closed the connection."""
        if self._closed:
            return
        try:
            frames = self._parser.feed(data)
        except WebSocketError as exc:
            self._fail(exc.code, exc)
        for frame in frames:
            if self._closed:
                return
            self._handle(frame)

    def _fails_rsv1(self, op: Union[Opcode, int]) -> bool:
        if not self.deflate.decompression:
            return True
        return op not in (Opcode.TEXT, Opcode.BINARY)

    def _handle(self, frame: Frame) -> None:
        header = frame.header
        op = header.opcode
        effective = self._fragment_header.opcode if self._fragment_header else op
        if (header.rsv1 and self._fails_rsv1(effective)) or header.rsv2 or header.rsv3:
            self._fail(
                PROTOCOL_ERROR,
                ProtocolViolation(
                    f"reserved bits set: rsv1={header.rsv1} rsv2={header.rsv2} "
                    f"rsv3={header.rsv3} compression={self.deflate.compression}"
                ),
            )
        is_control = bool(int(op) & 0x8)

        if self._fragment_header is not None and not is_control:
            if op == Opcode.CONTINUATION:
                self._fragments.append(frame.payload)
                if header.fin:
                    first = self._fragment_header
                    payload = b"".join(self._fragments)
                    self._fragment_header = None
                    self._fragments = []
                    self._deliver(first, payload)
                return
            self._fail(PROTOCOL_ERROR, ProtocolViolation("unexpected opcode in fragmented message"))

        if op in (Opcode.TEXT, Opcode.BINARY):
            if not header.fin:
                self._fragment_header = header
                self._fragments = [frame.payload]
                return
            self._deliver(header, frame.payload)
            return

        if op in (Opcode.CLOSE, Opcode.PING, Opcode.PONG):
            self._handle_control(frame)
            return

        self._fail(PROTOCOL_ERROR, ProtocolViolation(f"unknown opcode {int(op)}"))

    def _deliver(self, header: FrameHeader, payload: bytes) -> None:
        if header.rsv1 and self.deflate.decompression:
            try:
                payload = decompress_message(payload)
            except WebSocketError as exc:
                self._close(exc)
                return
        if header.opcode == Opcode.TEXT and not self.config.utf8_check(payload):
            self._close(ProtocolViolation("text message is not valid UTF-8"))
            return
        self.callback.on_message(self, Opcode(header.opcode), payload)

    def _handle_control(self, frame: Frame) -> None:
        header = frame.header
        op = header.opcode
        payload = frame.payload
        if header.payload_len > MAX_CONTROL_FRAME_SIZE:
            self._fail(PROTOCOL_ERROR, ProtocolViolation("control frame too large"))
        if not header.fin:
            self._fail(PROTOCOL_ERROR, ProtocolViolation("control frame must not be fragmented"))

        if op == Opcode.CLOSE:
            if not payload:
                self._send_close(close_payload(NORMAL_CLOSURE))
                self._close(parse_close_payload(payload))
                return
            if len(payload) < 2:
                self._fail(PROTOCOL_ERROR, ProtocolViolation("close payload too small"))
            if not self.config.utf8_check(payload[2:]):
                self._fail(PROTOCOL_ERROR, ProtocolViolation("close reason is not valid UTF-8"))
            try:
                error = parse_close_payload(payload)
            except ProtocolViolation as exc:
                self._fail(PROTOCOL_ERROR, exc)
            try:
                self.write_timeout(Opcode.CLOSE, payload, _CONTROL_WRITE_TIMEOUT)
            except (OSError, WebSocketError) as exc:
                self._close(exc)
                raise
            self._close(error)
            return

        if op == Opcode.PING and self.config.reply_ping:
            try:
                self.write_timeout(Opcode.PONG, payload, _CONTROL_WRITE_TIMEOUT)
            except (OSError, WebSocketError) as exc:
                self._close(exc)
                raise
            self.callback.on_message(self, Opcode.PING, payload)
            return

        if op == Opcode.PONG and self.config.ignore_pong:
            return
        self.callback.on_message(self, Opcode(op), b"")

    # -- writing ---------------------------------------------------------

    def write_message(self, opcode: Union[Opcode, int], data: bytes) -> None:
        """Send one complete message as a single frame."""
        if self._closed:
            raise ConnectionClosed("connection closed")
        op = Opcode(opcode)
        data = bytes(data)
        if op == Opcode.TEXT and not self.config.utf8_check(data):
            raise ProtocolViolation("text message is not valid UTF-8")
        rsv1 = self.deflate.compression and op in (Opcode.TEXT, Opcode.BINARY)
        if rsv1:
            data = compress_message(data)
        mask_key = random.getrandbits(32) if self.client else None
        self._send(self._encode(data, op, rsv1, mask_key))

    @staticmethod
    def _encode(data: bytes, op: Opcode, rsv1: bool, mask_key: Optional[int]) -> bytes:
        from .protocol import encode_frame

        return encode_frame(data, op, True, rsv1, mask_key)

    def write_timeout(self, opcode: Union[Opcode, int], data: bytes, timeout: float) -> None:
        """Send a message; close the connection if the write deadline passes first."""
        self._write_deadline.reset(timeout, lambda: self._close(TimeoutError("write timeout")))
        try:
            self.write_message(opcode, data)
        finally:
            self._write_deadline.cancel()

    def write_control(self, opcode: Union[Opcode, int], data: bytes) -> None:
        """Send a control frame; its payload may be at most 125 bytes."""
        if len(data) > MAX_CONTROL_FRAME_SIZE:
            raise ProtocolViolation("control frame payload exceeds 125 bytes")
        self.write_message(opcode, data)

    def write_close_timeout(self, code: int, timeout: float) -> None:
        """Send a close frame carrying the given status code."""
        self.write_timeout(Opcode.CLOSE, close_payload(code), timeout)

    def write_ping(self, data: bytes) -> None:
        """Send a ping; the payload may be at most 125 bytes."""
        self.write_control(Opcode.PING, data)

    def write_pong(self, data: bytes) -> None:
        """Send a pong; the payload may be at most 125 bytes."""
        self.write_control(Opcode.PONG, data)

    def flush(self) -> None:
        """Write out data that an earlier write could not send."""
        with self._lock:
            self._flush_locked()

    def _send(self, data: bytes) -> None:
        with self._lock:
            if self._closed:
                raise ConnectionClosed("connection closed")
            if self._wbuf:
                self._flush_locked()
                if self._wbuf:
                    self._wbuf += data
                    return
            sent = self._write_all(data)
            if sent < len(data):
                self._wbuf += data[sent:]
                self._want_write()

    def _flush_locked(self) -> None:
        if self._closed:
            raise ConnectionClosed("connection closed")
        if not self._wbuf:
            return
        sent = self._write_all(bytes(self._wbuf))
        del self._wbuf[:sent]
        if self._wbuf:
            self._want_write()

    def _write_all(self, data: bytes) -> int:
        total = 0
        view = memoryview(data)
        while total < len(data):
            try:
                n = self.sock.send(view[total:])
            except InterruptedError:
                continue
            except BlockingIOError:
                return total
            except OSError as exc:
                self._close(exc)
                raise
            total += n
        return total

    def _want_write(self) -> None:
        loop = self.config.event_loop
        if loop is not None:
            loop.want_write(self)

    # -- closing ---------------------------------------------------------

    def close(self) -> None:
        """Close the connection; the callback's on_close runs once."""
        self._close(None)

    def _send_close(self, payload: bytes) -> None:
        with contextlib.suppress(OSError, WebSocketError):
            self.write_timeout(Opcode.CLOSE, payload, _CONTROL_WRITE_TIMEOUT)

    def _fail(self, code: int, error: BaseException) -> None:
        if not self._closed:
            self._send_close(close_payload(code))
        self._close(error)
        raise error

    def _reset_read_deadline(self) -> None:
        self._read_deadline.reset(
            self.config.read_timeout, lambda: self._close(TimeoutError("read timeout"))
        )

    def _close(self, error: Optional[BaseException]) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._read_deadline.cancel()
            self._write_deadline.cancel()
            loop = self.config.event_loop
            if loop is not None:
                with contextlib.suppress(KeyError, ValueError):
                    loop.remove(self)
            with contextlib.suppress(OSError):
                self.sock.close()
            self._fd = -1
        self._notify_close(error if error is not None else EOFError("connection closed"))

    def _notify_close(self, error: BaseException) -> None:
        with self._lock:
            if self._close_notified:
                return
            self._close_notified = True
        self.callback.on_close(self, error)