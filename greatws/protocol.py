"""WebSocket wire format: opcodes, frame encoding and parsing, close payloads
and permessage-deflate helpers."""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Union

MAX_CONTROL_FRAME_SIZE = 125
MAX_FRAME_HEADER_SIZE = 14

NORMAL_CLOSURE = 1000
GOING_AWAY = 1001
PROTOCOL_ERROR = 1002
UNSUPPORTED_DATA = 1003
INVALID_PAYLOAD = 1007
POLICY_VIOLATION = 1008
MESSAGE_TOO_BIG = 1009
MANDATORY_EXTENSION = 1010
INTERNAL_ERROR = 1011

_DEFLATE_TAIL = b"\x00\x00\xff\xff"


class Opcode(IntEnum):
    """Frame opcodes defined by the protocol."""

    CONTINUATION = 0x0
    TEXT = 0x1
    BINARY = 0x2
    CLOSE = 0x8
    PING = 0x9
    PONG = 0xA

    def is_control(self) -> bool:
        """Whether this is a control opcode (close, ping, pong)."""
        return bool(self.value & 0x8)


class WebSocketError(Exception):
    """Base class of errors raised by this package."""

    code = PROTOCOL_ERROR


class ProtocolViolation(WebSocketError):
    """The peer sent data that breaks the protocol."""

    code = PROTOCOL_ERROR


class MessageTooBig(WebSocketError):
    """An incoming frame is larger than the configured limit."""

    code = MESSAGE_TOO_BIG


class ConnectionClosed(WebSocketError):
    """The connection is already closed."""

    code = NORMAL_CLOSURE


class CloseError(WebSocketError):
    """A close frame with its status code and reason."""

    def __init__(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        super().__init__(f"close {code}: {reason}" if reason else f"close {code}")
        self.code = code
        self.reason = reason


@dataclass
class FrameHeader:
    """Decoded frame header. ``opcode`` is an Opcode, or the raw int if unknown."""

    fin: bool
    rsv1: bool
    rsv2: bool
    rsv3: bool
    opcode: Union[Opcode, int]
    masked: bool
    payload_len: int
    mask_key: int = 0


@dataclass
class Frame:
    """A complete frame; the payload is already unmasked."""

    header: FrameHeader
    payload: bytes

    @property
    def opcode(self) -> Union[Opcode, int]:
        return self.header.opcode

    @property
    def fin(self) -> bool:
        return self.header.fin


def _to_opcode(value: int) -> Union[Opcode, int]:
    try:
        return Opcode(value)
    except ValueError:
        return value


def apply_mask(data: bytes, mask_key: int) -> bytes:
    """XOR data with a 32-bit mask key whose wire order is little-endian."""
    n = len(data)
    if n == 0:
        return b""
    key = (mask_key & 0xFFFFFFFF).to_bytes(4, "little")
    stream = (key * (n // 4 + 1))[:n]
    return (int.from_bytes(data, "big") ^ int.from_bytes(stream, "big")).to_bytes(n, "big")


def encode_frame(
    payload: bytes,
    opcode: Union[Opcode, int],
    fin: bool = True,
    rsv1: bool = False,
    mask_key: Optional[int] = None,
) -> bytes:
    """Encode one frame; a mask key of None sends the payload unmasked."""
    payload = bytes(payload)
    first = (0x80 if fin else 0) | (0x40 if rsv1 else 0) | (int(opcode) & 0x0F)
    mask_bit = 0x80 if mask_key is not None else 0
    length = len(payload)
    if length <= 125:
        header = struct.pack("!BB", first, mask_bit | length)
    elif length <= 0xFFFF:
        header = struct.pack("!BBH", first, mask_bit | 126, length)
    else:
        header = struct.pack("!BBQ", first, mask_bit | 127, length)
    if mask_key is None:
        return header + payload
    key = (mask_key & 0xFFFFFFFF).to_bytes(4, "little")
    return header + key + apply_mask(payload, mask_key)


class FrameParser:
    """Incremental frame parser that copes with partial and coalesced input.

    ``max_message`` limits the payload of a single frame; 0 means unlimited.
    """

    def __init__(self, max_message: int = 0) -> None:
        self.max_message = max_message
        self._buf = bytearray()
        self._header: Optional[FrameHeader] = None

    @property
    def buffered(self) -> int:
        """Number of bytes received but not yet consumed."""
        return len(self._buf)

    def feed(self, data: bytes) -> List[Frame]:
        """Add received bytes and return every frame now complete."""
        self._buf += data
        frames: List[Frame] = []
        while True:
            if self._header is None:
                self._header = self._read_header()
                if self._header is None:
                    break
            size = self._header.payload_len
            if len(self._buf) < size:
                break
            payload = bytes(self._buf[:size])
            del self._buf[:size]
            if self._header.masked:
                payload = apply_mask(payload, self._header.mask_key)
            frames.append(Frame(self._header, payload))
            self._header = None
        return frames

    def _read_header(self) -> Optional[FrameHeader]:
        if len(self._buf) < 2:
            return None
        first, second = self._buf[0], self._buf[1]
        masked = bool(second & 0x80)
        length = second & 0x7F
        extra = 2 if length == 126 else 8 if length == 127 else 0
        need = 2 + extra + (4 if masked else 0)
        if len(self._buf) < need:
            return None
        pos = 2
        if length == 126:
            (length,) = struct.unpack_from("!H", self._buf, pos)
        elif length == 127:
            (length,) = struct.unpack_from("!Q", self._buf, pos)
            if length >> 63:
                raise ProtocolViolation("frame payload length out of range")
        pos += extra
        if self.max_message > 0 and length > self.max_message:
            raise MessageTooBig(f"frame payload {length} exceeds {self.max_message}")
        mask_key = 0
        if masked:
            mask_key = int.from_bytes(self._buf[pos:pos + 4], "little")
        del self._buf[:need]
        return FrameHeader(
            fin=bool(first & 0x80),
            rsv1=bool(first & 0x40),
            rsv2=bool(first & 0x20),
            rsv3=bool(first & 0x10),
            opcode=_to_opcode(first & 0x0F),
            masked=masked,
            payload_len=length,
            mask_key=mask_key,
        )


def valid_close_code(code: int) -> bool:
    """Whether a peer may send this status code in a close frame."""
    return 1000 <= code <= 1003 or 1007 <= code <= 1011 or 3000 <= code <= 4999


def close_payload(code: int, reason: Union[str, bytes] = b"") -> bytes:
    """Build the body of a close frame."""
    if isinstance(reason, str):
        reason = reason.encode("utf-8")
    return struct.pack("!H", code) + bytes(reason)


def parse_close_payload(payload: bytes) -> CloseError:
    """Decode the body of a received close frame.

    An empty body means a normal closure. Raises ProtocolViolation for a body
    of one byte or a status code a peer may not send.
    """
    if len(payload) == 0:
        return CloseError(NORMAL_CLOSURE)
    if len(payload) < 2:
        raise ProtocolViolation("close payload too small")
    (code,) = struct.unpack_from("!H", payload)
    if not valid_close_code(code):
        raise ProtocolViolation(f"invalid close code {code}")
    return CloseError(code, bytes(payload[2:]).decode("utf-8", errors="replace"))


def compress_message(data: bytes) -> bytes:
    """Compress one message for permessage-deflate, without context takeover."""
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
    out = compressor.compress(bytes(data)) + compressor.flush(zlib.Z_SYNC_FLUSH)
    if out.endswith(_DEFLATE_TAIL):
        out = out[: -len(_DEFLATE_TAIL)]
    return out


def decompress_message(data: bytes) -> bytes:
    """Decompress one permessage-deflate message; raises ProtocolViolation on bad data."""
    decompressor = zlib.decompressobj(-15)
    try:
        return decompressor.decompress(bytes(data) + _DEFLATE_TAIL)
    except zlib.error as exc:
        raise ProtocolViolation(f"invalid deflate data: {exc}") from exc