"""Client side of the WebSocket opening handshake and dialing."""

from __future__ import annotations

import base64
import hashlib
import os
import socket
import ssl
from dataclasses import dataclass
from typing import Dict, List, Tuple
from urllib.parse import urlsplit

from .config import DEFAULT_DIAL_TIMEOUT, Config, DeflateConfig, DialOption
from .connection import Connection
from .eventloop import default_event_loop
from .protocol import ProtocolViolation

_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"
_MAX_RESPONSE_HEADER = 64 * 1024

Headers = Dict[str, List[str]]


def generate_key() -> str:
    """A fresh random Sec-WebSocket-Key value."""
    return base64.b64encode(os.urandom(16)).decode("ascii")


def accept_key(key: str) -> str:
    """The Sec-WebSocket-Accept value a server must answer for ``key``."""
    digest = hashlib.sha1((key + _GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def _finish_setup(config: Config) -> None:
    if config.event_loop is None:
        config.event_loop = default_event_loop()
    config.event_loop.start()


def options_to_config(*args) -> DialOption:
    """Build a client configuration from option functions and start its event loop."""
    config = DialOption()
    config.apply(*args)
    _finish_setup(config)
    return config


def dial_config(url: str, config: DialOption) -> Connection:
    """Connect to ``url`` using a configuration built by :func:`options_to_config`."""
    config.url = url
    config.dial_timeout = DEFAULT_DIAL_TIMEOUT
    if config.headers is None:
        config.headers = {}
    return _dial(config)


def dial(url: str, *args) -> Connection:
    """Connect to a ws:// or wss:// URL and return the open connection."""
    config = DialOption(url=url)
    config.apply(*args)
    if config.headers is None:
        config.headers = {}
    _finish_setup(config)
    return _dial(config)


@dataclass(frozen=True)
class _Target:
    host: str
    port: int
    secure: bool
    key: str
    request: bytes


def _handshake(config: DialOption) -> _Target:
    parts = urlsplit(config.url)
    scheme = parts.scheme.lower()
    if scheme == "wss":
        secure = True
    elif scheme == "ws":
        secure = False
    else:
        raise ValueError(
            f"Unknown scheme, only supports ws:// or wss://: got {parts.scheme}"
        )
    host = parts.hostname
    if not host:
        raise ValueError(f"missing host in URL {config.url!r}")
    port = parts.port or (443 if secure else 80)
    netloc = parts.netloc.rsplit("@", 1)[-1]

    path = parts.path or "/"
    if parts.query:
        path += "?" + parts.query

    key = generate_key()
    lines = [f"GET {path} HTTP/1.1", f"Host: {netloc}"]
    for name, value in (config.headers or {}).items():
        values = value if isinstance(value, (list, tuple)) else [value]
        lines.extend(f"{name}: {item}" for item in values)
    lines += [
        "Upgrade: websocket",
        "Connection: Upgrade",
        f"Sec-WebSocket-Key: {key}",
        "Sec-WebSocket-Version: 13",
    ]
    if config.deflate.decompression and config.deflate.compression:
        # Messages are compressed independently, so no context is kept on either side.
        lines.append(
            "Sec-WebSocket-Extensions: permessage-deflate; "
            "server_no_context_takeover; client_no_context_takeover"
        )
    request = ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")
    return _Target(host, port, secure, key, request)


def _wrap_tls(config: DialOption, sock: socket.socket, host: str) -> socket.socket:
    context = config.tls_context or ssl.create_default_context()
    return context.wrap_socket(sock, server_hostname=host)


def _read_response(sock: socket.socket) -> Tuple[int, Headers, bytes]:
    buf = bytearray()
    while True:
        end = buf.find(b"\r\n\r\n")
        if end >= 0:
            break
        if len(buf) > _MAX_RESPONSE_HEADER:
            raise ProtocolViolation("handshake response header too large")
        chunk = sock.recv(4096)
        if not chunk:
            raise ConnectionError("connection closed during handshake")
        buf += chunk

    head = bytes(buf[:end]).decode("latin-1")
    leftover = bytes(buf[end + 4:])
    status_line, *header_lines = head.split("\r\n")
    parts = status_line.split(" ", 2)
    if len(parts) < 2 or not parts[0].startswith("HTTP/"):
        raise ProtocolViolation(f"malformed status line {status_line!r}")
    try:
        status = int(parts[1])
    except ValueError as exc:
        raise ProtocolViolation(f"malformed status line {status_line!r}") from exc

    headers: Headers = {}
    for line in header_lines:
        name, sep, value = line.partition(":")
        if not sep:
            raise ProtocolViolation(f"malformed header line {line!r}")
        name, value = name.strip(), value.strip()
        existing = next((k for k in headers if k.lower() == name.lower()), None)
        if existing is None:
            headers[name] = [value]
        else:
            headers[existing].append(value)
    return status, headers, leftover


def _header_values(headers: Headers, name: str) -> List[str]:
    lowered = name.lower()
    for key, values in headers.items():
        if key.lower() == lowered:
            return values
    return []


def _header_get(headers: Headers, name: str) -> str:
    values = _header_values(headers, name)
    return values[0] if values else ""


def _negotiate_deflate(config: DialOption, headers: Headers) -> DeflateConfig:
    enabled = any(
        item.split(";", 1)[0].strip().lower() == "permessage-deflate"
        for value in _header_values(headers, "Sec-WebSocket-Extensions")
        for item in value.split(",")
    )
    return DeflateConfig(
        compression=enabled and config.deflate.compression,
        decompression=enabled and config.deflate.decompression,
    )


def _validate_response(status: int, headers: Headers, key: str) -> None:
    if status != 101:
        raise ProtocolViolation(f"wrong status code {status}")
    if _header_get(headers, "Upgrade").lower() != "websocket":
        raise ProtocolViolation("invalid Upgrade field value")
    if _header_get(headers, "Connection").lower() != "upgrade":
        raise ProtocolViolation("invalid Connection field value")
    if _header_get(headers, "Sec-WebSocket-Accept").lower() != accept_key(key).lower():
        raise ProtocolViolation("invalid Sec-WebSocket-Accept value")


def _dial(config: DialOption) -> Connection:
    loop = config.event_loop
    if loop is None:
        raise RuntimeError("event loop is not set")
    if not loop.running:
        raise RuntimeError("event loop is not started")

    target = _handshake(config)
    sock = socket.create_connection((target.host, target.port), timeout=config.dial_timeout)
    try:
        if target.secure:
            sock = _wrap_tls(config, sock, target.host)
        sock.sendall(target.request)
        status, headers, leftover = _read_response(sock)
        if config.bind_http_header is not None:
            config.bind_http_header.clear()
            config.bind_http_header.update({k: ", ".join(v) for k, v in headers.items()})
        deflate = _negotiate_deflate(config, headers)
        _validate_response(status, headers, target.key)
    except BaseException:
        sock.close()
        raise

    conn = Connection(sock, client=True, config=config, deflate=deflate)
    conn.callback.on_open(conn)
    if leftover:
        conn.feed(leftover)
    if not conn.closed:
        loop.add(conn)
    return conn