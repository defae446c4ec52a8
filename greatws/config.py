"""Connection configuration and the option functions that modify it."""

from __future__ import annotations

import ssl
from dataclasses import dataclass, field
from typing import Any, Callable, MutableMapping, Optional

from .callback import (
    Callback,
    DefaultCallback,
    FuncCallback,
    OnCloseCallback,
    OnMessageCallback,
)

DEFAULT_DIAL_TIMEOUT = 30 * 60.0


def _accept_all(_data: bytes) -> bool:
    return True


def _valid_utf8(data: bytes) -> bool:
    try:
        bytes(data).decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


@dataclass
class DeflateConfig:
    """permessage-deflate settings; a window size of 0 means the default."""

    compression: bool = False
    decompression: bool = False
    client_context_takeover: bool = False
    server_context_takeover: bool = False
    client_max_window_bits: int = 0
    server_max_window_bits: int = 0


@dataclass
class Config:
    """Settings shared by client and server connections. Durations are in seconds."""

    callback: Callback = field(default_factory=DefaultCallback)
    deflate: DeflateConfig = field(default_factory=DeflateConfig)
    tcp_no_delay: bool = True
    reply_ping: bool = False
    ignore_pong: bool = False
    disable_bufio_clear_hack: bool = False
    utf8_check: Callable[[bytes], bool] = _accept_all
    read_timeout: float = 0.0
    windows_multiple_times_payload_size: float = 1.0
    max_delay_write_num: int = 10
    delay_write_init_buffer_size: int = 8 * 1024
    max_delay_write_duration: float = 0.010
    sub_protocols: list = field(default_factory=list)
    event_loop: Any = None
    run_in_go_task: str = "stream2"
    read_max_message: int = 0

    def apply(self, *args: Callable[["Config"], None]) -> "Config":
        """Apply option functions in order and return self."""
        for option in args:
            option(self)
        return self


@dataclass
class DialOption(Config):
    """Client-side configuration: the target, handshake headers and TLS."""

    headers: dict = field(default_factory=dict)
    url: str = ""
    tls_context: Optional[ssl.SSLContext] = None
    dial_timeout: float = DEFAULT_DIAL_TIMEOUT
    bind_http_header: Optional[MutableMapping] = None


Option = Callable[[Config], None]


def _client_only(config: Config, name: str) -> DialOption:
    if not isinstance(config, DialOption):
        raise TypeError(f"{name} applies only to client configuration")
    return config


def with_callback_func(on_open=None, on_message=None, on_close=None) -> Option:
    """Use up to three plain functions as the callback."""

    def option(config: Config) -> None:
        config.callback = FuncCallback(on_open, on_message, on_close)

    return option


def with_callback(callback: Callback) -> Option:
    """Use the given callback object."""

    def option(config: Config) -> None:
        config.callback = callback

    return option


def with_tcp_delay() -> Option:
    """Leave Nagle's algorithm enabled (TCP_NODELAY off)."""

    def option(config: Config) -> None:
        config.tcp_no_delay = False

    return option


def with_utf8_check() -> Option:
    """Reject text messages that are not valid UTF-8."""

    def option(config: Config) -> None:
        config.utf8_check = _valid_utf8

    return option


def with_on_message_func(func) -> Option:
    """Use a single function that receives only messages."""

    def option(config: Config) -> None:
        config.callback = OnMessageCallback(func)

    return option


def with_reply_ping() -> Option:
    """Answer every ping with a pong automatically."""

    def option(config: Config) -> None:
        config.reply_ping = True

    return option


def with_ignore_pong() -> Option:
    """Do not deliver pong frames to the callback."""

    def option(config: Config) -> None:
        config.ignore_pong = True

    return option


def with_windows_multiple_times_payload_size(multiple: float) -> Option:
    """Size the read buffer as a multiple of the payload; values below 1 become 1."""

    def option(config: Config) -> None:
        config.windows_multiple_times_payload_size = max(float(multiple), 1.0)

    return option


def with_compression() -> Option:
    """Compress outgoing messages."""

    def option(config: Config) -> None:
        config.deflate.compression = True

    return option


def with_decompression() -> Option:
    """Decompress incoming messages."""

    def option(config: Config) -> None:
        config.deflate.decompression = True

    return option


def with_decompress_and_compress() -> Option:
    """Enable both compression and decompression."""

    def option(config: Config) -> None:
        config.deflate.compression = True
        config.deflate.decompression = True

    return option


def with_disable_bufio_clear_hack() -> Option:
    """Turn off the buffered-reader clearing optimisation."""

    def option(config: Config) -> None:
        config.disable_bufio_clear_hack = True

    return option


def with_max_delay_write_duration(duration: float) -> Option:
    """Set the longest time a delayed write may wait, in seconds."""

    def option(config: Config) -> None:
        config.max_delay_write_duration = duration

    return option


def with_max_delay_write_num(num: int) -> Option:
    """Set the largest number of delayed writes to batch."""

    def option(config: Config) -> None:
        config.max_delay_write_num = num

    return option


def with_delay_write_init_buffer_size(size: int) -> Option:
    """Set the initial buffer size for delayed writes."""

    def option(config: Config) -> None:
        config.delay_write_init_buffer_size = size

    return option


def with_read_timeout(timeout: float) -> Option:
    """Close the connection after this many seconds without input."""

    def option(config: Config) -> None:
        config.read_timeout = timeout

    return option


def with_on_close_func(func) -> Option:
    """Use a single function that receives only the close event."""

    def option(config: Config) -> None:
        config.callback = OnCloseCallback(func)

    return option


def with_callback_in_event_loop() -> Option:
    """Run callbacks directly in the I/O event loop."""

    def option(config: Config) -> None:
        config.run_in_go_task = "io"

    return option


def with_stream_mode() -> Option:
    """Run callbacks in order on a reused worker (the default)."""

    def option(config: Config) -> None:
        config.run_in_go_task = "stream2"

    return option


def with_unstream_mode() -> Option:
    """Run callbacks on reused workers without ordering guarantees."""

    def option(config: Config) -> None:
        config.run_in_go_task = "unstream"

    return option


def with_custom_task_mode(task_name: str) -> Option:
    """Run callbacks with a named task driver; an empty name is ignored."""

    def option(config: Config) -> None:
        if task_name:
            config.run_in_go_task = task_name

    return option


def with_event_loop(loop) -> Option:
    """Attach connections to the given event loop."""

    def option(config: Config) -> None:
        config.event_loop = loop

    return option


def with_context_takeover() -> Option:
    """Keep the compression context between messages on this side."""

    def option(config: Config) -> None:
        if isinstance(config, DialOption):
            config.deflate.client_context_takeover = True
        else:
            config.deflate.server_context_takeover = True

    return option


def with_max_window_bits(bits: int) -> Option:
    """Set this side's deflate window bits; values outside 8..15 are ignored."""

    def option(config: Config) -> None:
        if bits < 8 or bits > 15:
            return
        if isinstance(config, DialOption):
            config.deflate.client_max_window_bits = bits
        else:
            config.deflate.server_max_window_bits = bits

    return option


def with_read_max_message(size: int) -> Option:
    """Reject incoming frames larger than this; 0 means unlimited."""

    def option(config: Config) -> None:
        config.read_max_message = size

    return option


def with_tls_context(context: Optional[ssl.SSLContext]) -> Option:
    """Use this TLS context for wss:// connections (client only)."""

    def option(config: Config) -> None:
        _client_only(config, "with_tls_context").tls_context = context

    return option


def with_http_header(headers: dict) -> Option:
    """Send these headers in the handshake request (client only)."""

    def option(config: Config) -> None:
        _client_only(config, "with_http_header").headers = headers

    return option


def with_dial_timeout(timeout: float) -> Option:
    """Set the TCP connect timeout in seconds (client only)."""

    def option(config: Config) -> None:
        _client_only(config, "with_dial_timeout").dial_timeout = timeout

    return option


def with_bind_http_header(target: MutableMapping) -> Option:
    """Fill this mapping with the handshake response headers (client only)."""

    def option(config: Config) -> None:
        _client_only(config, "with_bind_http_header").bind_http_header = target

    return option