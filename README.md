# greatws

A WebSocket client library built on a readiness-based event loop
(`selectors`: epoll, kqueue, poll or select, whichever the platform offers).
Received bytes go through an incremental frame parser. Complete messages are
handed to a callback object. Output the socket cannot take at once is
buffered and flushed when the socket becomes writable again.

Only the standard library is needed at run time.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

| Module | Contents |
| --- | --- |
| `greatws.callback` | `Callback`, `DefaultCallback`, `OnMessageCallback`, `OnCloseCallback`, `FuncCallback` |
| `greatws.config` | `Config`, `DialOption`, `DeflateConfig` and the `with_*` option functions |
| `greatws.protocol` | `Opcode`, errors, `FrameParser`, `encode_frame` and related helpers |
| `greatws.connection` | `Connection` |
| `greatws.eventloop` | `EventLoop`, `default_event_loop` |
| `greatws.client` | `dial`, `dial_config`, `options_to_config`, `generate_key`, `accept_key` |
| `greatws.autobahn_client` | the Autobahn test-suite client and its `main` |

## Callbacks

A callback has three methods:

- `on_open(conn)`
- `on_message(conn, opcode, payload)`
- `on_close(conn, error)`

There are several ways to supply one:

- Subclass `Callback` or `DefaultCallback`. Their methods do nothing unless you override them.
- Wrap a single function with `OnMessageCallback(func)` or `OnCloseCallback(func)`.
- Pass up to three optional functions to `FuncCallback(on_open, on_message, on_close)`.

`on_close` is called exactly once per connection. Its `error` argument says why the connection ended:

| Cause | `error` |
| --- | --- |
| Close frame from the peer | a `CloseError` carrying `code` and `reason` |
| Read or write timeout | a `TimeoutError` |
| Protocol violation | a `ProtocolViolation` |
| Peer closed the socket, or a local `close()` | an `EOFError` |

Callbacks run on the thread that processes the input. For a dialled connection this is the event loop thread.

## Dialling a server

```python
from greatws.callback import FuncCallback
from greatws.client import dial
from greatws.config import with_callback, with_event_loop, with_reply_ping
from greatws.eventloop import default_event_loop
from greatws.protocol import Opcode

loop = default_event_loop()  # created and started on first use

def on_message(conn, opcode, payload):
    print(opcode, payload)
    conn.close()

conn = dial(
    "ws://127.0.0.1:9001/echo",
    with_event_loop(loop),
    with_reply_ping(),
    with_callback(FuncCallback(on_message=on_message)),
)
conn.write_message(Opcode.TEXT, b"hello")
```

If no loop is given, `dial` uses `default_event_loop()`. The loop must be running; otherwise `dial` raises `RuntimeError`.

Only `ws://` and `wss://` URLs are accepted. Any other scheme raises `ValueError`. For `wss://` the TLS context given with `with_tls_context` is used, or the default one.

A configuration can also be built once and reused:

```python
from greatws.client import dial_config, options_to_config

config = options_to_config(with_reply_ping())
conn = dial_config("ws://127.0.0.1:9001/echo", config)
```

`dial_config` always resets the dial timeout to the default of 30 minutes.

### Handshake checks

A handshake response fails the check, and `ProtocolViolation` is raised, in any of these cases:

- The status is not 101.
- `Upgrade` is not `websocket`.
- `Connection` is not `Upgrade`.
- `Sec-WebSocket-Accept` does not match `accept_key(key)`.

`with_bind_http_header(mapping)` fills `mapping` with the response headers. Repeated headers are joined with `", "`.

## Options

All options are functions in `greatws.config`. Each returns a function that modifies a `Config` or `DialOption`.

### Callbacks

- `with_callback(cb)`
- `with_callback_func(on_open, on_message, on_close)`
- `with_on_message_func(f)`
- `with_on_close_func(f)`

### Reading

- `with_utf8_check()`: reject text messages and close reasons that are not valid UTF-8.
- `with_reply_ping()`: answer each ping with a pong carrying the same payload. The ping is then passed to `on_message`.
- `with_ignore_pong()`: do not pass pong frames to `on_message`.
- `with_read_timeout(seconds)`: close the connection when no input arrives in time.
- `with_read_max_message(size)`: reject frames with a larger payload; `0` means no limit. The error is `MessageTooBig`, and close code 1009 is sent.

### Compression

- `with_compression()`
- `with_decompression()`
- `with_decompress_and_compress()`

The client offers `permessage-deflate` only when both compression and decompression are enabled. It always offers it with no context takeover on either side. Each message is compressed and decompressed on its own.

### Client only

- `with_http_header(headers)`
- `with_tls_context(ctx)`
- `with_dial_timeout(seconds)`
- `with_bind_http_header(mapping)`

Applying any of these to a plain `Config` raises `TypeError`.

### Options that only set a field

The following options set their field in the configuration. Nothing else in the package reads these fields yet, so they change no behaviour:

- `with_context_takeover`
- `with_max_window_bits` (values outside 8–15 are ignored)
- `with_tcp_delay`
- `with_windows_multiple_times_payload_size`
- `with_disable_bufio_clear_hack`
- `with_max_delay_write_duration`
- `with_max_delay_write_num`
- `with_delay_write_init_buffer_size`
- `with_callback_in_event_loop`
- `with_stream_mode`
- `with_unstream_mode`
- `with_custom_task_mode`

## Connections

`Connection` has these members:

| Member | What it does |
| --- | --- |
| `write_message(opcode, data)` | Sends one message. Raises `ConnectionClosed` after close, and `ProtocolViolation` for invalid UTF-8 text when checking is on. |
| `write_timeout(opcode, data, timeout)` | Sends one message; if it has not finished within the timeout, the connection is closed. |
| `write_control(opcode, data)` | Sends a control frame; a payload over 125 bytes raises `ProtocolViolation`. |
| `write_ping`, `write_pong` | Send a ping or pong, with the same 125-byte limit. |
| `write_close_timeout(code, timeout)` | Sends a close frame with the given status code. |
| `feed(data)` | Processes bytes received by some other means. |
| `process_readable()` | Reads what the socket has and processes it. |
| `flush()` | Sends buffered output. |
| `close()` | Closes the connection. |
| `closed` | Whether the connection is closed. |
| `fileno()` | The socket's file descriptor; `-1` once closed. |

When a received frame breaks the protocol, the connection does three things:

1. Sends a close frame with code 1002.
2. Calls `on_close` with the error.
3. Raises the error from `feed`.

Problems that cause this include reserved bits, unknown opcodes, bad fragmentation, oversized or fragmented control frames, and invalid close codes.

A client connection masks every frame it sends with a random key.

## Event loop

`EventLoop(poll_interval=0.1, selector=None)` can poll in two ways:

- In a background thread, with `start()` and `stop()`, or used as a context manager.
- By hand, with `poll(timeout)`. It returns the number of ready sockets. `None` or a negative timeout waits without limit.

Its other members:

| Member | What it does |
| --- | --- |
| `add(conn)` | Start watching a connection. |
| `remove(conn)` | Stop watching a connection. |
| `want_write(conn)` | Also watch the connection's socket for writability. |
| `api_name()` | Name of the mechanism in use, such as `"epoll"` or `"kqueue"`. |
| `running` | Whether the background thread is polling. |
| `connection_count` | Number of watched connections. |

`stop()` closes every registered connection.

## Frames without sockets

`greatws.protocol` works on plain bytes:

- `encode_frame(payload, opcode, fin, rsv1, mask_key)` encodes a frame.
- `FrameParser(max_message).feed(data)` returns the complete `Frame`s, already unmasked.
- `apply_mask(data, mask_key)` masks or unmasks a payload.
- `valid_close_code`, `close_payload` and `parse_close_payload` check, build and read close frames.
- `compress_message` and `decompress_message` handle per-message deflate.

## Autobahn test-suite client

```
greatws-autobahn-client --host ws://127.0.0.1:9005 --agent greatws
```

The client does three things:

1. Asks the fuzzing server for the number of cases.
2. Runs each case with an echo handler. The handler uses ping replies, UTF-8 checking and compression.
3. Asks the server to update its reports.

## What is not included

This package is client-only. It has no server-side upgrade of incoming HTTP requests and no listening server. To accept WebSocket connections, do the handshake elsewhere, then wrap the accepted socket in `Connection(sock, client=False, config=...)` and register it with an `EventLoop`.