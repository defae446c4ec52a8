"""Client that runs the Autobahn test suite cases against a fuzzing server."""

from __future__ import annotations

import argparse
import threading
from typing import Any, Dict, Optional, Sequence

from .callback import Callback
from .client import dial
from .config import (
    with_callback,
    with_callback_func,
    with_context_takeover,
    with_decompress_and_compress,
    with_event_loop,
    with_max_window_bits,
    with_reply_ping,
    with_utf8_check,
)
from .eventloop import EventLoop
from .protocol import Opcode, WebSocketError

DEFAULT_HOST = "ws://127.0.0.1:9005"
DEFAULT_AGENT = "greatws"

_DIAL_ERRORS = (OSError, WebSocketError, ValueError, RuntimeError)


class _EchoHandler(Callback):
    """Echoes every text and binary message back to the server."""

    def __init__(self) -> None:
        self.done = threading.Event()

    def on_open(self, conn: Any) -> None:
        print(f"OnOpen::{id(conn):#x}")

    def on_message(self, conn: Any, opcode: Any, payload: bytes) -> None:
        if opcode in (Opcode.TEXT, Opcode.BINARY):
            try:
                conn.write_timeout(opcode, payload, 60.0)
            except (OSError, WebSocketError) as exc:
                print("write fail:", exc)

    def on_close(self, conn: Any, error: Optional[BaseException]) -> None:
        print("OnClose:", error)
        self.done.set()


def get_case_count(loop: EventLoop, host: str) -> int:
    """Ask the server how many test cases it has."""
    done = threading.Event()
    result: Dict[str, Any] = {}

    def on_message(conn: Any, opcode: Any, payload: bytes) -> None:
        try:
            result["count"] = int(bytes(payload).decode("utf-8"))
        except ValueError as exc:
            result["error"] = exc
        print(f"msg({bytes(payload)!r})")
        done.set()
        conn.close()

    def on_close(conn: Any, error: Optional[BaseException]) -> None:
        done.set()

    conn = dial(
        f"{host}/getCaseCount",
        with_event_loop(loop),
        with_callback_func(None, on_message, on_close),
    )
    try:
        done.wait()
    finally:
        conn.close()
    if "error" in result:
        raise result["error"]
    if "count" not in result:
        raise ConnectionError("connection closed before the case count arrived")
    return result["count"]


def run_case(loop: EventLoop, host: str, case_no: int, agent: str) -> bool:
    """Run one test case by echoing until the server closes; False if dialing failed."""
    handler = _EchoHandler()
    try:
        dial(
            f"{host}/runCase?case={case_no}&agent={agent}",
            with_reply_ping(),
            with_utf8_check(),
            with_decompress_and_compress(),
            with_context_takeover(),
            with_max_window_bits(10),
            with_callback(handler),
            with_event_loop(loop),
        )
    except _DIAL_ERRORS as exc:
        print("Dial fail:", exc)
        return False
    handler.done.wait()
    return True


def update_reports(loop: EventLoop, host: str, agent: str) -> bool:
    """Tell the server to write its reports; False if dialing failed."""
    try:
        conn = dial(f"{host}/updateReports?agent={agent}", with_event_loop(loop))
    except _DIAL_ERRORS as exc:
        print("Dial fail:", exc)
        return False
    conn.close()
    return True


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Fetch the case count, run every case, then update the reports."""
    parser = argparse.ArgumentParser(
        prog="greatws-autobahn-client",
        description="Run the Autobahn fuzzing server's cases with an echo client.",
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help="server base URL")
    parser.add_argument("--agent", default=DEFAULT_AGENT, help="agent name in reports")
    args = parser.parse_args(argv)

    loop = EventLoop()
    loop.start()
    try:
        total = get_case_count(loop, args.host)
        print("total case:", total)
        for case_no in range(1, total + 1):
            run_case(loop, args.host, case_no, args.agent)
        update_reports(loop, args.host, args.agent)
    finally:
        loop.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())