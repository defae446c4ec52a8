"""Callback objects that receive connection events."""

from __future__ import annotations

from typing import Any, Callable, Optional

OnOpenFunc = Callable[[Any], None]
OnMessageFunc = Callable[[Any, Any, bytes], None]
OnCloseFunc = Callable[[Any, Optional[BaseException]], None]


class Callback:
    """Receiver of connection events; every hook does nothing unless overridden."""

    def on_open(self, conn: Any) -> None:
        """Called once the connection is established."""

    def on_message(self, conn: Any, opcode: Any, payload: bytes) -> None:
        """Called for every complete message or control frame."""

    def on_close(self, conn: Any, error: Optional[BaseException]) -> None:
        """Called once when the connection is closed."""


class DefaultCallback(Callback):
    """Callback whose hooks all do nothing; subclass it to override only some."""


class OnMessageCallback(Callback):
    """Callback that forwards only messages to a plain function."""

    def __init__(self, func: OnMessageFunc) -> None:
        self.func = func

    def on_message(self, conn: Any, opcode: Any, payload: bytes) -> None:
        self.func(conn, opcode, payload)


class OnCloseCallback(Callback):
    """Callback that forwards only the close event to a plain function."""

    def __init__(self, func: OnCloseFunc) -> None:
        self.func = func

    def on_close(self, conn: Any, error: Optional[BaseException]) -> None:
        self.func(conn, error)


class FuncCallback(Callback):
    """Callback built from up to three optional functions."""

    def __init__(
        self,
        on_open: Optional[OnOpenFunc] = None,
        on_message: Optional[OnMessageFunc] = None,
        on_close: Optional[OnCloseFunc] = None,
    ) -> None:
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close

    def on_open(self, conn: Any) -> None:
        if self._on_open is not None:
            self._on_open(conn)

    def on_message(self, conn: Any, opcode: Any, payload: bytes) -> None:
        if self._on_message is not None:
            self._on_message(conn, opcode, payload)

    def on_close(self, conn: Any, error: Optional[BaseException]) -> None:
        if self._on_close is not None:
            self._on_close(conn, error)