import pytest

from greatws.callback import (
    Callback,
    DefaultCallback,
    FuncCallback,
    OnCloseCallback,
    OnMessageCallback,
)


class _Recorder(DefaultCallback):
    def __init__(self):
        self.messages = []

    def on_message(self, conn, opcode, payload):
        self.messages.append((conn, opcode, payload))


def test_default_callback_subclass_overrides_only_message():
    base = DefaultCallback()
    conn = object()
    assert base.on_open(conn) is None
    assert base.on_close(conn, None) is None

    cb = _Recorder()
    assert isinstance(cb, Callback)
    assert DefaultCallback.on_open(cb, conn) is None
    assert DefaultCallback.on_close(cb, conn, None) is None
    assert cb.messages == []
    cb.on_message(conn, 2, b"hello")
    assert cb.messages == [(conn, 2, b"hello")]


def test_default_callback_is_a_callback():
    cb = DefaultCallback()
    assert isinstance(cb, Callback)
    assert cb.on_message(object(), 2, b"hello") is None


def test_on_message_callback_forwards_message_only():
    seen = []
    cb = OnMessageCallback(lambda c, op, data: seen.append((op, data)))
    cb.on_open("conn")
    cb.on_close("conn", EOFError())
    cb.on_message("conn", 1, b"hello")
    assert seen == [(1, b"hello")]


def test_on_close_callback_forwards_close_only():
    seen = []
    cb = OnCloseCallback(lambda c, err: seen.append((c, err)))
    err = EOFError("eof")
    cb.on_open("conn")
    cb.on_message("conn", 1, b"x")
    cb.on_close("conn", err)
    assert seen == [("conn", err)]


def test_func_callback_counts_all_events():
    total = []
    cb = FuncCallback(
        lambda c: total.append(10),
        lambda c, op, data: total.append(100),
        lambda c, err: total.append(1000),
    )
    cb.on_open("conn")
    cb.on_message("conn", 2, b"hello")
    cb.on_close("conn", None)
    assert sum(total) == 1110


@pytest.mark.parametrize("missing", ["open", "message", "close"])
def test_func_callback_tolerates_missing_functions(missing):
    seen = []
    funcs = {
        "on_open": lambda c: seen.append("open"),
        "on_message": lambda c, op, data: seen.append("message"),
        "on_close": lambda c, err: seen.append("close"),
    }
    funcs["on_" + missing] = None
    cb = FuncCallback(**funcs)
    results = [
        cb.on_open("conn"),
        cb.on_message("conn", 1, b""),
        cb.on_close("conn", None),
    ]
    assert results == [None, None, None]
    expected = [name for name in ("open", "message", "close") if name != missing]
    assert seen == expected