"""WebSocket client connections driven by a selectors-based event loop, with
frame parsing, callbacks, options and per-message deflate."""

__version__ = "0.1.0"