"""
Output capture for sandboxed execution.

sys.stdout and sys.stderr are replaced once, process-wide, by routing streams.
A routing stream forwards every write to the sink that is active in the
*current context* (contextvars), or to the stream it replaced when no sink is
active. Installing a sink therefore only redirects writes made from the
installing thread or task; concurrent executions never see each other's output.
"""

from __future__ import annotations

import sys
import threading
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Callable, Iterator, List, Optional, TextIO, Tuple

_active_capture: ContextVar[Optional["CaptureToken"]] = ContextVar("code_sandbox_active_capture", default=None)
_routing_lock = threading.Lock()

STREAM_NAMES = ("stdout", "stderr")


class OutputLimitExceeded(Exception):
    """Raised by OutputCaptureSink.append when the sink's character limit is reached."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Output limit of {limit} characters exceeded")
        self.limit = limit


class _RoutingStream:
    """Stand-in for a standard stream; dispatches writes to the context's active sink."""

    def __init__(self, name: str, fallback: TextIO) -> None:
        self.name = name
        self._fallback = fallback

    @property
    def fallback(self) -> TextIO:
        return self._fallback

    def write(self, s: str) -> int:
        sink = active_sink()
        if sink is not None and sink.accepts(self.name):
            sink.append(s)
            return len(s)
        return self._fallback.write(s)

    def writelines(self, lines) -> None:
        for line in lines:
            self.write(line)

    def flush(self) -> None:
        sink = active_sink()
        if sink is not None and sink.accepts(self.name):
            return
        flush = getattr(self._fallback, "flush", None)
        if flush is not None:
            flush()

    def writable(self) -> bool:
        return True

    def __getattr__(self, item: str):
        # encoding, errors, fileno, isatty, ... come from the wrapped stream
        return getattr(self._fallback, item)


def install_routing() -> None:
    """Put routing streams in place over sys.stdout and sys.stderr. Safe to call repeatedly."""
    if all(isinstance(getattr(sys, n), _RoutingStream) for n in STREAM_NAMES):
        return
    with _routing_lock:
        for name in STREAM_NAMES:
            current = getattr(sys, name)
            if not isinstance(current, _RoutingStream):
                setattr(sys, name, _RoutingStream(name, current))


def original_stream(name: str) -> TextIO:
    """Return the stream underneath the routing layer for 'stdout' or 'stderr'."""
    if name not in STREAM_NAMES:
        raise ValueError(f"Unknown stream: {name}")
    stream = getattr(sys, name)
    while isinstance(stream, _RoutingStream):
        stream = stream.fallback
    return stream


def active_sink() -> Optional["OutputCaptureSink"]:
    """The sink receiving writes in the current context, if any."""
    token = _active_capture.get()
    while token is not None and token.released:
        token = token.previous
    return None if token is None else token.sink


class CaptureToken:
    """
    Opaque handle returned by install(); records the routing that was active before.

    Released tokens stay linked so routing falls back to the nearest live
    predecessor even when restore() runs in another thread or out of order.
    """

    __slots__ = ("sink", "previous", "released", "_ctx_token")

    def __init__(self, sink: "OutputCaptureSink", previous: Optional["CaptureToken"]) -> None:
        self.sink = sink
        self.previous = previous
        self.released = False
        self._ctx_token: Optional[Token] = None


class OutputCaptureSink:
    """
    Ordered buffer for text written during one execution.

    Chunks are kept exactly as written, in call order. An optional listener is
    called with each accepted chunk; the sandbox child process uses it to
    forward output to the parent as it is produced, with retain=False so the
    text is not also held in the child.
    """

    def __init__(
        self,
        max_chars: Optional[int] = None,
        listener: Optional[Callable[[str], None]] = None,
        streams: Tuple[str, ...] = STREAM_NAMES,
        retain: bool = True,
    ) -> None:
        self._chunks: List[str] = []
        self._size = 0
        self._lock = threading.Lock()
        self._max_chars = max_chars
        self._listener = listener
        self._streams = frozenset(streams)
        self._retain = retain

    def accepts(self, stream_name: str) -> bool:
        return stream_name in self._streams

    def install(self) -> CaptureToken:
        """Route the current context's stdout/stderr writes into this sink."""
        install_routing()
        token = CaptureToken(self, _active_capture.get())
        token._ctx_token = _active_capture.set(token)
        return token

    def append(self, chunk: str) -> None:
        """Buffer one chunk. Raises OutputLimitExceeded after keeping what still fits."""
        if not isinstance(chunk, str):
            raise TypeError(f"write() argument must be str, not {type(chunk).__name__}")
        if not chunk:
            return
        with self._lock:
            if self._max_chars is not None and self._size + len(chunk) > self._max_chars:
                room = self._max_chars - self._size
                if room > 0 and self._retain:
                    self._chunks.append(chunk[:room])
                self._size += max(room, 0)
                raise OutputLimitExceeded(self._max_chars)
            if self._retain:
                self._chunks.append(chunk)
            self._size += len(chunk)
        if self._listener is not None:
            self._listener(chunk)

    def restore(self, token: CaptureToken) -> None:
        """Re-install the routing recorded in token. A second call is a no-op."""
        if token.released:
            return
        if token.sink is not self:
            raise ValueError("Token was issued by a different sink")
        token.released = True
        if _active_capture.get() is token:
            try:
                _active_capture.reset(token._ctx_token)
            except ValueError:
                # token created in another context
                _active_capture.set(token.previous)

    @contextmanager
    def capture(self) -> Iterator["OutputCaptureSink"]:
        token = self.install()
        try:
            yield self
        finally:
            self.restore(token)

    @property
    def chunks(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._chunks)

    def getvalue(self) -> str:
        with self._lock:
            return "".join(self._chunks)
