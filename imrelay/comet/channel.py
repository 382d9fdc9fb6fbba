"""Per-connection channel between message pushers and the writer loop."""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any

from imrelay.comet.errors import SignalFullError
from imrelay.comet.ring import Ring

if TYPE_CHECKING:
    from imrelay.comet.room import Room


class _Marker:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


PROTO_READY = _Marker("PROTO_READY")
"""Signal that client protocols are waiting in the channel's ring."""

PROTO_FINISH = _Marker("PROTO_FINISH")
"""Signal that the channel is closed."""


class Channel:
    """Holds a connection's identity, watched operations and outgoing queue."""

    def __init__(self, cli: int, svr: int, proto_factory: Callable[[], Any] = SimpleNamespace) -> None:
        if svr < 1:
            raise ValueError("server queue size must be at least 1")
        self.cli_proto = Ring(cli, proto_factory)
        self.room: Room | None = None
        self.mid = 0
        self.key = ""
        self.ip = ""
        self._signal: queue.Queue[Any] = queue.Queue(maxsize=svr)
        self._watch_ops: set[int] = set()
        self._lock = threading.Lock()

    def watch(self, *args: int) -> None:
        with self._lock:
            self._watch_ops.update(args)

    def unwatch(self, *args: int) -> None:
        with self._lock:
            self._watch_ops.difference_update(args)

    def need_push(self, op: int) -> bool:
        with self._lock:
            return op in self._watch_ops

    def push(self, proto: Any) -> None:
        """Queue a server message; raise SignalFullError if the queue is full."""
        try:
            self._signal.put_nowait(proto)
        except queue.Full:
            raise SignalFullError() from None

    def ready(self, timeout: float | None = None) -> Any:
        """Wait for the next queued message or marker."""
        try:
            return self._signal.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no message ready on channel") from None

    def signal(self) -> None:
        self._signal.put(PROTO_READY)

    def close(self) -> None:
        self._signal.put(PROTO_FINISH)