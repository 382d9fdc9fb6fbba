"""Debug whitelist: member ids whose connections are traced to a log file."""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Iterable
from types import TracebackType
from typing import Any

from imrelay.comet.config import WhitelistConfig


class Whitelist:
    """A set of member ids with an append-only trace log."""

    def __init__(self, mids: Iterable[int], log_path: str | os.PathLike[str]) -> None:
        self._mids = frozenset(mids)
        self._file = open(log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()

    def contains(self, mid: int) -> bool:
        return mid > 0 and mid in self._mids

    def printf(self, fmt: str, *args: Any) -> None:
        """Write a timestamped, %-formatted line to the trace log."""
        text = fmt % args if args else fmt
        if not text.endswith("\n"):
            text += "\n"
        stamp = time.strftime("%Y/%m/%d %H:%M:%S ")
        with self._lock:
            self._file.write(stamp + text)
            self._file.flush()

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> Whitelist:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def init_whitelist(conf: WhitelistConfig) -> Whitelist:
    """Open the whitelist described by the configuration."""
    return Whitelist(conf.whitelist, conf.white_log)