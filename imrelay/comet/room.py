"""A chat room holding the channels currently joined to it."""

from __future__ import annotations

import contextlib
import threading
from typing import TYPE_CHECKING, Any

from imrelay.comet.errors import RoomDroppedError, SignalFullError

if TYPE_CHECKING:
    from imrelay.comet.channel import Channel


class Room:
    """Room membership and online counters.

    Channels are kept newest first. Once the last channel leaves, the room is
    dropped and accepts no more channels.
    """

    def __init__(self, room_id: str) -> None:
        self.id = room_id
        self.online = 0
        self.all_online = 0
        self._drop = False
        self._members: dict[Channel, None] = {}
        self._lock = threading.Lock()

    @property
    def dropped(self) -> bool:
        return self._drop

    def put(self, ch: Channel) -> None:
        with self._lock:
            if self._drop:
                raise RoomDroppedError()
            self._members.pop(ch, None)
            self._members[ch] = None
            self.online += 1

    def delete(self, ch: Channel) -> bool:
        """Remove a channel; return True when the room became empty."""
        with self._lock:
            self._members.pop(ch, None)
            self.online -= 1
            self._drop = self.online == 0
            return self._drop

    def channels(self) -> list[Channel]:
        """Member channels, newest first."""
        with self._lock:
            return list(reversed(self._members))

    def push(self, proto: Any) -> None:
        """Send a message to every member; members with a full queue miss it."""
        for ch in self.channels():
            with contextlib.suppress(SignalFullError):
                ch.push(proto)

    def close(self) -> None:
        for ch in self.channels():
            ch.close()

    def online_num(self) -> int:
        """Online count across all servers if known, else the local count."""
        return self.all_online if self.all_online > 0 else self.online