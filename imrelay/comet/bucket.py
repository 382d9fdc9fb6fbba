"""A shard of connected channels and the rooms they belong to."""

from __future__ import annotations

import contextlib
import logging
import queue
import threading
from typing import Any

from imrelay.comet.channel import Channel
from imrelay.comet.config import BucketConfig
from imrelay.comet.errors import SignalFullError
from imrelay.comet.room import Room

logger = logging.getLogger(__name__)

_STOP = object()


class Bucket:
    """Holds channels by key and rooms by id.

    Room broadcasts are handed round-robin to a fixed set of worker threads.
    """

    def __init__(self, conf: BucketConfig) -> None:
        if conf.routine_amount < 1:
            raise ValueError("bucket routine amount must be at least 1")
        self._conf = conf
        self._lock = threading.Lock()
        self._channels: dict[str, Channel] = {}
        self._rooms: dict[str, Room] = {}
        self._ip_counts: dict[str, int] = {}
        self._routine_num = 0
        size = conf.routine_size if conf.routine_size > 0 else 1
        self._routines: list[queue.Queue[Any]] = [queue.Queue(maxsize=size) for _ in range(conf.routine_amount)]
        self._threads = [
            threading.Thread(target=self._room_proc, args=(q,), daemon=True, name=f"bucket-room-{i}")
            for i, q in enumerate(self._routines)
        ]
        for thread in self._threads:
            thread.start()

    def channel_count(self) -> int:
        return len(self._channels)

    def room_count(self) -> int:
        return len(self._rooms)

    def rooms_count(self) -> dict[str, int]:
        """Online count of every room that has members."""
        with self._lock:
            return {rid: room.online for rid, room in self._rooms.items() if room.online > 0}

    def change_room(self, rid: str, ch: Channel) -> None:
        """Move a channel to another room; an empty id leaves all rooms."""
        old = ch.room
        if not rid:
            if old is not None and old.delete(ch):
                self.del_room(old)
            ch.room = None
            return
        with self._lock:
            new = self._rooms.get(rid)
            if new is None:
                new = self._rooms[rid] = Room(rid)
        if old is not None and old.delete(ch):
            self.del_room(old)
        new.put(ch)
        ch.room = new

    def put(self, rid: str, ch: Channel) -> None:
        """Register a channel under its key, closing any older one, and join a room."""
        room: Room | None = None
        with self._lock:
            previous = self._channels.get(ch.key)
            self._channels[ch.key] = ch
            if rid:
                room = self._rooms.get(rid)
                if room is None:
                    room = self._rooms[rid] = Room(rid)
                ch.room = room
            self._ip_counts[ch.ip] = self._ip_counts.get(ch.ip, 0) + 1
        if previous is not None:
            previous.close()
        if room is not None:
            room.put(ch)

    def delete(self, ch: Channel) -> None:
        """Remove a channel and drop its room if it became empty."""
        room = ch.room
        with self._lock:
            current = self._channels.get(ch.key)
            if current is not None:
                if current is ch:
                    del self._channels[ch.key]
                count = self._ip_counts.get(current.ip, 0)
                if count > 1:
                    self._ip_counts[current.ip] = count - 1
                else:
                    self._ip_counts.pop(current.ip, None)
        if room is not None and room.delete(ch):
            self.del_room(room)

    def channel(self, key: str) -> Channel | None:
        with self._lock:
            return self._channels.get(key)

    def broadcast(self, proto: Any, op: int) -> None:
        """Push a message to every channel watching the operation."""
        with self._lock:
            channels = list(self._channels.values())
        for ch in channels:
            if not ch.need_push(op):
                continue
            with contextlib.suppress(SignalFullError):
                ch.push(proto)

    def room(self, rid: str) -> Room | None:
        with self._lock:
            return self._rooms.get(rid)

    def del_room(self, room: Room) -> None:
        with self._lock:
            self._rooms.pop(room.id, None)
        room.close()

    def broadcast_room(self, room_id: str, proto: Any) -> None:
        """Queue a message for a room on the next worker."""
        with self._lock:
            self._routine_num += 1
            index = self._routine_num % len(self._routines)
        self._routines[index].put((room_id, proto))

    def rooms(self) -> set[str]:
        """Ids of rooms with members."""
        with self._lock:
            return {rid for rid, room in self._rooms.items() if room.online > 0}

    def ip_count(self) -> set[str]:
        """Distinct client addresses connected to the bucket."""
        with self._lock:
            return set(self._ip_counts)

    def up_rooms_count(self, room_counts: dict[str, int]) -> None:
        """Record the online count across all servers for every room."""
        with self._lock:
            for rid, room in self._rooms.items():
                room.all_online = room_counts.get(rid, 0)

    def close(self) -> None:
        """Stop the broadcast workers."""
        for q in self._routines:
            q.put(_STOP)
        for thread in self._threads:
            thread.join()

    def _room_proc(self, q: queue.Queue[Any]) -> None:
        while True:
            item = q.get()
            if item is _STOP:
                return
            room_id, proto = item
            room = self.room(room_id)
            if room is not None:
                room.push(proto)