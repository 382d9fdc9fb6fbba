"""Shared records of the logic service: metadata keys, online counts and room keys."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from urllib.parse import urlsplit

META_WEIGHT = "weight"
META_OFFLINE = "offline"
META_ADDRS = "addrs"
META_IP_COUNT = "ip_count"
META_CONN_COUNT = "conn_count"

PLATFORM_WEB = "web"


@dataclass
class Online:
    """Per-room online counts reported by one comet server."""

    server: str = ""
    room_count: dict[str, int] = field(default_factory=dict)
    updated: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {"server": self.server, "room_count": self.room_count, "updated": self.updated},
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> Online:
        doc = json.loads(data)
        if not isinstance(doc, dict):
            raise ValueError("online record must be a JSON object")
        room_count = doc.get("room_count") or {}
        if not isinstance(room_count, dict):
            raise ValueError("room_count must be a JSON object")
        return cls(
            server=doc.get("server") or "",
            room_count={str(room): int(count) for room, count in room_count.items()},
            updated=int(doc.get("updated") or 0),
        )


@dataclass
class Top:
    """A room and its online count, as ranked by the online top query."""

    room_id: str
    count: int

    def to_dict(self) -> dict[str, object]:
        return {"room_id": self.room_id, "count": self.count}


@dataclass
class Instance:
    """A service instance as announced by service discovery."""

    region: str = ""
    zone: str = ""
    env: str = ""
    appid: str = ""
    hostname: str = ""
    addrs: list[str] = field(default_factory=list)
    version: str = ""
    last_ts: int = 0
    metadata: dict[str, str] | None = field(default_factory=dict)


def encode_room_key(typ: str, room: str) -> str:
    """Build the room key ``<type>://<room>``."""
    return f"{typ}://{room}"


def _check_port(host: str) -> None:
    if host.startswith("["):
        _, bracket, rest = host.partition("]")
        if not bracket:
            raise ValueError(f"missing ']' in host {host!r}")
        if not rest:
            return
        if not rest.startswith(":"):
            raise ValueError(f"invalid port {rest!r} after host")
        port = rest[1:]
    elif ":" in host:
        port = host.rpartition(":")[2]
    else:
        return
    if port and not port.isdigit():
        raise ValueError(f"invalid port {':' + port!r} after host")


def decode_room_key(key: str) -> tuple[str, str]:
    """Split a room key into its type and room id."""
    if any(ord(char) < 0x20 or ord(char) == 0x7F for char in key):
        raise ValueError("invalid control character in room key")
    if key.startswith(":"):
        raise ValueError("missing protocol scheme")
    parts = urlsplit(key)
    if not parts.scheme and ":" in key.split("/", 1)[0]:
        raise ValueError("first path segment in room key cannot contain colon")
    host = parts.netloc.rpartition("@")[2]
    _check_port(host)
    return parts.scheme, host