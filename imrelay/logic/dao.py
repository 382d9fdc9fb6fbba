"""Data access for the logic service: session mappings in Redis, pushes to the message queue."""

from __future__ import annotations

import base64
import binascii
import enum
import json
import logging
import zlib
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import redis

from imrelay.logic.config import LogicConfig, RedisConfig
from imrelay.logic.model import Online

logger = logging.getLogger(__name__)

ONLINE_SLOTS = 64


class Producer(Protocol):
    """Anything that can publish a keyed message to a topic."""

    def send(self, topic: str, key: bytes, value: bytes) -> Any: ...


class PushType(enum.IntEnum):
    PUSH = 0
    ROOM = 1
    BROADCAST = 2


@dataclass
class PushMsg:
    """A message handed to the job service for delivery."""

    type: PushType = PushType.PUSH
    operation: int = 0
    speed: int = 0
    server: str = ""
    room: str = ""
    keys: list[str] = field(default_factory=list)
    msg: bytes = b""

    def encode(self) -> bytes:
        doc = {
            "type": int(self.type),
            "operation": self.operation,
            "speed": self.speed,
            "server": self.server,
            "room": self.room,
            "keys": list(self.keys),
            "msg": base64.b64encode(self.msg).decode("ascii"),
        }
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes | str) -> PushMsg:
        try:
            doc = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValueError(f"invalid push message: {exc}") from exc
        if not isinstance(doc, dict):
            raise ValueError("push message must be a JSON object")
        try:
            keys = doc.get("keys") or []
            if not isinstance(keys, list):
                raise ValueError("keys must be an array")
            return cls(
                type=PushType(int(doc.get("type", 0))),
                operation=int(doc.get("operation", 0)),
                speed=int(doc.get("speed", 0)),
                server=str(doc.get("server", "")),
                room=str(doc.get("room", "")),
                keys=[str(key) for key in keys],
                msg=base64.b64decode(doc.get("msg", ""), validate=True),
            )
        except (TypeError, binascii.Error) as exc:
            raise ValueError(f"invalid push message: {exc}") from exc


def key_mid_server(mid: int) -> str:
    """Redis hash holding a member's ``key -> server`` mappings."""
    return f"mid_{mid}"


def key_key_server(key: str) -> str:
    """Redis string holding the server of a connection key."""
    return f"key_{key}"


def key_server_online(server: str) -> str:
    """Redis hash holding a server's online room counts."""
    return f"ol_{server}"


def room_slot(room: str) -> int:
    """Stable slot in ``0..63`` under which a room's online count is stored."""
    return zlib.crc32(room.encode("utf-8")) % ONLINE_SLOTS


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _split_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        return addr or "localhost", 6379
    return host or "localhost", int(port)


class Dao:
    """Redis session store and message-queue publisher."""

    def __init__(self, config: LogicConfig, redis_client: Any, producer: Producer) -> None:
        self.config = config
        self.client = redis_client
        self.producer = producer
        self.redis_expire = int(config.redis.expire) if config.redis is not None else 0
        self.topic = config.kafka.topic if config.kafka is not None else ""
        self._closed = False

    @classmethod
    def from_config(cls, config: LogicConfig, producer: Producer) -> Dao:
        """Build a Dao with a Redis connection pool described by the configuration."""
        rc: RedisConfig | None = config.redis
        if rc is None:
            raise ValueError("redis configuration is missing")
        common: dict[str, Any] = {
            "password": rc.auth or None,
            "socket_connect_timeout": rc.dial_timeout or None,
            "socket_timeout": rc.read_timeout or None,
            "max_connections": rc.active or None,
        }
        if rc.network == "unix":
            pool = redis.ConnectionPool(
                connection_class=redis.UnixDomainSocketConnection, path=rc.addr, **common
            )
        else:
            host, port = _split_addr(rc.addr)
            pool = redis.ConnectionPool(host=host, port=port, **common)
        return cls(config, redis.Redis(connection_pool=pool), producer)

    @property
    def _redis(self) -> Any:
        if self._closed:
            raise redis.exceptions.ConnectionError("dao is closed")
        return self.client

    def close(self) -> None:
        self._closed = True
        self.client.close()

    def ping(self) -> None:
        """Check that Redis answers; raise otherwise."""
        self._redis.set("PING", "PONG")

    def add_mapping(self, mid: int, key: str, server: str) -> None:
        """Record ``mid -> key:server`` and ``key -> server``."""
        pipe = self._redis.pipeline(transaction=False)
        if mid > 0:
            pipe.hset(key_mid_server(mid), key, server)
            pipe.expire(key_mid_server(mid), self.redis_expire)
        pipe.set(key_key_server(key), server)
        pipe.expire(key_key_server(key), self.redis_expire)
        try:
            pipe.execute()
        except redis.RedisError as exc:
            logger.error("add mapping(%d,%s,%s) error(%s)", mid, key, server, exc)
            raise

    def expire_mapping(self, mid: int, key: str) -> bool:
        """Renew the mapping's lifetime; return whether the key mapping still existed."""
        pipe = self._redis.pipeline(transaction=False)
        if mid > 0:
            pipe.expire(key_mid_server(mid), self.redis_expire)
        pipe.expire(key_key_server(key), self.redis_expire)
        try:
            results = pipe.execute()
        except redis.RedisError as exc:
            logger.error("expire mapping(%d,%s) error(%s)", mid, key, exc)
            raise
        return bool(results[-1])

    def del_mapping(self, mid: int, key: str, server: str) -> bool:
        """Remove the mapping; return whether the key mapping existed."""
        pipe = self._redis.pipeline(transaction=False)
        if mid > 0:
            pipe.hdel(key_mid_server(mid), key)
        pipe.delete(key_key_server(key))
        try:
            results = pipe.execute()
        except redis.RedisError as exc:
            logger.error("del mapping(%d,%s,%s) error(%s)", mid, key, server, exc)
            raise
        return bool(results[-1])

    def servers_by_keys(self, keys: Sequence[str]) -> list[str]:
        """Server of each key, in order; unknown keys give an empty string."""
        if not keys:
            raise ValueError("at least one key is required")
        names = [key_key_server(key) for key in keys]
        try:
            values = self._redis.mget(names)
        except redis.RedisError as exc:
            logger.error("MGET %r error(%s)", names, exc)
            raise
        return [_text(value) for value in values]

    def keys_by_mids(self, mids: Sequence[int]) -> tuple[dict[str, str], list[int]]:
        """All ``key -> server`` mappings of the members, and the members that have any."""
        pipe = self._redis.pipeline(transaction=False)
        for mid in mids:
            pipe.hgetall(key_mid_server(mid))
        try:
            results = pipe.execute()
        except redis.RedisError as exc:
            logger.error("HGETALL %r error(%s)", list(mids), exc)
            raise
        mapping: dict[str, str] = {}
        online: list[int] = []
        for mid, res in zip(mids, results):
            if res:
                online.append(mid)
            for key, server in res.items():
                mapping[_text(key)] = _text(server)
        return mapping, online

    def add_server_online(self, server: str, online: Online) -> None:
        """Store a server's room counts, spread over the online slots."""
        slots: dict[int, dict[str, int]] = {}
        for room, count in online.room_count.items():
            slots.setdefault(room_slot(room), {})[room] = count
        name = key_server_online(server)
        for slot, counts in slots.items():
            record = Online(server=online.server, room_count=counts, updated=online.updated)
            self._add_server_online(name, str(slot), record)

    def _add_server_online(self, name: str, hash_key: str, online: Online) -> None:
        pipe = self._redis.pipeline(transaction=False)
        pipe.hset(name, hash_key, online.to_json())
        pipe.expire(name, self.redis_expire)
        try:
            pipe.execute()
        except redis.RedisError as exc:
            logger.error("HSET %s %s error(%s)", name, hash_key, exc)
            raise

    def server_online(self, server: str) -> Online:
        """Merge a server's room counts from every slot; unreadable slots are skipped."""
        result = Online(room_count={})
        name = key_server_online(server)
        pipe = self._redis.pipeline(transaction=False)
        for slot in range(ONLINE_SLOTS):
            pipe.hget(name, str(slot))
        for slot, raw in enumerate(pipe.execute(raise_on_error=False)):
            if raw is None:
                continue
            if isinstance(raw, Exception):
                logger.error("HGET %s %d error(%s)", name, slot, raw)
                continue
            try:
                record = Online.from_json(raw)
            except (ValueError, TypeError) as exc:
                logger.error("server online slot %d unreadable: %s", slot, exc)
                continue
            result.server = record.server
            result.updated = max(result.updated, record.updated)
            result.room_count.update(record.room_count)
        return result

    def del_server_online(self, server: str) -> None:
        name = key_server_online(server)
        try:
            self._redis.delete(name)
        except redis.RedisError as exc:
            logger.error("DEL %s error(%s)", name, exc)
            raise

    def _send(self, key: str, message: PushMsg) -> None:
        try:
            self.producer.send(self.topic, key.encode("utf-8"), message.encode())
        except Exception as exc:
            logger.error("send push message %r error(%s)", message, exc)
            raise

    def push_msg(self, op: int, server: str, keys: Iterable[str], msg: bytes) -> None:
        """Publish a message for specific connection keys on one server."""
        key_list = list(keys)
        if not key_list:
            raise ValueError("at least one key is required")
        message = PushMsg(type=PushType.PUSH, operation=op, server=server, keys=key_list, msg=msg)
        self._send(key_list[0], message)

    def broadcast_room_msg(self, op: int, room: str, msg: bytes) -> None:
        """Publish a message for every member of a room."""
        self._send(room, PushMsg(type=PushType.ROOM, operation=op, room=room, msg=msg))

    def broadcast_msg(self, op: int, speed: int, msg: bytes) -> None:
        """Publish a message for every connection."""
        self._send(str(op), PushMsg(type=PushType.BROADCAST, operation=op, speed=speed, msg=msg))