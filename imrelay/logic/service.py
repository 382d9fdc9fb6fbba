"""The logic service: connection sessions, node selection, online counts and pushes."""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from imrelay.comet.config import _parse_bool
from imrelay.logic.balancer import LoadBalancer, _parse_int32
from imrelay.logic.config import LogicConfig
from imrelay.logic.model import (
    META_CONN_COUNT,
    META_IP_COUNT,
    META_OFFLINE,
    PLATFORM_WEB,
    Instance,
    Online,
    Top,
    decode_room_key,
    encode_room_key,
)

logger = logging.getLogger(__name__)

ONLINE_TICK = 10.0
ONLINE_DEADLINE = 300.0

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_INT32_MIN = -(1 << 31)
_INT32_MAX = (1 << 31) - 1


@dataclass
class BackoffReply:
    """Reconnect backoff parameters handed to clients."""

    max_delay: int
    base_delay: int
    factor: float
    jitter: float


@dataclass
class NodesReply:
    """Connection parameters and the comet nodes a client should use."""

    domain: str
    tcp_port: int
    ws_port: int
    wss_port: int
    heartbeat: int
    heartbeat_max: int
    backoff: BackoffReply
    nodes: list[str] = field(default_factory=list)


@dataclass
class ConnectReply:
    """Session granted to a newly authenticated connection."""

    mid: int
    key: str
    room_id: str
    accepts: list[int]
    heartbeat: float


def _as_int(value: Any, name: str, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"token field {name!r} must be an integer, got {value!r}")
    if not low <= value <= high:
        raise ValueError(f"token field {name!r} out of range: {value}")
    return value


def _as_str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"token field {name!r} must be a string, got {value!r}")
    return value


def _parse_token(token: bytes | str) -> dict[str, Any]:
    """Read the connect token; field names match case-insensitively, later keys win."""
    try:
        doc = json.loads(token)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"invalid connect token: {exc}") from exc
    params: dict[str, Any] = {"mid": 0, "key": "", "room_id": "", "platform": "", "accepts": []}
    if doc is None:
        return params
    if not isinstance(doc, dict):
        raise ValueError("connect token must be a JSON object")
    for raw_name, value in doc.items():
        name = raw_name.lower()
        if name not in params or value is None:
            continue
        if name == "mid":
            params[name] = _as_int(value, raw_name, _INT64_MIN, _INT64_MAX)
        elif name == "accepts":
            if not isinstance(value, list):
                raise ValueError(f"token field {raw_name!r} must be an array, got {value!r}")
            params[name] = [_as_int(op, raw_name, _INT32_MIN, _INT32_MAX) for op in value]
        else:
            params[name] = _as_str(value, raw_name)
    return params


class Logic:
    """Session bookkeeping and message routing behind the logic API."""

    def __init__(self, config: LogicConfig, dao: Any) -> None:
        if config.node is None:
            raise ValueError("node configuration is missing")
        self.config = config
        self.dao = dao
        self.total_ips = 0
        self.total_conns = 0
        self.room_count: dict[str, int] = {}
        self.nodes: list[Instance] = []
        self.load_balancer = LoadBalancer()
        self.regions: dict[str, str] = {
            province: region
            for region, provinces in config.regions.items()
            for province in provinces
        }
        try:
            self.load_online()
        except Exception as exc:
            logger.error("initial load online error(%s)", exc)

    def ping(self) -> None:
        self.dao.ping()

    def close(self) -> None:
        self.dao.close()

    def update_nodes(self, zone_instances: Mapping[str, Iterable[Instance]]) -> None:
        """Take the comet instances announced by discovery, grouped by zone."""
        total_conns = 0
        total_ips = 0
        accepted: list[Instance] = []
        for instances in zone_instances.values():
            for inst in instances:
                meta = inst.metadata
                if meta is None:
                    logger.error("node instance metadata is empty(%r)", inst)
                    continue
                try:
                    offline = _parse_bool(meta.get(META_OFFLINE, ""))
                except ValueError as exc:
                    logger.warning("instance %s offline flag error(%s)", inst.hostname, exc)
                    continue
                if offline:
                    continue
                try:
                    conns = _parse_int32(meta.get(META_CONN_COUNT, ""))
                    ips = _parse_int32(meta.get(META_IP_COUNT, ""))
                except ValueError as exc:
                    logger.error("instance %s counter error(%s)", inst.hostname, exc)
                    continue
                total_conns += conns
                total_ips += ips
                accepted.append(inst)
        self.total_conns = total_conns
        self.total_ips = total_ips
        self.nodes = accepted
        self.load_balancer.update(accepted)

    def load_online(self) -> None:
        """Sum room counts over live servers; forget servers that stopped reporting."""
        room_count: dict[str, int] = {}
        now = time.time()
        for server in self.nodes:
            online = self.dao.server_online(server.hostname)
            if now - online.updated > ONLINE_DEADLINE:
                try:
                    self.dao.del_server_online(server.hostname)
                except Exception as exc:
                    logger.error("del server online %s error(%s)", server.hostname, exc)
                continue
            for room_id, count in online.room_count.items():
                room_count[room_id] = room_count.get(room_id, 0) + count
        self.room_count = room_count

    def run_online_loop(self, stop: threading.Event) -> None:
        """Reload online counts every tick until ``stop`` is set."""
        while not stop.wait(ONLINE_TICK):
            try:
                self.load_online()
            except Exception as exc:
                logger.error("onlineproc error(%s)", exc)

    def connect(self, server: str, cookie: str, token: bytes | str) -> ConnectReply:
        """Authenticate a connection from its token and record its mapping."""
        params = _parse_token(token)
        node = self.config.node
        heartbeat = node.heartbeat * node.heartbeat_max
        key = params["key"] or str(uuid.uuid4())
        mid = params["mid"]
        try:
            self.dao.add_mapping(mid, key, server)
        except Exception as exc:
            logger.error("add mapping(%d,%s,%s) error(%s)", mid, key, server, exc)
            raise
        logger.info("conn connected key:%s server:%s mid:%d token:%r", key, server, mid, token)
        return ConnectReply(
            mid=mid,
            key=key,
            room_id=params["room_id"],
            accepts=params["accepts"],
            heartbeat=heartbeat,
        )

    def disconnect(self, mid: int, key: str, server: str) -> bool:
        """Forget a connection; return whether its mapping existed."""
        has = self.dao.del_mapping(mid, key, server)
        logger.info("conn disconnected key:%s server:%s mid:%d", key, server, mid)
        return has

    def heartbeat(self, mid: int, key: str, server: str) -> None:
        """Keep a connection's mapping alive, recreating it if it expired."""
        if not self.dao.expire_mapping(mid, key):
            self.dao.add_mapping(mid, key, server)
        logger.info("conn heartbeat key:%s server:%s mid:%d", key, server, mid)

    def renew_online(self, server: str, room_count: Mapping[str, int]) -> dict[str, int]:
        """Store a server's room counts and return the counts over all servers."""
        online = Online(server=server, room_count=dict(room_count), updated=int(time.time()))
        self.dao.add_server_online(server, online)
        return dict(self.room_count)

    def receive(self, mid: int, proto: Any) -> None:
        logger.info("receive mid:%d message:%r", mid, proto)

    def nodes_instances(self) -> list[Instance]:
        return list(self.nodes)

    def nodes_weighted(self, platform: str, client_ip: str) -> NodesReply:
        """Pick nodes for a client; web clients get domains, others addresses."""
        node = self.config.node
        backoff = self.config.backoff
        reply = NodesReply(
            domain=node.default_domain,
            tcp_port=node.tcp_port,
            ws_port=node.ws_port,
            wss_port=node.wss_port,
            heartbeat=int(node.heartbeat),
            heartbeat_max=node.heartbeat_max,
            backoff=BackoffReply(
                max_delay=backoff.max_delay,
                base_delay=backoff.base_delay,
                factor=backoff.factor,
                jitter=backoff.jitter,
            ),
        )
        domains, addrs = self._node_addrs(client_ip)
        reply.nodes = domains if platform == PLATFORM_WEB else addrs
        if not reply.nodes:
            reply.nodes = [node.default_domain]
        return reply

    def _node_addrs(self, client_ip: str) -> tuple[list[str], list[str]]:
        # No geolocation source is configured, so the province is always unknown.
        province = ""
        region = self.regions.get(province, "")
        logger.info("nodeAddrs clientIP:%s region:%s province:%s", client_ip, region, province)
        node = self.config.node
        return self.load_balancer.node_addrs(region, node.host_domain, node.region_weight)

    def online_top(self, typ: str, n: int) -> list[Top]:
        """The ``n`` busiest rooms of a type, busiest first."""
        if n < 0:
            raise ValueError("n must not be negative")
        tops: list[Top] = []
        for key, count in self.room_count.items():
            if not key.startswith(typ):
                continue
            try:
                _, room_id = decode_room_key(key)
            except ValueError:
                continue
            tops.append(Top(room_id=room_id, count=count))
        tops.sort(key=lambda top: top.count, reverse=True)
        return tops[:n]

    def online_room(self, typ: str, rooms: Iterable[str]) -> dict[str, int]:
        return {room: self.room_count.get(encode_room_key(typ, room), 0) for room in rooms}

    def online_total(self) -> tuple[int, int]:
        """Total distinct addresses and total connections."""
        return self.total_ips, self.total_conns

    def push_keys(self, op: int, keys: Sequence[str], msg: bytes) -> None:
        """Push a message to connection keys, grouped by their server."""
        servers = self.dao.servers_by_keys(keys)
        by_server: dict[str, list[str]] = {}
        for key, server in zip(keys, servers):
            if server and key:
                by_server.setdefault(server, []).append(key)
        for server, server_keys in by_server.items():
            self.dao.push_msg(op, server, server_keys, msg)

    def push_mids(self, op: int, mids: Sequence[int], msg: bytes) -> None:
        """Push a message to every connection of the members."""
        key_servers, _ = self.dao.keys_by_mids(mids)
        by_server: dict[str, list[str]] = {}
        for key, server in key_servers.items():
            if not key or not server:
                logger.warning("push key:%s server:%s is empty", key, server)
                continue
            by_server.setdefault(server, []).append(key)
        for server, server_keys in by_server.items():
            self.dao.push_msg(op, server, server_keys, msg)

    def push_room(self, op: int, typ: str, room: str, msg: bytes) -> None:
        self.dao.broadcast_room_msg(op, encode_room_key(typ, room), msg)

    def push_all(self, op: int, speed: int, msg: bytes) -> None:
        self.dao.broadcast_msg(op, speed, msg)