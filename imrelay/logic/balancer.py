"""Weighted load balancer choosing comet nodes for new clients."""

from __future__ import annotations

import logging
import math
import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from imrelay.logic.model import META_ADDRS, META_CONN_COUNT, META_WEIGHT, Instance

logger = logging.getLogger(__name__)

MIN_WEIGHT = 1
MAX_WEIGHT = 1 << 20
MAX_NODES = 5

_INT_RE = re.compile(r"[+-]?\d+")
_INT32_MIN = -(1 << 31)
_INT32_MAX = (1 << 31) - 1


def _parse_int32(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid integer {text!r}")
    value = int(text)
    if not _INT32_MIN <= value <= _INT32_MAX:
        raise ValueError(f"integer {text!r} out of range")
    return value


@dataclass
class WeightedNode:
    """A comet node with its configured weight and current load."""

    region: str = ""
    hostname: str = ""
    addrs: list[str] = field(default_factory=list)
    fixed_weight: int = 0
    current_weight: int = 0
    current_conns: int = 0
    updated: int = 0

    def __str__(self) -> str:
        return (
            f"region:{self.region} fixedWeight:{self.fixed_weight}, "
            f"currentWeight:{self.current_weight}, currentConns:{self.current_conns}"
        )

    def chosen(self) -> None:
        self.current_conns += 1

    def reset(self) -> None:
        self.current_weight = 0

    def calculate_weight(self, total_weight: int, total_conns: int, gain_weight: float) -> None:
        """Set the current weight from the node's share of weight versus its share of connections."""
        fixed_weight = self.fixed_weight * gain_weight
        total_weight += int(fixed_weight) - self.fixed_weight
        if total_conns <= 0:
            self.reset()
            return
        weight_ratio = fixed_weight / total_weight if total_weight else 0.0
        conn_ratio = self.current_conns / total_conns * 0.5
        diff = weight_ratio - conn_ratio
        multiple = diff * total_conns
        floor = math.floor(multiple)
        if floor - multiple >= -0.5:
            weight = int(fixed_weight + floor)
        else:
            weight = int(fixed_weight + math.ceil(multiple))
        if diff < 0:
            weight = max(MIN_WEIGHT, weight)
        else:
            weight = min(MAX_WEIGHT, weight)
        self.current_weight = weight


class LoadBalancer:
    """Ranks nodes by current weight and hands out the best ones."""

    def __init__(self) -> None:
        self.total_conns = 0
        self.total_weight = 0
        self.nodes: dict[str, WeightedNode] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.nodes)

    def _weighted_nodes(self, region: str, region_weight: float) -> list[WeightedNode]:
        nodes = []
        for node in self.nodes.values():
            gain = region_weight if node.region == region else 1.0
            node.calculate_weight(self.total_weight, self.total_conns, gain)
            nodes.append(node)
        nodes.sort(key=lambda n: n.current_weight, reverse=True)
        if nodes:
            nodes[0].chosen()
            self.total_conns += 1
        return nodes

    def node_addrs(self, region: str, domain: str, region_weight: float) -> tuple[list[str], list[str]]:
        """Return the domains and addresses of the best nodes, best first."""
        with self._lock:
            nodes = self._weighted_nodes(region, region_weight)
        domains: list[str] = []
        addrs: list[str] = []
        for node in nodes[:MAX_NODES]:
            domains.append(node.hostname + domain)
            addrs.extend(node.addrs)
        return domains, addrs

    def update(self, instances: Iterable[Instance]) -> None:
        """Replace the node set, unless it shrank to less than half."""
        ins = list(instances)
        if not ins or (self.nodes and len(ins) / len(self.nodes) < 0.5):
            logger.error("load balancer update src:%d target:%d less than half", len(self.nodes), len(ins))
            return
        nodes: dict[str, WeightedNode] = {}
        total_conns = 0
        total_weight = 0
        with self._lock:
            for inst in ins:
                old = self.nodes.get(inst.hostname)
                if old is not None and old.updated == inst.last_ts:
                    nodes[inst.hostname] = old
                    total_conns += old.current_conns
                    total_weight += old.fixed_weight
                    continue
                meta = inst.metadata or {}
                try:
                    weight = _parse_int32(meta.get(META_WEIGHT, ""))
                except ValueError as exc:
                    logger.error("instance(%r) weight error(%s)", inst, exc)
                    continue
                try:
                    conns = _parse_int32(meta.get(META_CONN_COUNT, ""))
                except ValueError as exc:
                    logger.error("instance(%r) conns error(%s)", inst, exc)
                    continue
                nodes[inst.hostname] = WeightedNode(
                    region=inst.region,
                    hostname=inst.hostname,
                    fixed_weight=weight,
                    current_conns=conns,
                    addrs=meta.get(META_ADDRS, "").split(","),
                    updated=inst.last_ts,
                )
                total_conns += conns
                total_weight += weight
            self.nodes = nodes
            self.total_conns = total_conns
            self.total_weight = total_weight