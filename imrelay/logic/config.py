"""Logic configuration: command-line flags, defaults and TOML loading."""

from __future__ import annotations

import argparse
import os
import socket
import sys
import tomllib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from imrelay.comet.config import DiscoveryConfig, _apply, _env_int32


def _duration(default: float) -> Any:
    return field(default=default, metadata={"kind": "duration"})


def _section(cls: type) -> Any:
    return field(default_factory=cls, metadata={"section": cls})


def _optional_section(cls: type) -> Any:
    return field(default=None, metadata={"section": cls})


@dataclass
class LogicEnv:
    region: str = ""
    zone: str = ""
    deploy_env: str = ""
    host: str = ""
    weight: int = 0


@dataclass
class NodeConfig:
    default_domain: str = ""
    host_domain: str = ""
    tcp_port: int = 0
    ws_port: int = 0
    wss_port: int = 0
    heartbeat_max: int = 0
    heartbeat: float = _duration(0.0)
    region_weight: float = 0.0


@dataclass
class BackoffConfig:
    max_delay: int = 300
    base_delay: int = 3
    factor: float = 1.8
    jitter: float = 1.3


@dataclass
class RedisConfig:
    network: str = ""
    addr: str = ""
    auth: str = ""
    active: int = 0
    idle: int = 0
    dial_timeout: float = _duration(0.0)
    read_timeout: float = _duration(0.0)
    write_timeout: float = _duration(0.0)
    idle_timeout: float = _duration(0.0)
    expire: float = _duration(0.0)


@dataclass
class KafkaConfig:
    topic: str = ""
    brokers: list[str] = field(default_factory=list, metadata={"item": str})


@dataclass
class RPCClientConfig:
    dial: float = _duration(1.0)
    timeout: float = _duration(1.0)


@dataclass
class RPCServerConfig:
    network: str = "tcp"
    addr: str = "3119"
    timeout: float = _duration(1.0)
    idle_timeout: float = _duration(60.0)
    max_life_time: float = _duration(7200.0)
    force_close_wait: float = _duration(20.0)
    keep_alive_interval: float = _duration(60.0)
    keep_alive_timeout: float = _duration(20.0)


@dataclass
class HTTPServerConfig:
    network: str = "tcp"
    addr: str = "3111"
    read_timeout: float = _duration(1.0)
    write_timeout: float = _duration(1.0)


@dataclass
class LogicConfig:
    env: LogicEnv = _section(LogicEnv)
    discovery: DiscoveryConfig = _section(DiscoveryConfig)
    rpc_client: RPCClientConfig = _section(RPCClientConfig)
    rpc_server: RPCServerConfig = _section(RPCServerConfig)
    http_server: HTTPServerConfig = _section(HTTPServerConfig)
    kafka: KafkaConfig | None = _optional_section(KafkaConfig)
    redis: RedisConfig | None = _optional_section(RedisConfig)
    node: NodeConfig | None = _optional_section(NodeConfig)
    backoff: BackoffConfig = _section(BackoffConfig)
    regions: dict[str, list[str]] = field(default_factory=dict)


def parse_flags(argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None) -> argparse.Namespace:
    """Parse logic flags; unset flags fall back to environment variables."""
    env = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(prog="logic", allow_abbrev=False)
    parser.add_argument("-conf", "--conf", dest="conf", default="logic-example.toml", help="default config path")
    parser.add_argument("-region", "--region", dest="region", default=env.get("REGION", ""),
                        help="avaliable region. or use REGION env variable, value: sh etc.")
    parser.add_argument("-zone", "--zone", dest="zone", default=env.get("ZONE", ""),
                        help="avaliable zone. or use ZONE env variable, value: sh001/sh002 etc.")
    parser.add_argument("-deploy.env", "--deploy.env", dest="deploy_env", default=env.get("DEPLOY_ENV", ""),
                        help="deploy env. or use DEPLOY_ENV env variable, value: dev/fat1/uat/pre/prod etc.")
    parser.add_argument("-host", "--host", dest="host", default=socket.gethostname(),
                        help="machine hostname. or use default machine hostname.")
    parser.add_argument("-weight", "--weight", dest="weight", type=int, default=_env_int32(env.get("WEIGHT", "")),
                        help="load balancing weight, or use WEIGHT env variable, value: 10 etc.")
    return parser.parse_args(sys.argv[1:] if argv is None else list(argv))


def default_config(options: argparse.Namespace | None = None) -> LogicConfig:
    """Build the default configuration from parsed flags (or no flags at all)."""
    opts = parse_flags([]) if options is None else options
    return LogicConfig(
        env=LogicEnv(region=opts.region, zone=opts.zone, deploy_env=opts.deploy_env, host=opts.host,
                     weight=opts.weight),
        discovery=DiscoveryConfig(region=opts.region, zone=opts.zone, env=opts.deploy_env, host=opts.host),
    )


def _check_regions(regions: Any) -> dict[str, list[str]]:
    if not isinstance(regions, dict):
        raise ValueError(f"Regions: expected a table, got {regions!r}")
    for region, provinces in regions.items():
        if not isinstance(provinces, list) or not all(isinstance(p, str) for p in provinces):
            raise ValueError(f"Regions.{region}: expected an array of strings, got {provinces!r}")
    return {str(region): list(provinces) for region, provinces in regions.items()}


def load_config(path: str | os.PathLike[str], options: argparse.Namespace | None = None) -> LogicConfig:
    """Load a TOML file over the defaults; keys match field names case-insensitively."""
    config = default_config(options)
    with open(path, "rb") as handle:
        document = tomllib.load(handle)
    _apply(config, document)
    config.regions = _check_regions(config.regions)
    return config