"""Comet configuration: command-line flags, defaults and TOML loading."""

from __future__ import annotations

import argparse
import os
import re
import socket
import sys
import tomllib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields
from datetime import timedelta
from typing import Any

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_INT32_MIN = -(1 << 31)
_INT32_MAX = (1 << 31) - 1


def parse_duration(value: Any) -> float:
    """Parse a duration such as ``"1m30s"`` or ``"100ms"`` into seconds.

    Numbers are taken as seconds already.
    """
    if isinstance(value, bool):
        raise TypeError("a duration cannot be a boolean")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, timedelta):
        return value.total_seconds()
    if not isinstance(value, str):
        raise TypeError(f"cannot read a duration from {type(value).__name__}")
    text = value
    sign = 1.0
    if text and text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        raise ValueError(f"invalid duration {value!r}")
    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match[1]) * _UNITS[match[2]]
        pos = match.end()
    return sign * total


def _parse_bool(text: str) -> bool:
    if text in ("1", "t", "T", "TRUE", "true", "True"):
        return True
    if text in ("0", "f", "F", "FALSE", "false", "False"):
        return False
    raise ValueError(f"invalid boolean {text!r}")


def _env_bool(text: str) -> bool:
    try:
        return _parse_bool(text)
    except ValueError:
        return False


def _env_int32(text: str) -> int:
    if not re.fullmatch(r"[+-]?\d+", text):
        return 0
    return max(_INT32_MIN, min(_INT32_MAX, int(text)))


def parse_flags(argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None) -> argparse.Namespace:
    """Parse comet flags; unset flags fall back to environment variables."""
    env = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(prog="comet", allow_abbrev=False)
    parser.add_argument("-conf", "--conf", dest="conf", default="comet-example.toml", help="default config path.")
    parser.add_argument("-region", "--region", dest="region", default=env.get("REGION", ""),
                        help="avaliable region. or use REGION env variable, value: sh etc.")
    parser.add_argument("-zone", "--zone", dest="zone", default=env.get("ZONE", ""),
                        help="avaliable zone. or use ZONE env variable, value: sh001/sh002 etc.")
    parser.add_argument("-deploy.env", "--deploy.env", dest="deploy_env", default=env.get("DEPLOY_ENV", ""),
                        help="deploy env. or use DEPLOY_ENV env variable, value: dev/fat1/uat/pre/prod etc.")
    parser.add_argument("-host", "--host", dest="host", default=socket.gethostname(),
                        help="machine hostname. or use default machine hostname.")
    parser.add_argument("-addrs", "--addrs", dest="addrs", default=env.get("ADDRS", ""),
                        help="server public ip addrs. or use ADDRS env variable, value: 127.0.0.1 etc.")
    parser.add_argument("-weight", "--weight", dest="weight", type=int, default=_env_int32(env.get("WEIGHT", "")),
                        help="load balancing weight, or use WEIGHT env variable, value: 10 etc.")
    parser.add_argument("-offline", "--offline", dest="offline", nargs="?", const=True, type=_parse_bool,
                        default=_env_bool(env.get("OFFLINE", "")),
                        help="server offline. or use OFFLINE env variable, value: true/false etc.")
    parser.add_argument("-debug", "--debug", dest="debug", nargs="?", const=True, type=_parse_bool,
                        default=_env_bool(env.get("DEBUG", "")),
                        help="server debug. or use DEBUG env variable, value: true/false etc.")
    return parser.parse_args(sys.argv[1:] if argv is None else list(argv))


def _duration(default: float) -> Any:
    return field(default=default, metadata={"kind": "duration"})


def _strings(*default: str) -> Any:
    return field(default_factory=lambda: list(default), metadata={"item": str})


def _section(cls: type) -> Any:
    return field(default_factory=cls, metadata={"section": cls})


@dataclass
class EnvConfig:
    region: str = ""
    zone: str = ""
    deploy_env: str = ""
    host: str = ""
    weight: int = 0
    offline: bool = False
    addrs: list[str] = _strings()


@dataclass
class DiscoveryConfig:
    nodes: list[str] = _strings()
    region: str = ""
    zone: str = ""
    env: str = ""
    host: str = ""


@dataclass
class TCPConfig:
    bind: list[str] = _strings(":3101")
    sndbuf: int = 4096
    rcvbuf: int = 4096
    keep_alive: bool = False
    reader: int = 32
    read_buf: int = 1024
    read_buf_size: int = 8192
    writer: int = 32
    write_buf: int = 1024
    write_buf_size: int = 8192


@dataclass
class WebsocketConfig:
    bind: list[str] = _strings(":3102")
    tls_open: bool = False
    tls_bind: list[str] = _strings()
    cert_file: str = ""
    private_file: str = ""


@dataclass
class ProtocolConfig:
    timer: int = 32
    timer_size: int = 2048
    svr_proto: int = 10
    cli_proto: int = 5
    handshake_timeout: float = _duration(5.0)


@dataclass
class BucketConfig:
    size: int = 32
    channel: int = 1024
    room: int = 1024
    routine_amount: int = 32
    routine_size: int = 1024


@dataclass
class RPCClientConfig:
    dial: float = _duration(1.0)
    timeout: float = _duration(1.0)


@dataclass
class RPCServerConfig:
    network: str = "tcp"
    addr: str = ":3109"
    timeout: float = _duration(1.0)
    idle_timeout: float = _duration(60.0)
    max_life_time: float = _duration(7200.0)
    force_close_wait: float = _duration(20.0)
    keep_alive_interval: float = _duration(60.0)
    keep_alive_timeout: float = _duration(20.0)


@dataclass
class WhitelistConfig:
    whitelist: list[int] = field(default_factory=list, metadata={"item": int})
    white_log: str = ""


@dataclass
class CometConfig:
    debug: bool = False
    env: EnvConfig = _section(EnvConfig)
    discovery: DiscoveryConfig = _section(DiscoveryConfig)
    tcp: TCPConfig = _section(TCPConfig)
    websocket: WebsocketConfig = _section(WebsocketConfig)
    protocol: ProtocolConfig = _section(ProtocolConfig)
    bucket: BucketConfig = _section(BucketConfig)
    rpc_client: RPCClientConfig = _section(RPCClientConfig)
    rpc_server: RPCServerConfig = _section(RPCServerConfig)
    whitelist: WhitelistConfig | None = field(default=None, metadata={"section": WhitelistConfig})


def default_config(options: argparse.Namespace | None = None) -> CometConfig:
    """Build the default configuration from parsed flags (or no flags at all)."""
    opts = parse_flags([]) if options is None else options
    return CometConfig(
        debug=opts.debug,
        env=EnvConfig(
            region=opts.region,
            zone=opts.zone,
            deploy_env=opts.deploy_env,
            host=opts.host,
            weight=opts.weight,
            offline=opts.offline,
            addrs=opts.addrs.split(","),
        ),
        discovery=DiscoveryConfig(region=opts.region, zone=opts.zone, env=opts.deploy_env, host=opts.host),
    )


def _check_scalar(current: Any, value: Any, path: str) -> Any:
    if isinstance(current, bool):
        if not isinstance(value, bool):
            raise ValueError(f"{path}: expected a boolean, got {value!r}")
    elif isinstance(current, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{path}: expected an integer, got {value!r}")
    elif isinstance(current, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{path}: expected a number, got {value!r}")
        return float(value)
    elif isinstance(current, str) and not isinstance(value, str):
        raise ValueError(f"{path}: expected a string, got {value!r}")
    return value


def _convert(current: Any, spec: Any, value: Any, path: str) -> Any:
    if spec.metadata.get("kind") == "duration":
        try:
            return parse_duration(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{path}: {exc}") from exc
    section = spec.metadata.get("section")
    if section is not None:
        if not isinstance(value, dict):
            raise ValueError(f"{path}: expected a table, got {value!r}")
        target = current if current is not None else section()
        _apply(target, value, f"{path}.")
        return target
    item = spec.metadata.get("item")
    if item is not None:
        if not isinstance(value, list):
            raise ValueError(f"{path}: expected an array, got {value!r}")
        for element in value:
            if isinstance(element, bool) or not isinstance(element, item):
                raise ValueError(f"{path}: unexpected array element {element!r}")
        return list(value)
    return _check_scalar(current, value, path)


def _apply(target: Any, table: Mapping[str, Any], prefix: str = "") -> None:
    by_name = {spec.name.replace("_", "").lower(): spec for spec in fields(target)}
    for key, value in table.items():
        spec = by_name.get(key.lower())
        if spec is None:
            continue
        current = getattr(target, spec.name)
        setattr(target, spec.name, _convert(current, spec, value, f"{prefix}{key}"))


def load_config(path: str | os.PathLike[str], options: argparse.Namespace | None = None) -> CometConfig:
    """Load a TOML file over the defaults; keys match field names case-insensitively."""
    config = default_config(options)
    with open(path, "rb") as handle:
        document = tomllib.load(handle)
    _apply(config, document)
    return config