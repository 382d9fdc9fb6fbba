"""Job configuration: command-line flags, defaults and TOML loading."""

from __future__ import annotations

import argparse
import os
import socket
import sys
import tomllib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from imrelay.comet.config import DiscoveryConfig, _apply


def _duration(default: float) -> Any:
    return field(default=default, metadata={"kind": "duration"})


def _section(cls: type) -> Any:
    return field(default_factory=cls, metadata={"section": cls})


@dataclass
class JobEnv:
    region: str = ""
    zone: str = ""
    deploy_env: str = ""
    host: str = ""


@dataclass
class KafkaConfig:
    topic: str = ""
    group: str = ""
    brokers: list[str] = field(default_factory=list, metadata={"item": str})


@dataclass
class CometRoutineConfig:
    routine_chan: int = 1024
    routine_size: int = 32


@dataclass
class RoomConfig:
    batch: int = 20
    signal: float = _duration(1.0)
    idle: float = _duration(900.0)


@dataclass
class JobConfig:
    env: JobEnv = _section(JobEnv)
    kafka: KafkaConfig | None = field(default=None, metadata={"section": KafkaConfig})
    discovery: DiscoveryConfig = _section(DiscoveryConfig)
    comet: CometRoutineConfig = _section(CometRoutineConfig)
    room: RoomConfig = _section(RoomConfig)


def parse_flags(argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None) -> argparse.Namespace:
    """Parse job flags; unset flags fall back to environment variables."""
    env = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(prog="job", allow_abbrev=False)
    parser.add_argument("-conf", "--conf", dest="conf", default="job-example.toml", help="default config path")
    parser.add_argument("-region", "--region", dest="region", default=env.get("REGION", ""),
                        help="avaliable region. or use REGION env variable, value: sh etc.")
    parser.add_argument("-zone", "--zone", dest="zone", default=env.get("ZONE", ""),
                        help="avaliable zone. or use ZONE env variable, value: sh001/sh002 etc.")
    parser.add_argument("-deploy.env", "--deploy.env", dest="deploy_env", default=env.get("DEPLOY_ENV", ""),
                        help="deploy env. or use DEPLOY_ENV env variable, value: dev/fat1/uat/pre/prod etc.")
    parser.add_argument("-host", "--host", dest="host", default=socket.gethostname(),
                        help="machine hostname. or use default machine hostname.")
    return parser.parse_args(sys.argv[1:] if argv is None else list(argv))


def default_config(options: argparse.Namespace | None = None) -> JobConfig:
    """Build the default configuration from parsed flags (or no flags at all)."""
    opts = parse_flags([]) if options is None else options
    return JobConfig(
        env=JobEnv(region=opts.region, zone=opts.zone, deploy_env=opts.deploy_env, host=opts.host),
        discovery=DiscoveryConfig(region=opts.region, zone=opts.zone, env=opts.deploy_env, host=opts.host),
    )


def load_config(path: str | os.PathLike[str], options: argparse.Namespace | None = None) -> JobConfig:
    """Load a TOML file over the defaults; keys match field names case-insensitively."""
    config = default_config(options)
    with open(path, "rb") as handle:
        document = tomllib.load(handle)
    _apply(config, document)
    return config