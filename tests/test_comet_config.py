import pytest

from imrelay.comet.config import (
    WhitelistConfig,
    default_config,
    load_config,
    parse_duration,
    parse_flags,
)


def test_defaults_from_source():
    cfg = default_config(parse_flags([], {}))
    assert cfg.tcp.bind == [":3101"]
    assert cfg.websocket.bind == [":3102"]
    assert cfg.rpc_server.addr == ":3109"
    assert cfg.rpc_server.network == "tcp"
    assert cfg.tcp.sndbuf == 4096
    assert cfg.tcp.read_buf_size == 8192
    assert cfg.protocol.timer_size == 2048
    assert cfg.bucket.routine_size == 1024
    assert cfg.protocol.handshake_timeout == parse_duration("5s")
    assert cfg.rpc_server.max_life_time == parse_duration("2h")
    assert cfg.whitelist is None


def test_flags_fill_env_and_discovery():
    opts = parse_flags(["-region=sh", "-zone", "sh001", "-deploy.env=dev", "-weight=10", "-debug",
                        "-addrs=10.0.0.1,10.0.0.2"], {})
    cfg = default_config(opts)
    assert cfg.debug is True
    assert cfg.env.region == "sh"
    assert cfg.discovery.zone == "sh001"
    assert cfg.discovery.env == "dev"
    assert cfg.env.weight == 10
    assert cfg.env.addrs == ["10.0.0.1", "10.0.0.2"]


def test_environment_supplies_flag_defaults():
    opts = parse_flags([], {"REGION": "bj", "OFFLINE": "true", "DEBUG": "nonsense", "WEIGHT": "abc"})
    assert opts.region == "bj"
    assert opts.offline is True
    assert opts.debug is False
    assert opts.weight == 0


def test_environment_weight_clamped_to_int32():
    assert parse_flags([], {"WEIGHT": "99999999999"}).weight == 2147483647


@pytest.mark.parametrize(
    "left,right",
    [("1m30s", "90s"), ("1h", "60m"), ("1.5s", "1500ms"), ("1ms", "1000us"), ("1us", "1µs")],
)
def test_duration_equivalences(left, right):
    assert parse_duration(left) == pytest.approx(parse_duration(right))


def test_duration_sign_and_zero():
    assert parse_duration("-2s") == -parse_duration("2s")
    assert parse_duration("0") == parse_duration("0s")


@pytest.mark.parametrize("text", ["", "5", "1x", ".s", "s", "1m 2s"])
def test_duration_rejects_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_load_config_overrides_and_keeps_defaults(tmp_path):
    path = tmp_path / "comet.toml"
    path.write_text(
        "debug = true\n"
        "[tcp]\nbind = [\":4101\"]\nkeepAlive = true\n"
        "[protocol]\nhandshakeTimeout = \"8s\"\n"
        "[whitelist]\nWhitelist = [123]\nWhiteLog = \"/tmp/white_list.log\"\n"
        "[unknown]\nvalue = 1\n",
        encoding="utf-8",
    )
    cfg = load_config(path, parse_flags([], {}))
    assert cfg.debug is True
    assert cfg.tcp.bind == [":4101"]
    assert cfg.tcp.keep_alive is True
    assert cfg.tcp.sndbuf == 4096
    assert cfg.protocol.handshake_timeout == parse_duration("8s")
    assert cfg.whitelist == WhitelistConfig(whitelist=[123], white_log="/tmp/white_list.log")


def test_load_config_rejects_wrong_type(tmp_path):
    path = tmp_path / "comet.toml"
    path.write_text("[tcp]\nsndbuf = \"big\"\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path, parse_flags([], {}))


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.toml", parse_flags([], {}))