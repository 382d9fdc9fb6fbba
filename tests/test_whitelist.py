import re

from imrelay.comet.config import WhitelistConfig
from imrelay.comet.whitelist import Whitelist, init_whitelist

_STAMP = r"\d{4}/\d{2}/\d{2} \d{2}:\d{2}:\d{2} "


def test_contains_listed_positive_mids(tmp_path):
    with Whitelist([5, 0, -1], tmp_path / "white.log") as white:
        assert white.contains(5)
        assert not white.contains(6)
        assert not white.contains(0)
        assert not white.contains(-1)


def test_printf_writes_timestamped_line(tmp_path):
    path = tmp_path / "white.log"
    with Whitelist([1], path) as white:
        assert white.contains(1)
        white.printf("key: %s[%s] auth", "abc", "room")
    content = path.read_text(encoding="utf-8")
    assert re.fullmatch(_STAMP + r"key: abc\[room\] auth\n", content)
    assert content.count("\n") == 1


def test_printf_keeps_existing_newline_and_appends(tmp_path):
    path = tmp_path / "white.log"
    with Whitelist([1], path) as white:
        white.printf("first\n")
    with Whitelist([1], path) as white:
        white.printf("second")
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert re.fullmatch(_STAMP + "first", lines[0])
    assert re.fullmatch(_STAMP + "second", lines[1])


def test_init_whitelist_from_config(tmp_path):
    path = tmp_path / "white.log"
    white = init_whitelist(WhitelistConfig(whitelist=[7], white_log=str(path)))
    try:
        assert white.contains(7)
        assert not white.contains(8)
    finally:
        white.close()
    assert path.exists()