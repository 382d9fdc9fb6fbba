import json

import pytest

from imrelay.logic.model import Online, Top, decode_room_key, encode_room_key


def test_encode_room_key():
    assert encode_room_key("test", "room_01") == "test://room_01"


@pytest.mark.parametrize("typ,room", [("test", "room_01"), ("live", "1000"), ("chat", "lobby")])
def test_room_key_round_trip(typ, room):
    assert decode_room_key(encode_room_key(typ, room)) == (typ, room)


def test_decode_keeps_port_in_room():
    assert decode_room_key("test://host:8080") == ("test", "host:8080")


@pytest.mark.parametrize("key", ["://room", "test://room:abc", "te_st://room", "test://ro\x01om"])
def test_decode_rejects_invalid_keys(key):
    with pytest.raises(ValueError):
        decode_room_key(key)


def test_decode_without_scheme_has_no_room():
    assert decode_room_key("room_01") == ("", "")


def test_online_json_round_trip():
    online = Online(server="test_server", room_count={"test://test_room": 100}, updated=1700000000)
    assert Online.from_json(online.to_json()) == online


def test_online_json_field_names():
    online = Online(server="s1", room_count={"room": 10}, updated=42)
    assert json.loads(online.to_json()) == {"server": "s1", "room_count": {"room": 10}, "updated": 42}


def test_online_from_json_accepts_bytes_and_missing_fields():
    online = Online.from_json(b'{"server":"s1","room_count":null}')
    assert online == Online(server="s1")


def test_online_from_json_rejects_non_object():
    with pytest.raises(ValueError):
        Online.from_json("[1, 2]")


def test_top_to_dict():
    assert Top(room_id="room_02", count=200).to_dict() == {"room_id": "room_02", "count": 200}