import pytest

from imrelay.comet.channel import PROTO_FINISH, PROTO_READY, Channel
from imrelay.comet.errors import SignalFullError


def test_watch_and_unwatch():
    ch = Channel(5, 10)
    ch.watch(1000, 1001)
    assert ch.need_push(1000)
    assert not ch.need_push(1002)
    ch.unwatch(1000)
    assert not ch.need_push(1000)
    assert ch.need_push(1001)


def test_push_then_ready_returns_message():
    ch = Channel(5, 10)
    message = object()
    ch.push(message)
    assert ch.ready() is message


def test_push_drops_when_queue_full():
    ch = Channel(1, 2)
    first, second = object(), object()
    ch.push(first)
    ch.push(second)
    with pytest.raises(SignalFullError):
        ch.push(object())
    assert ch.ready() is first
    assert ch.ready() is second


def test_signal_and_close_markers():
    ch = Channel(1, 4)
    ch.signal()
    ch.close()
    assert ch.ready() is PROTO_READY
    assert ch.ready() is PROTO_FINISH


def test_ready_times_out_when_empty():
    with pytest.raises(TimeoutError):
        Channel(1, 1).ready(timeout=0.01)


def test_cli_proto_uses_factory():
    ch = Channel(2, 1, proto_factory=dict)
    slot = ch.cli_proto.set()
    slot["op"] = 7
    ch.cli_proto.set_adv()
    assert ch.cli_proto.get() == {"op": 7}


def test_rejects_empty_server_queue():
    with pytest.raises(ValueError):
        Channel(1, 0)