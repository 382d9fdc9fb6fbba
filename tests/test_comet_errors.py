import pytest

from imrelay.comet.errors import (
    BroadcastArgError,
    BroadcastRoomArgError,
    CometError,
    HandshakeError,
    LogicUnavailableError,
    OperationError,
    PushMsgArgError,
    RingEmptyError,
    RingFullError,
    RoomDroppedError,
    SignalFullError,
)


@pytest.mark.parametrize(
    "cls,message",
    [
        (HandshakeError, "handshake failed"),
        (OperationError, "request operation not valid"),
        (RingEmptyError, "ring buffer empty"),
        (RingFullError, "ring buffer full"),
        (SignalFullError, "signal channel full, msg dropped"),
        (PushMsgArgError, "rpc pushmsg arg error"),
        (BroadcastArgError, "rpc broadcast arg error"),
        (BroadcastRoomArgError, "rpc broadcast  room arg error"),
        (RoomDroppedError, "room droped"),
        (LogicUnavailableError, "logic rpc is not available"),
    ],
)
def test_default_messages_and_base(cls, message):
    err = cls()
    assert str(err) == message
    assert issubclass(cls, CometError)


def test_custom_message_overrides_default():
    assert str(RingFullError("custom detail")) == "custom detail"