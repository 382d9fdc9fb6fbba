"""Errors raised by the comet connection layer."""

from __future__ import annotations


class CometError(Exception):
    """Base class of comet errors."""

    default_message = "comet error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class HandshakeError(CometError):
    default_message = "handshake failed"


class OperationError(CometError):
    default_message = "request operation not valid"


class RingEmptyError(CometError):
    default_message = "ring buffer empty"


class RingFullError(CometError):
    default_message = "ring buffer full"


class SignalFullError(CometError):
    default_message = "signal channel full, msg dropped"


class PushMsgArgError(CometError):
    default_message = "rpc pushmsg arg error"


class BroadcastArgError(CometError):
    default_message = "rpc broadcast arg error"


class BroadcastRoomArgError(CometError):
    default_message = "rpc broadcast  room arg error"


class RoomDroppedError(CometError):
    default_message = "room droped"


class LogicUnavailableError(CometError):
    default_message = "logic rpc is not available"