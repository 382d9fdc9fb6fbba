"""HTTP API of the logic service: pushes, online counts and node lists."""

from __future__ import annotations

import enum
import json
import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import asdict, is_dataclass
from typing import Any

from flask import Flask, Response, g, request

from imrelay.logic.config import HTTPServerConfig

logger = logging.getLogger(__name__)

_INT_RE = re.compile(r"[+-]?\d+")
_BITS = {"int32": 32, "int64": 64, "int": 64, "int64s": 64}


class ResultCode(enum.IntEnum):
    OK = 0
    REQUEST_ERR = -400
    SERVER_ERR = -500


class _BindError(ValueError):
    """Query parameters could not be bound to the handler's arguments."""


def result_body(code: int, data: Any = None, message: str = "") -> dict[str, Any]:
    """Build the response envelope; ``data`` is left out when it is None."""
    body: dict[str, Any] = {"code": int(code), "message": message}
    if data is not None:
        body["data"] = _jsonable(data)
    return body


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _respond(code: int, data: Any = None, message: str = "") -> Response:
    g.ecode = int(code)
    payload = json.dumps(result_body(code, data, message), ensure_ascii=False)
    return Response(payload, status=200, mimetype="application/json")


def _parse_int(raw: str, name: str, bits: int) -> int:
    text = raw or "0"
    if not _INT_RE.fullmatch(text):
        raise _BindError(f"strconv.ParseInt: parsing {text!r}: invalid syntax (field {name})")
    value = int(text)
    limit = 1 << (bits - 1)
    if not -limit <= value < limit:
        raise _BindError(f"strconv.ParseInt: parsing {text!r}: value out of range (field {name})")
    return value


def _bind(fields: list[tuple[str, str, str, bool]]) -> dict[str, Any]:
    """Read query parameters as (field name, query name, kind, required)."""
    args = request.args
    values: dict[str, Any] = {}
    for field_name, query, kind, _ in fields:
        if kind == "str":
            values[query] = args.get(query, "")
        elif kind == "strs":
            values[query] = args.getlist(query)
        elif kind == "int64s":
            values[query] = [_parse_int(raw, field_name, 64) for raw in args.getlist(query)]
        else:
            values[query] = _parse_int(args.get(query, ""), field_name, _BITS[kind])
    for field_name, query, _, required in fields:
        if required and not values[query]:
            raise _BindError(
                f"Key: '{field_name}' Error:Field validation for '{field_name}' failed on the 'required' tag"
            )
    return values


def _client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    for part in forwarded.split(","):
        candidate = part.strip()
        if candidate:
            return candidate
    real_ip = request.headers.get("X-Real-Ip", "").strip()
    if real_ip:
        return real_ip
    return request.remote_addr or ""


def _bound(fields: list[tuple[str, str, str, bool]], handler: Callable[[dict[str, Any]], Response]) -> Response:
    try:
        args = _bind(fields)
    except _BindError as exc:
        return _respond(ResultCode.REQUEST_ERR, message=str(exc))
    return handler(args)


def create_app(logic: Any) -> Flask:
    """Build the Flask application serving the logic API under ``/goim``."""
    app = Flask(__name__)

    @app.before_request
    def _start_timer() -> None:
        g.start = time.monotonic()

    @app.after_request
    def _log_request(response: Response) -> Response:
        latency_ms = int((time.monotonic() - g.get("start", time.monotonic())) * 1000)
        path = request.path
        if request.query_string:
            path = f"{path}?{request.query_string.decode('latin-1')}"
        logger.info(
            "METHOD:%s | PATH:%s | CODE:%d | IP:%s | TIME:%d | ECODE:%d",
            request.method, path, response.status_code, _client_ip(), latency_ms, g.get("ecode", 0),
        )
        return response

    @app.errorhandler(500)
    def _recover(err: Any) -> tuple[str, int]:
        original = getattr(err, "original_exception", None) or err
        logger.error(
            "[Recovery] %s panic recovered:\n%s %s\n%r",
            time.strftime("%Y-%m-%d %H:%M:%S"), request.method, request.full_path, original,
            exc_info=original if isinstance(original, BaseException) else None,
        )
        return "", 500

    @app.post("/goim/push/keys")
    def push_keys() -> Response:
        def handle(args: dict[str, Any]) -> Response:
            msg = request.get_data()
            try:
                logic.push_keys(args["operation"], args["keys"], msg)
            except Exception as exc:
                logger.error("push keys error(%s)", exc)
                return _respond(ResultCode.REQUEST_ERR)
            return _respond(ResultCode.OK)

        return _bound([("Op", "operation", "int32", False), ("Keys", "keys", "strs", False)], handle)

    @app.post("/goim/push/mids")
    def push_mids() -> Response:
        def handle(args: dict[str, Any]) -> Response:
            msg = request.get_data()
            try:
                logic.push_mids(args["operation"], args["mids"], msg)
            except Exception as exc:
                return _respond(ResultCode.SERVER_ERR, message=str(exc))
            return _respond(ResultCode.OK)

        return _bound([("Op", "operation", "int32", False), ("Mids", "mids", "int64s", False)], handle)

    @app.post("/goim/push/room")
    def push_room() -> Response:
        def handle(args: dict[str, Any]) -> Response:
            msg = request.get_data()
            try:
                logic.push_room(args["operation"], args["type"], args["room"], msg)
            except Exception as exc:
                return _respond(ResultCode.SERVER_ERR, message=str(exc))
            return _respond(ResultCode.OK)

        fields = [
            ("Op", "operation", "int32", True),
            ("Type", "type", "str", True),
            ("Room", "room", "str", True),
        ]
        return _bound(fields, handle)

    @app.post("/goim/push/all")
    def push_all() -> Response:
        def handle(args: dict[str, Any]) -> Response:
            msg = request.get_data()
            try:
                logic.push_all(args["operation"], args["speed"], msg)
            except Exception as exc:
                return _respond(ResultCode.SERVER_ERR, message=str(exc))
            return _respond(ResultCode.OK)

        return _bound([("Op", "operation", "int32", True), ("Speed", "speed", "int32", False)], handle)

    @app.get("/goim/online/top")
    def online_top() -> Response:
        def handle(args: dict[str, Any]) -> Response:
            try:
                tops = logic.online_top(args["type"], args["limit"])
            except Exception as exc:
                logger.error("online top error(%s)", exc)
                return _respond(ResultCode.REQUEST_ERR)
            return _respond(ResultCode.OK, [top.to_dict() for top in tops])

        return _bound([("Type", "type", "str", True), ("Limit", "limit", "int", True)], handle)

    @app.get("/goim/online/room")
    def online_room() -> Response:
        def handle(args: dict[str, Any]) -> Response:
            try:
                counts = logic.online_room(args["type"], args["rooms"])
            except Exception as exc:
                logger.error("online room error(%s)", exc)
                return _respond(ResultCode.REQUEST_ERR)
            return _respond(ResultCode.OK, counts)

        return _bound([("Type", "type", "str", True), ("Rooms", "rooms", "strs", True)], handle)

    @app.get("/goim/online/total")
    def online_total() -> Response:
        ip_count, conn_count = logic.online_total()
        return _respond(ResultCode.OK, {"ip_count": ip_count, "conn_count": conn_count})

    @app.get("/goim/nodes/weighted")
    def nodes_weighted() -> Response:
        platform = request.args.get("platform", "")
        return _respond(ResultCode.OK, logic.nodes_weighted(platform, _client_ip()))

    @app.get("/goim/nodes/instances")
    def nodes_instances() -> Response:
        return _respond(ResultCode.OK, logic.nodes_instances())

    return app


def serve(logic: Any, config: HTTPServerConfig) -> None:
    """Serve the API on the configured ``host:port`` address; blocks."""
    addr = config.addr
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr}: missing port in address")
    if not port.isdigit():
        raise ValueError(f"address {addr}: invalid port")
    host = host.strip("[]") or "0.0.0.0"
    app = create_app(logic)
    app.run(host=host, port=int(port), threaded=True)