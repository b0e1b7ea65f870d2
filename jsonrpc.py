# jsonrpc.py

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

JSONRPC_VERSION = "2.0"

# ---------- error taxonomy ----------

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

ERROR_CODES = frozenset({PARSE_ERROR, INVALID_REQUEST, METHOD_NOT_FOUND, INVALID_PARAMS, INTERNAL_ERROR})

RequestId = Union[str, int]


@dataclass(eq=False)
class ProtocolError(Exception):
    """Structured error that maps 1:1 onto a JSON-RPC error object."""

    code: int
    message: str
    data: Optional[Any] = None

    def __post_init__(self) -> None:
        if self.code not in ERROR_CODES:
            raise ValueError(f"Unknown JSON-RPC error code: {self.code}")
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload

    @classmethod
    def from_dict(cls, obj: Any) -> "ProtocolError":
        if not isinstance(obj, dict):
            raise ValueError("error must be an object")
        code = obj.get("code")
        message = obj.get("message")
        if not isinstance(code, int) or isinstance(code, bool) or not isinstance(message, str):
            raise ValueError("error must carry an integer code and a string message")
        return cls(code=code, message=message, data=obj.get("data"))


def invalid_params(message: str, data: Optional[Any] = None) -> ProtocolError:
    return ProtocolError(INVALID_PARAMS, message, data)


def internal_error(message: str, data: Optional[Any] = None) -> ProtocolError:
    return ProtocolError(INTERNAL_ERROR, message, data)


def describe_exception(exc: BaseException) -> Dict[str, Any]:
    """Opaque, JSON-safe description of an exception for `error.data`."""
    detail = str(exc).strip() or exc.__class__.__name__
    data: Dict[str, Any] = {"type": exc.__class__.__name__, "detail": detail}
    status = getattr(exc, "status", None)
    if isinstance(status, int) and not isinstance(status, bool):
        data["status"] = status
    body = getattr(exc, "body", None)
    if body is not None:
        data["body"] = body
    return data


# ---------- envelopes ----------


def is_valid_id(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool)


@dataclass(frozen=True)
class Request:
    method: str
    id: Optional[RequestId] = None
    params: Optional[Dict[str, Any]] = None
    is_notification: bool = False


@dataclass(frozen=True)
class Response:
    id: Optional[RequestId]
    result: Any = None
    error: Optional[ProtocolError] = None

    def __post_init__(self) -> None:
        if self.error is not None and self.result is not None:
            raise ValueError("result and error are mutually exclusive")

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        resp: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            resp["error"] = self.error.to_dict()
        else:
            resp["result"] = self.result
        return resp


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str, separators=(",", ":"))


def encode_response(response: Response) -> str:
    return json_dumps(response.to_dict())


def decode_response(text: str) -> Response:
    """Parse a serialized response envelope (used by clients and tests)."""
    obj = json.loads(text)
    if not isinstance(obj, dict) or obj.get("jsonrpc") != JSONRPC_VERSION:
        raise ValueError("not a JSON-RPC 2.0 response")
    has_result = "result" in obj
    has_error = "error" in obj
    if has_result == has_error:
        raise ValueError("response must carry exactly one of result/error")
    rid = obj.get("id")
    if rid is not None and not is_valid_id(rid):
        raise ValueError(f"invalid response id: {rid!r}")
    if has_error:
        return Response(id=rid, error=ProtocolError.from_dict(obj["error"]))
    return Response(id=rid, result=obj["result"])


class EnvelopeError(Exception):
    """Inbound message could not be turned into a Request.

    `request_id` is set when the id could still be recovered, which is the
    only case where the error can be reported back to the client.
    """

    def __init__(self, error: ProtocolError, request_id: Optional[RequestId] = None) -> None:
        super().__init__(error.message)
        self.error = error
        self.request_id = request_id


class NotARequest(Exception):
    """Inbound message is a client response, not a request or notification."""

    def __init__(self, request_id: Any) -> None:
        super().__init__(f"client response for id={request_id!r}")
        self.request_id = request_id


def parse_message(raw: Union[str, bytes]) -> Request:
    """Decode one framed message into a Request.

    Raises EnvelopeError for malformed input and NotARequest for responses
    sent by the client.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EnvelopeError(ProtocolError(PARSE_ERROR, f"Invalid UTF-8: {e}")) from e
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        raise EnvelopeError(ProtocolError(PARSE_ERROR, f"Invalid JSON: {e}")) from e

    if not isinstance(obj, dict):
        raise EnvelopeError(ProtocolError(INVALID_REQUEST, "Message must be a JSON object"))

    has_id = "id" in obj
    rid = obj.get("id")
    recoverable_id = rid if has_id and is_valid_id(rid) else None

    if has_id and not is_valid_id(rid):
        raise EnvelopeError(ProtocolError(INVALID_REQUEST, f"Invalid id: {rid!r}"))

    if obj.get("jsonrpc") != JSONRPC_VERSION:
        raise EnvelopeError(ProtocolError(INVALID_REQUEST, "Invalid JSON-RPC version"), recoverable_id)

    if "method" not in obj and ("result" in obj or "error" in obj):
        raise NotARequest(rid)

    method = obj.get("method")
    if not isinstance(method, str) or not method:
        raise EnvelopeError(ProtocolError(INVALID_REQUEST, "Method must be a non-empty string"), recoverable_id)

    params = obj.get("params")
    if params is not None and not isinstance(params, dict):
        raise EnvelopeError(ProtocolError(INVALID_REQUEST, "params must be an object"), recoverable_id)

    return Request(method=method, id=recoverable_id, params=params, is_notification=not has_id)
