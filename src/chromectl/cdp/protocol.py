"""
CDP wire format - Commands, responses and events as they travel over the socket.

Inbound frames are parsed leniently: unknown fields are ignored, but a frame
must carry either an integer ``id`` (response) or a string ``method`` (event).
A response's ``error`` is always turned into a payload, so the matching
request fails with a protocol error instead of waiting out its deadline.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from chromectl.core.errors import InvalidResponseError


@dataclass
class CDPCommand:
    """An outbound request frame."""
    id: int
    method: str
    params: Optional[Dict[str, Any]] = None
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"id": self.id, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        if self.session_id is not None:
            message["sessionId"] = self.session_id
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class ProtocolErrorPayload:
    code: int
    message: str
    data: Optional[Any] = None


@dataclass
class CDPResponse:
    """A reply to a command, carrying exactly one of result or error."""
    id: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[ProtocolErrorPayload] = None
    session_id: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass
class CDPEvent:
    """An unsolicited notification from Chrome."""
    method: str
    params: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None


CDPMessage = Union[CDPResponse, CDPEvent]


# JSON-RPC "internal error", used when Chrome's error payload has no usable code
UNKNOWN_ERROR_CODE = -32603


def _parse_error(raw: Any) -> ProtocolErrorPayload:
    if not isinstance(raw, dict):
        return ProtocolErrorPayload(code=UNKNOWN_ERROR_CODE, message=str(raw))
    code = raw.get("code")
    if isinstance(code, bool) or not isinstance(code, int):
        code = UNKNOWN_ERROR_CODE
    return ProtocolErrorPayload(
        code=code,
        message=str(raw.get("message", "Unknown CDP error")),
        data=raw.get("data"),
    )


def parse_message(raw: Union[str, bytes]) -> CDPMessage:
    """
    Classify one inbound frame.

    Raises:
        InvalidResponseError: if the frame is not JSON, not an object, or has
            neither a usable ``id`` nor a ``method``.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InvalidResponseError(f"frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise InvalidResponseError("frame is not a JSON object")

    session_id = data.get("sessionId")
    if session_id is not None and not isinstance(session_id, str):
        session_id = None

    msg_id = data.get("id")
    if msg_id is not None:
        if isinstance(msg_id, bool) or not isinstance(msg_id, int):
            raise InvalidResponseError(f"response id is not an integer: {msg_id!r}")
        if "error" in data:
            return CDPResponse(id=msg_id, error=_parse_error(data["error"]), session_id=session_id)
        result = data.get("result")
        return CDPResponse(
            id=msg_id,
            result=result if isinstance(result, dict) else {},
            session_id=session_id,
        )

    method = data.get("method")
    if isinstance(method, str) and method:
        params = data.get("params")
        return CDPEvent(
            method=method,
            params=params if isinstance(params, dict) else {},
            session_id=session_id,
        )

    raise InvalidResponseError("frame has neither 'id' nor 'method'")
