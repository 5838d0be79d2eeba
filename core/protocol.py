"""figbridge — Wire Codec

JSON envelopes exchanged with the Figma plugin over the WebSocket.

Outbound:
    {"id", "type": "execute", "script"}
    {"id", "type": "getContext"}
    {"id", "type": "notify", "message", "timeout"}

Inbound:
    {"id", "success": true, "result"} | {"id", "success": false, "error"}
    {"type": "handshake", "source", "version"}

Older plugin builds reply with {"type": "execution-result", "requestId", ...}
or {"type": "context-response", "requestId", "context" | "error"}; both are
normalized to the same InboundMessage.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from core.errors import MalformedMessageError, RemoteError
from models.models import Outcome, RequestKind

MAX_ID_LENGTH = 128

MSG_RESPONSE = "response"
MSG_HANDSHAKE = "handshake"
MSG_OTHER = "other"


def sanitize(text: Any, max_len: int = 200) -> str:
    """Strip CR/LF and truncate untrusted text before it reaches a log line."""
    return str(text)[:max_len].replace('\r', ' ').replace('\n', ' ')


@dataclass
class InboundMessage:
    kind: str
    request_id: Optional[str] = None
    outcome: Optional[Outcome] = None
    source: Optional[str] = None
    version: Optional[str] = None
    type_name: Optional[str] = None


def encode_request(kind: RequestKind, request_id: str, **payload: Any) -> str:
    envelope = {"id": request_id, "type": kind.value}
    if kind is RequestKind.EXECUTE:
        envelope["script"] = payload["script"]
    elif kind is RequestKind.NOTIFY:
        envelope["message"] = payload["message"]
        envelope["timeout"] = payload["timeout"]
    return json.dumps(envelope)


def _remote_error(data: dict) -> RemoteError:
    error = data.get("error")
    if isinstance(error, dict):
        error = error.get("message", "Remote error")
    if error is None or error == "":
        error = "Remote execution failed"
    stack = data.get("stack")
    return RemoteError(
        str(error),
        stack=str(stack) if stack is not None else None,
    )


def _request_id(data: dict) -> str:
    request_id = data.get("id", data.get("requestId"))
    if isinstance(request_id, bool) or not isinstance(request_id, (str, int)):
        raise MalformedMessageError("Response has no usable id")
    request_id = str(request_id)
    if not request_id or len(request_id) > MAX_ID_LENGTH:
        raise MalformedMessageError("Response id is empty or too long")
    return request_id


def decode_message(raw: Union[str, bytes]) -> InboundMessage:
    """Parse one inbound frame. Raises MalformedMessageError."""
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError, RecursionError) as e:
        raise MalformedMessageError(f"Undecodable message: {sanitize(e, 100)}") from None

    if not isinstance(data, dict):
        raise MalformedMessageError("Message is not a JSON object")

    msg_type = data.get("type")

    if msg_type == "handshake":
        return InboundMessage(
            kind=MSG_HANDSHAKE,
            source=sanitize(data.get("source", "unknown"), 64),
            version=sanitize(data["version"], 64) if data.get("version") is not None else None,
        )

    if msg_type == "context-response":
        request_id = _request_id(data)
        if "context" in data and data["context"] is not None:
            outcome = Outcome.success(data["context"])
        else:
            outcome = Outcome.failure(_remote_error(data))
        return InboundMessage(MSG_RESPONSE, request_id=request_id, outcome=outcome)

    if "success" in data and (msg_type is None or msg_type == "execution-result"):
        request_id = _request_id(data)
        success = data["success"]
        if not isinstance(success, bool):
            raise MalformedMessageError("'success' must be a boolean")
        if success:
            outcome = Outcome.success(data.get("result"))
        else:
            outcome = Outcome.failure(_remote_error(data))
        return InboundMessage(MSG_RESPONSE, request_id=request_id, outcome=outcome)

    if msg_type is None:
        raise MalformedMessageError("Message has neither 'type' nor 'success'")

    return InboundMessage(kind=MSG_OTHER, type_name=sanitize(msg_type, 64))
