"""JSON-lines protocol for daemon IPC.

Each message is one compact JSON object followed by a single newline.
json.dumps escapes control characters, so a frame never contains a raw
newline before its terminator.

Command format:
    {
        "id": str,          # Per-invocation request identifier
        "action": str,      # e.g. "navigate", "url", "close"
        ...                 # Action-specific flat fields ("url", "selector", ...)
    }

Response format:
    {
        "id": str,          # Echo of the command id (optional)
        "success": bool,
        "data": Any,        # Action-dependent payload on success (optional)
        "error": str,       # Human-readable message on failure
    }
"""

import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

from agentbrowser.daemon.errors import ProtocolError

FRAME_DELIMITER = b"\n"

# Screenshots travel inline as base64, so allow generous frames
MAX_FRAME_BYTES = 64 * 1024 * 1024

_RESERVED = ("id", "action")


def gen_id() -> str:
    """
    Request identifier: sub-second clock plus a random suffix.

    Only needs to be unique within one invocation's send/receive window;
    the suffix keeps concurrent invocations in the same microsecond apart.
    """
    micros = (time.time_ns() // 1000) % 1_000_000
    return f"r{micros}-{secrets.token_hex(2)}"


@dataclass
class Command:
    """One self-describing unit of work for the daemon."""
    action: str
    fields: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=gen_id)

    def to_dict(self) -> Dict[str, Any]:
        payload = {k: v for k, v in self.fields.items() if k not in _RESERVED}
        return {"id": self.id, "action": self.action, **payload}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Command":
        action = data.get("action")
        if not isinstance(action, str) or not action:
            raise ProtocolError("command is missing a string 'action'")
        command_id = data.get("id")
        if command_id is None:
            command_id = gen_id()
        elif not isinstance(command_id, str):
            raise ProtocolError("command 'id' must be a string")
        fields_ = {k: v for k, v in data.items() if k not in _RESERVED}
        return cls(action=action, fields=fields_, id=command_id)


@dataclass
class Response:
    """Outcome of exactly one Command."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.id is not None:
            payload["id"] = self.id
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        return payload


def build_command(action: str, **fields: Any) -> Command:
    """Command with a fresh id."""
    return Command(action=action, fields=fields)


def success_response(command_id: Optional[str], data: Any = None) -> Response:
    return Response(success=True, data=data, id=command_id)


def error_response(command_id: Optional[str], message: str) -> Response:
    return Response(success=False, error=message, id=command_id)


def _encode(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8") + FRAME_DELIMITER


def _decode_object(line: bytes, what: str) -> Dict[str, Any]:
    try:
        payload = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"invalid {what} JSON: {e}")
    if not isinstance(payload, dict):
        raise ProtocolError(f"{what} must be a JSON object, got {type(payload).__name__}")
    return payload


def serialize_command(command: Union[Command, Mapping[str, Any]]) -> bytes:
    """
    Serialize a command to one newline-terminated frame.

    Accepts a Command or a ready-made flat mapping with an 'action' key.
    """
    if not isinstance(command, Command):
        command = Command.from_dict(command)
    return _encode(command.to_dict())


def deserialize_command(line: bytes) -> Command:
    """
    Parse one command frame (delimiter optional).

    Raises:
        ProtocolError: If the frame is not a JSON object with an action
    """
    return Command.from_dict(_decode_object(line.rstrip(FRAME_DELIMITER), "command"))


def serialize_response(response: Response) -> bytes:
    return _encode(response.to_dict())


def deserialize_response(line: bytes) -> Response:
    """
    Parse one response frame (delimiter optional).

    Raises:
        ProtocolError: If the frame is not a JSON object with a boolean
            'success' field, or 'error' is not a string
    """
    payload = _decode_object(line.rstrip(FRAME_DELIMITER), "response")

    success = payload.get("success")
    if not isinstance(success, bool):
        raise ProtocolError("response is missing a boolean 'success' field")

    error = payload.get("error")
    if error is not None and not isinstance(error, str):
        raise ProtocolError("response 'error' must be a string")

    response_id = payload.get("id")
    if response_id is not None and not isinstance(response_id, str):
        raise ProtocolError("response 'id' must be a string")

    if not success and error is None:
        error = "Unknown error"

    return Response(success=success, data=payload.get("data"), error=error, id=response_id)
