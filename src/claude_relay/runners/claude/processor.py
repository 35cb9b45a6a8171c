"""Claude message classification.

Separates message-shape concerns from the subprocess / SDK orchestration in
`runner.py` and `sdk.py`. Both backends end up producing stream-json shaped
dicts; this module decides what kind of envelope each one is.
"""

from __future__ import annotations

import dataclasses
import enum
from typing import Any


class MessageKind(str, enum.Enum):
    SYSTEM_INIT = "system-init"
    ASSISTANT_CONTENT = "assistant-content"
    RESULT = "result"
    ERROR = "error"
    RAW_UNPARSED = "raw-unparsed"
    USER_ECHO = "user-echo"
    OTHER = "other"


def extract_session_id(message: dict) -> str | None:
    session_id = message.get("session_id")
    if isinstance(session_id, str) and session_id.strip():
        return session_id.strip()
    return None


def _carries_tool_result(message: dict) -> bool:
    inner = message.get("message")
    content = inner.get("content") if isinstance(inner, dict) else message.get("content")
    if not isinstance(content, list):
        return False
    return any(isinstance(b, dict) and b.get("type") == "tool_result" for b in content)


def note_message(state, message: dict) -> None:
    """Flag the run as failed when the unit reports an error."""
    kind = classify(message)
    if kind is MessageKind.ERROR or (kind is MessageKind.RESULT and message.get("is_error")):
        state.saw_error = True


def classify(message: dict) -> MessageKind:
    event_type = message.get("type")

    if event_type == "system":
        if message.get("subtype") == "init":
            return MessageKind.SYSTEM_INIT
        return MessageKind.OTHER
    if event_type == "assistant":
        return MessageKind.ASSISTANT_CONTENT
    if event_type == "result":
        return MessageKind.RESULT
    if event_type == "error":
        return MessageKind.ERROR
    if event_type == "user":
        # Tool results come back as user turns; only the prompt itself is an echo.
        if _carries_tool_result(message):
            return MessageKind.OTHER
        return MessageKind.USER_ECHO
    return MessageKind.OTHER


# -----------------
# SDK normalisation
# -----------------

_BLOCK_TYPES = {
    "TextBlock": "text",
    "ThinkingBlock": "thinking",
    "ToolUseBlock": "tool_use",
    "ToolResultBlock": "tool_result",
}


def _to_plain(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        data = {f.name: _to_plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
        block_type = _BLOCK_TYPES.get(type(value).__name__)
        if block_type and "type" not in data:
            data = {"type": block_type, **data}
        return data
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    return value


def _system(message: Any) -> dict:
    data = dict(getattr(message, "data", None) or {})
    subtype = getattr(message, "subtype", None) or data.get("subtype")
    out: dict[str, Any] = {
        "type": "system",
        "subtype": subtype,
        "session_id": data.get("session_id"),
    }
    if subtype == "init":
        out["system_info"] = {
            "api_key_source": data.get("apiKeySource"),
            "cwd": data.get("cwd"),
            "tools": data.get("tools"),
            "mcp_servers": data.get("mcp_servers"),
            "model": data.get("model"),
            "permission_mode": data.get("permissionMode"),
        }
    else:
        out["data"] = _to_plain(data)
    return out


def _assistant(message: Any) -> dict:
    content = _to_plain(getattr(message, "content", []) or [])
    inner = {
        "role": "assistant",
        "model": getattr(message, "model", None),
        "content": content,
    }
    return {
        "type": "assistant",
        "content": content,
        "message": inner,
        "session_id": getattr(message, "session_id", None),
        "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
    }


def _user(message: Any) -> dict:
    content = getattr(message, "content", "")
    content = _to_plain(content) if not isinstance(content, str) else content
    return {
        "type": "user",
        "message": {"role": "user", "content": content},
        "session_id": getattr(message, "session_id", None),
        "parent_tool_use_id": getattr(message, "parent_tool_use_id", None),
    }


def _result(message: Any) -> dict:
    return {
        "type": "result",
        "subtype": getattr(message, "subtype", None),
        "is_error": bool(getattr(message, "is_error", False)),
        "duration_ms": getattr(message, "duration_ms", None),
        "num_turns": getattr(message, "num_turns", None),
        "total_cost_usd": getattr(message, "total_cost_usd", None),
        "usage": _to_plain(getattr(message, "usage", None)),
        "result": getattr(message, "result", None),
        "session_id": getattr(message, "session_id", None),
    }


def _stream_event(message: Any) -> dict:
    return {
        "type": "stream_event",
        "event": _to_plain(getattr(message, "event", None)),
        "session_id": getattr(message, "session_id", None),
    }


_NORMALISERS = {
    "SystemMessage": _system,
    "AssistantMessage": _assistant,
    "UserMessage": _user,
    "ResultMessage": _result,
    "StreamEvent": _stream_event,
}


def normalize_sdk_message(message: Any) -> dict:
    """Convert an SDK message object into the stream-json dict shape."""
    if isinstance(message, dict):
        return message
    normaliser = _NORMALISERS.get(type(message).__name__)
    if normaliser is not None:
        return normaliser(message)
    plain = _to_plain(message)
    if isinstance(plain, dict):
        plain.setdefault("type", type(message).__name__)
        return plain
    return {"type": "unknown", "value": repr(message)}
