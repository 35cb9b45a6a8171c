"""Public API for the session runtime.

This module is the stable boundary between:
- transport/adapters (the WebSocket channel)
- the concrete runtime implementation (runtime.py)

Code outside the runtime should depend on these types/protocols, not on
SessionUnit internals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


def _str_list(value: object) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(v).strip() for v in value if str(v).strip())


@dataclass(frozen=True)
class ToolsSettings:
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    skip_permissions: bool = False

    @classmethod
    def from_payload(cls, payload: object) -> "ToolsSettings":
        if not isinstance(payload, dict):
            return cls()
        return cls(
            allowed_tools=_str_list(payload.get("allowedTools")),
            disallowed_tools=_str_list(payload.get("disallowedTools")),
            skip_permissions=bool(payload.get("skipPermissions", False)),
        )


@dataclass(frozen=True)
class StartOptions:
    session_id: str | None = None
    project_path: str | None = None
    cwd: str | None = None
    resume: bool = False
    tools: ToolsSettings = field(default_factory=ToolsSettings)
    permission_mode: str | None = None
    images: tuple[object, ...] = ()

    @classmethod
    def from_payload(cls, payload: object) -> "StartOptions":
        """Parse the client's camelCase options object."""
        if not isinstance(payload, dict):
            return cls()

        def _opt_str(key: str) -> str | None:
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            return None

        images = payload.get("images")
        return cls(
            session_id=_opt_str("sessionId"),
            project_path=_opt_str("projectPath"),
            cwd=_opt_str("cwd"),
            resume=bool(payload.get("resume", False)),
            tools=ToolsSettings.from_payload(payload.get("toolsSettings")),
            permission_mode=_opt_str("permissionMode"),
            images=tuple(images) if isinstance(images, list) else (),
        )


# -----------------
# Event boundary
# -----------------


@dataclass(frozen=True)
class SessionCreated:
    session_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "session-created", "sessionId": self.session_id}


@dataclass(frozen=True)
class ClaudeResponse:
    data: dict

    def to_dict(self) -> dict[str, Any]:
        return {"type": "claude-response", "data": self.data}


@dataclass(frozen=True)
class ErrorMessage:
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "error", "error": self.message}


@dataclass(frozen=True)
class SessionComplete:
    exit_code: int | None
    is_new_session: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "session-complete",
            "exitCode": self.exit_code,
            "isNewSession": self.is_new_session,
        }


@dataclass(frozen=True)
class SessionAborted:
    session_id: str
    success: bool

    def to_dict(self) -> dict[str, Any]:
        return {"type": "session-aborted", "sessionId": self.session_id, "success": self.success}


Envelope = SessionCreated | ClaudeResponse | ErrorMessage | SessionComplete | SessionAborted


class ChannelPort(Protocol):
    """The single outbound destination of a unit."""

    async def send(self, envelope: Envelope) -> None: ...
