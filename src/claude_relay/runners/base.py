"""Base runner types shared by runner implementations."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path


@dataclass(frozen=True)
class InvocationSpec:
    """Resolved launch parameters for one external unit."""

    prompt: str
    working_dir: str
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    permission_mode: str | None = None
    resume_session_id: str | None = None
    attachment_paths: tuple[str, ...] = ()
    mcp_config_path: Path | None = None
    mcp_servers: dict | None = None


class CancelToken:
    """Per-unit cancellation signal, settled at most once."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "abort") -> bool:
        """Settle the token. Returns False if it was already settled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True


@dataclass
class RunState:
    """Accumulates state during a runner execution."""

    start_time: datetime = field(default_factory=datetime.now)
    message_count: int = 0
    raw_count: int = 0
    stderr_lines: int = 0
    saw_error: bool = False
    exit_code: int | None = None

    @property
    def duration_s(self) -> float:
        return (datetime.now() - self.start_time).total_seconds()
