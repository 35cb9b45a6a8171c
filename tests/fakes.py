from __future__ import annotations

import asyncio
from pathlib import Path

from claude_relay.config import RelayConfig
from claude_relay.core.session_runtime.api import ClaudeResponse, Envelope
from claude_relay.runners.base import CancelToken, InvocationSpec, RunState


class FakeChannel:
    def __init__(self) -> None:
        self.envelopes: list[Envelope] = []
        self.got_response = asyncio.Event()

    async def send(self, envelope: Envelope) -> None:
        self.envelopes.append(envelope)
        if isinstance(envelope, ClaudeResponse):
            self.got_response.set()

    @property
    def dicts(self) -> list[dict]:
        return [e.to_dict() for e in self.envelopes]

    def types(self) -> list[str]:
        return [d["type"] for d in self.dicts]


class FakeRunner:
    """Scripted runner: yields frames, optionally blocks, then finishes."""

    def __init__(
        self,
        frames: list[tuple[str, object]] | None = None,
        *,
        exit_code: int | None = 0,
        gate: asyncio.Event | None = None,
        launch_error: Exception | None = None,
        error: Exception | None = None,
    ):
        self.frames = list(frames or [])
        self.exit_code = exit_code
        self.gate = gate
        self.launch_error = launch_error
        self.error = error
        self.state = RunState()
        self.invocations: list[InvocationSpec] = []
        self.attachments_present: list[bool] = []
        self.cleaned_up = False

    async def run(self, invocation: InvocationSpec, cancel: CancelToken):
        self.invocations.append(invocation)
        self.attachments_present = [Path(p).exists() for p in invocation.attachment_paths]
        if self.launch_error is not None:
            raise self.launch_error
        try:
            for frame in self.frames:
                yield frame
                await asyncio.sleep(0)
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            self.state.exit_code = self.exit_code
        finally:
            self.cleaned_up = True

    async def cleanup(self) -> None:
        return None


def init_message(session_id: str) -> tuple[str, object]:
    return ("message", {"type": "system", "subtype": "init", "session_id": session_id})


def assistant_message(text: str, session_id: str | None = None) -> tuple[str, object]:
    msg: dict = {
        "type": "assistant",
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }
    if session_id:
        msg["session_id"] = session_id
    return ("message", msg)


def result_message(session_id: str | None = None) -> tuple[str, object]:
    msg: dict = {"type": "result", "subtype": "success", "is_error": False}
    if session_id:
        msg["session_id"] = session_id
    return ("message", msg)


def make_config(tmp_path: Path, **overrides) -> RelayConfig:
    values = dict(
        host="127.0.0.1",
        port=0,
        backend="cli",
        claude_bin="claude",
        claude_config_path=tmp_path / "claude.json",
        sandbox_dir=None,
        kill_timeout_s=2.0,
        stdout_limit=1024 * 1024,
        log_level="DEBUG",
    )
    values.update(overrides)
    return RelayConfig(**values)
