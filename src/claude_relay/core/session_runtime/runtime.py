"""SessionUnit.

This is the single place that owns one external unit end to end:
- invocation assembly (cwd, tools, permission mode, resume, attachments, MCP)
- message relay in arrival order, with the session identity handshake
- cancellation and guaranteed teardown

It depends only on ports (runner, channel, registry), not on the concrete
WebSocket transport or a specific Claude backend.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import os
import time
import uuid
from pathlib import Path

from claude_relay.attachments import AttachmentSandbox, augment_prompt
from claude_relay.core.session_runtime.api import (
    ChannelPort,
    ClaudeResponse,
    Envelope,
    ErrorMessage,
    SessionComplete,
    SessionCreated,
    StartOptions,
)
from claude_relay.core.session_runtime.registry import SessionRegistry
from claude_relay.errors import (
    CLI_NOT_FOUND_HINT,
    AttachmentIOError,
    LaunchFailure,
    RuntimeFailure,
    TeardownFailure,
    looks_like_not_found,
)
from claude_relay.runners.base import CancelToken, InvocationSpec
from claude_relay.runners.claude.processor import MessageKind, classify, extract_session_id
from claude_relay.runners.ports import Runner

log = logging.getLogger("relay.session")

MOST_PERMISSIVE_MODE = "bypassPermissions"


class UnitState(str, enum.Enum):
    LAUNCHING = "launching"
    RUNNING = "running"
    COMPLETING = "completing"
    ABORTING = "aborting"
    FAILED = "failed"
    TERMINATED = "terminated"


_TERMINAL_BOUND = {UnitState.COMPLETING, UnitState.FAILED, UnitState.TERMINATED}


def generate_session_id() -> str:
    """Provisional id used until the unit reports its own."""
    return f"temp-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def resolve_permission_mode(explicit: str | None, skip_permissions: bool) -> str | None:
    if explicit:
        return explicit
    if skip_permissions:
        return MOST_PERMISSIVE_MODE
    return None


def load_mcp_servers(config_path: Path | None) -> dict | None:
    """Return the non-empty `mcp-servers` map from the Claude config, if any."""
    if config_path is None or not config_path.is_file():
        return None
    try:
        config = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        log.warning(f"Could not load MCP config from {config_path}: {e}")
        return None
    servers = config.get("mcp-servers") if isinstance(config, dict) else None
    if isinstance(servers, dict) and servers:
        return servers
    return None


class SessionUnit:
    """One external unit invocation bound to one channel."""

    def __init__(
        self,
        command: str,
        options: StartOptions,
        *,
        channel: ChannelPort,
        registry: SessionRegistry,
        runner: Runner,
        sandbox: AttachmentSandbox | None = None,
        mcp_config_path: Path | None = None,
    ):
        self.command = command or ""
        self.options = options
        self.channel = channel
        self.registry = registry
        self.runner = runner
        self.sandbox = sandbox or AttachmentSandbox()
        self.mcp_config_path = mcp_config_path

        self.cancel_token = CancelToken()
        self.state = UnitState.LAUNCHING
        self.provisional_id = options.session_id or generate_session_id()
        self.session_id = self.provisional_id
        self.exit_code: int | None = None

        # Latched by the first message that carries a session id.
        self._identity_captured = False
        self._session_created_sent = False
        self._sandbox_dir: Path | None = None
        self._pump_task: asyncio.Task | None = None
        self._launch_failed = False
        self._started = False
        self._terminated = False

    @property
    def is_new_session(self) -> bool:
        return not self.options.session_id and bool(self.command.strip())

    @property
    def aborted(self) -> bool:
        return self.state is UnitState.ABORTING or (
            self.cancel_token.cancelled and self.cancel_token.reason != "teardown"
        )

    def abort(self, reason: str = "abort") -> bool:
        """Settle the cancellation token and stop the pump. No-op once ending."""
        if self.state in _TERMINAL_BOUND:
            return False
        if not self.cancel_token.cancel(reason):
            return False
        log.info(f"Aborting session {self.session_id} ({reason})")
        self.state = UnitState.ABORTING
        if self._pump_task and not self._pump_task.done():
            self._pump_task.cancel()
        return True

    def start(self) -> None:
        """Claim the session id. Call before scheduling run() so an abort
        arriving in between finds this unit."""
        if self._started:
            return
        self._started = True
        self.registry.register(self.provisional_id, self)

    async def run(self) -> int | None:
        """Drive the unit to termination. Returns the exit code."""
        self.start()
        outer_cancelled = False
        try:
            # Aborted before the task got to run: nothing to launch.
            if not self.cancel_token.cancelled:
                invocation = await self._launch()
                if not self.cancel_token.cancelled:
                    self.state = UnitState.RUNNING
                    self._pump_task = asyncio.create_task(self._pump(invocation))
                    await self._pump_task
            if self.state is UnitState.RUNNING:
                self.state = UnitState.COMPLETING
        except asyncio.CancelledError:
            if not self.cancel_token.cancelled:
                # Cancelled from outside (server shutdown), not by abort().
                outer_cancelled = True
                self.abort("shutdown")
        except LaunchFailure as e:
            log.error(f"Failed to start Claude: {e}")
            self._launch_failed = True
            self.state = UnitState.FAILED
            await self._emit(ErrorMessage(e.user_message))
        except RuntimeFailure as e:
            if not self.aborted:
                log.error(f"Error during Claude session {self.session_id}: {e}")
                self.state = UnitState.FAILED
                await self._emit(ErrorMessage(str(e)))
        except Exception as e:
            log.exception(f"Unexpected error in session {self.session_id}")
            self.state = UnitState.FAILED
            await self._emit(ErrorMessage(str(e) or type(e).__name__))
        finally:
            await self._teardown()

        if outer_cancelled:
            raise asyncio.CancelledError()
        return self.exit_code

    async def _launch(self) -> InvocationSpec:
        opts = self.options
        working_dir = opts.cwd or os.getcwd()
        prompt = self.command
        attachment_paths: tuple[str, ...] = ()

        if opts.images:
            base = self.sandbox.base_for(working_dir)
            try:
                self._sandbox_dir, attachments = await asyncio.to_thread(
                    self.sandbox.acquire, base, opts.images
                )
            except AttachmentIOError as e:
                # Attachments are optional; the command still runs without them.
                log.error(f"Error processing images for Claude: {e}")
            else:
                prompt = augment_prompt(prompt, attachments)
                attachment_paths = tuple(a.local_path for a in attachments)

        mcp_servers = None
        if self.mcp_config_path is not None:
            mcp_servers = await asyncio.to_thread(load_mcp_servers, self.mcp_config_path)

        invocation = InvocationSpec(
            prompt=prompt,
            working_dir=working_dir,
            allowed_tools=opts.tools.allowed_tools,
            disallowed_tools=opts.tools.disallowed_tools,
            permission_mode=resolve_permission_mode(
                opts.permission_mode, opts.tools.skip_permissions
            ),
            resume_session_id=opts.session_id if (opts.resume and opts.session_id) else None,
            attachment_paths=attachment_paths,
            mcp_config_path=self.mcp_config_path if mcp_servers else None,
            mcp_servers=mcp_servers,
        )
        log.info(
            f"Starting session {self.session_id} in {working_dir} "
            f"(resume={invocation.resume_session_id or 'new session'})"
        )
        return invocation

    async def _pump(self, invocation: InvocationSpec) -> None:
        async with contextlib.aclosing(self.runner.run(invocation, self.cancel_token)) as frames:
            async for kind, payload in frames:
                if self.cancel_token.cancelled:
                    break
                await self._handle_frame(kind, payload)

    async def _handle_frame(self, kind: str, payload: object) -> None:
        if kind == "message" and isinstance(payload, dict):
            await self._handle_message(payload)
        elif kind == "stderr":
            text = str(payload)
            await self._emit(ErrorMessage(CLI_NOT_FOUND_HINT if looks_like_not_found(text) else text))
        elif kind == "error":
            await self._emit(ErrorMessage(str(payload)))
        elif kind == "raw":
            log.debug(f"Session {self.session_id}: raw output {str(payload)[:200]!r}")

    async def _handle_message(self, message: dict) -> None:
        await self._capture_identity(message)
        if self.cancel_token.cancelled:
            return

        kind = classify(message)
        if kind is MessageKind.USER_ECHO:
            log.debug("Skipping user message echo")
            return
        if kind is MessageKind.ERROR:
            text = message.get("error") or message.get("message") or json.dumps(message)
            await self._emit(ErrorMessage(str(text)))
            return
        await self._emit(ClaudeResponse(message))

    async def _capture_identity(self, message: dict) -> None:
        if self._identity_captured:
            return
        session_id = extract_session_id(message)
        if not session_id:
            return
        self._identity_captured = True

        previous = self.session_id
        self.session_id = session_id
        if session_id != previous:
            self.registry.rekey(previous, session_id, self)
        log.info(f"Captured session ID: {session_id}")
        await self._announce_session()

    async def _announce_session(self) -> None:
        if self._session_created_sent:
            return
        self._session_created_sent = True
        await self._emit(SessionCreated(self.session_id))

    def _resolve_exit_code(self) -> int | None:
        if self._launch_failed:
            return None
        run_state = getattr(self.runner, "state", None)
        code = run_state.exit_code if run_state is not None else None
        if code is None and self.state is UnitState.FAILED:
            return 1
        return code

    async def _teardown(self) -> None:
        if self._terminated:
            return
        self._terminated = True

        try:
            await asyncio.to_thread(self.sandbox.release, self._sandbox_dir)
        except TeardownFailure as e:
            log.error(f"Teardown of session {self.session_id}: {e}")

        try:
            self.registry.remove(self.session_id, self)
            if self.provisional_id != self.session_id:
                self.registry.remove(self.provisional_id, self)
        except Exception:
            log.exception(f"Registry cleanup failed for session {self.session_id}")

        self.cancel_token.cancel("teardown")

        if not self._session_created_sent:
            await self._announce_session()

        self.exit_code = self._resolve_exit_code()
        log.info(f"Session {self.session_id} finished (exit={self.exit_code}, state={self.state.value})")
        self.state = UnitState.TERMINATED
        await self._emit(
            SessionComplete(exit_code=self.exit_code, is_new_session=self.is_new_session)
        )

    async def _emit(self, envelope: Envelope) -> None:
        await self.channel.send(envelope)
