"""Claude Code CLI runner."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from claude_relay.errors import RuntimeFailure
from claude_relay.runners.base import CancelToken, InvocationSpec, RunState
from claude_relay.runners.claude.processor import note_message
from claude_relay.runners.pipeline import JSONLineStats, iter_json_line_pipeline
from claude_relay.runners.ports import RunnerEvent
from claude_relay.runners.subprocess_transport import SubprocessTransport

log = logging.getLogger("claude")

Event = RunnerEvent

_EOF = None


class ClaudeRunner:
    """Runs the Claude Code CLI and streams its stdout as structured frames."""

    def __init__(
        self,
        *,
        claude_bin: str = "claude",
        stdout_limit: int = 10 * 1024 * 1024,
        kill_timeout_s: float = 5.0,
    ):
        self.claude_bin = claude_bin
        self.stdout_limit = stdout_limit
        self.kill_timeout_s = kill_timeout_s
        self.state = RunState()
        self._transport = SubprocessTransport()

    def build_command(self, invocation: InvocationSpec) -> list[str]:
        """Build the claude command line."""
        cmd = [self.claude_bin]

        prompt = invocation.prompt or ""
        if prompt.strip():
            cmd.extend(["--print", prompt])

        if invocation.resume_session_id:
            cmd.extend(["--resume", invocation.resume_session_id])

        cmd.extend(["--output-format", "stream-json", "--verbose"])

        if invocation.mcp_config_path:
            cmd.extend(["--mcp-config", str(invocation.mcp_config_path)])

        if invocation.permission_mode:
            cmd.extend(["--permission-mode", invocation.permission_mode])

        if invocation.allowed_tools:
            cmd.extend(["--allowed-tools", ",".join(invocation.allowed_tools)])
        if invocation.disallowed_tools:
            cmd.extend(["--disallowed-tools", ",".join(invocation.disallowed_tools)])

        return cmd

    async def _pump_stdout(
        self,
        stream: asyncio.StreamReader,
        queue: asyncio.Queue,
        stats: JSONLineStats,
    ) -> None:
        try:
            async for frame in iter_json_line_pipeline(byte_stream=stream, stats=stats):
                await queue.put(frame)
        finally:
            queue.put_nowait(_EOF)

    async def _pump_stderr(self, stream: asyncio.StreamReader, queue: asyncio.Queue) -> None:
        try:
            while True:
                raw_line = await stream.readline()
                if not raw_line:
                    break
                line = raw_line.decode(errors="replace").rstrip()
                if line:
                    log.warning(f"Claude stderr: {line}")
                    await queue.put(("stderr", line))
        finally:
            queue.put_nowait(_EOF)

    async def run(
        self, invocation: InvocationSpec, cancel: CancelToken
    ) -> AsyncIterator[Event]:
        """Run Claude, yielding (kind, payload) frames.

        Events:
            ("message", dict) - One stream-json message
            ("raw", str) - Stdout line that was not a JSON object
            ("stderr", str) - Diagnostic output line
            ("error", str) - Runner-level failure summary

        Raises LaunchFailure when the process cannot be started.
        """
        self.state = RunState()
        cmd = self.build_command(invocation)
        log.info(f"Claude: {(invocation.prompt or '')[:50]}...")
        log.debug("Spawning %s in %s", cmd, invocation.working_dir)

        stdout, stderr = await self._transport.start(
            cmd,
            cwd=invocation.working_dir,
            stdout_limit=self.stdout_limit,
            keep_stdin_open=not (invocation.prompt or "").strip(),
        )
        log.info(f"Claude process started (pid={self._transport.pid})")

        queue: asyncio.Queue = asyncio.Queue()
        stats = JSONLineStats()
        tasks = [
            asyncio.create_task(self._pump_stdout(stdout, queue, stats)),
            asyncio.create_task(self._pump_stderr(stderr, queue)),
        ]

        try:
            open_streams = len(tasks)
            while open_streams:
                item = await queue.get()
                if item is _EOF:
                    open_streams -= 1
                    continue
                if cancel.cancelled:
                    break

                kind, payload = item
                if kind == "message":
                    self.state.message_count += 1
                    note_message(self.state, payload)
                elif kind == "raw":
                    self.state.raw_count += 1
                elif kind == "stderr":
                    self.state.stderr_lines += 1
                yield item

            for task in tasks:
                if task.done() and not task.cancelled() and task.exception():
                    raise RuntimeFailure(f"Reading Claude output failed: {task.exception()}")

            if cancel.cancelled:
                return

            returncode = await self._transport.wait()
            self.state.exit_code = returncode
            log.info(
                f"Claude process exited with code {returncode} "
                f"({self.state.message_count} messages, {self.state.raw_count} raw, "
                f"{self.state.stderr_lines} stderr, {self.state.duration_s:.1f}s)"
            )

            # If we got nothing at all, surface the raw output.
            if returncode != 0 and not stats.emitted_any and stats.non_json_lines:
                yield (
                    "error",
                    "Claude runner produced no JSON events:\n" + "\n".join(stats.non_json_lines),
                )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await self.cleanup()
            if self.state.exit_code is None:
                self.state.exit_code = self._transport.returncode

    async def cleanup(self) -> None:
        """Terminate and force-kill if the process doesn't exit."""
        await self._transport.cancel_and_kill(timeout=self.kill_timeout_s)
