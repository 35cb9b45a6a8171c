"""Claude Agent SDK runner.

Wraps claude_agent_sdk.query() so SDK sessions feed the same frame stream as
the CLI runner. Messages are normalised to stream-json dicts on the way out.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

from claude_relay.errors import LaunchFailure, RuntimeFailure
from claude_relay.runners.base import CancelToken, InvocationSpec, RunState
from claude_relay.runners.claude.processor import normalize_sdk_message, note_message
from claude_relay.runners.pipeline import iter_structured
from claude_relay.runners.ports import RunnerEvent

log = logging.getLogger("claude.sdk")

QueryFn = Callable[..., AsyncIterator[Any]]

_EOF = None


def _default_query() -> tuple[QueryFn, type]:
    try:
        from claude_agent_sdk import ClaudeAgentOptions, query
    except ImportError as e:
        raise LaunchFailure(f"claude_agent_sdk not installed: {e}") from e
    return query, ClaudeAgentOptions


class ClaudeSdkRunner:
    """Streams a native SDK query. Cancellation is task cancellation."""

    def __init__(
        self,
        *,
        query_fn: QueryFn | None = None,
        options_cls: type | None = None,
    ):
        self._query_fn = query_fn
        self._options_cls = options_cls
        self.state = RunState()
        self._queue: asyncio.Queue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _resolve(self) -> tuple[QueryFn, type | None]:
        if self._query_fn is not None:
            return self._query_fn, self._options_cls
        query, options_cls = _default_query()
        return query, self._options_cls or options_cls

    def build_options(self, invocation: InvocationSpec) -> dict[str, Any]:
        opts: dict[str, Any] = {
            "cwd": invocation.working_dir,
            "permission_mode": invocation.permission_mode or "default",
            "allowed_tools": list(invocation.allowed_tools),
            "disallowed_tools": list(invocation.disallowed_tools),
            "continue_conversation": False,
            "stderr": self._on_stderr,
        }
        if invocation.resume_session_id:
            opts["resume"] = invocation.resume_session_id
        if invocation.mcp_servers:
            opts["mcp_servers"] = dict(invocation.mcp_servers)
        return opts

    def _on_stderr(self, data: str) -> None:
        for line in (data or "").splitlines():
            line = line.rstrip()
            if line:
                log.warning(f"Claude stderr: {line}")
                self._put(("stderr", line))

    def _put(self, item: RunnerEvent | None) -> None:
        queue, loop = self._queue, self._loop
        if queue is None or loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        # The SDK may invoke the stderr callback off the event loop thread.
        if running is loop:
            queue.put_nowait(item)
        else:
            loop.call_soon_threadsafe(queue.put_nowait, item)

    async def _messages(self, query_fn: QueryFn, prompt: str, options: Any) -> AsyncIterator[dict]:
        async for message in query_fn(prompt=prompt, options=options):
            yield normalize_sdk_message(message)

    async def _pump_messages(self, query_fn: QueryFn, prompt: str, options: Any) -> None:
        try:
            async for frame in iter_structured(self._messages(query_fn, prompt, options)):
                self._put(frame)
        finally:
            self._put(_EOF)

    async def run(
        self, invocation: InvocationSpec, cancel: CancelToken
    ) -> AsyncIterator[RunnerEvent]:
        """Run one SDK query, yielding stderr lines as they arrive and
        messages in order. Raises RuntimeFailure if the query fails."""
        self.state = RunState()
        query_fn, options_cls = self._resolve()
        self._queue = asyncio.Queue()
        self._loop = asyncio.get_running_loop()

        raw_opts = self.build_options(invocation)
        options = options_cls(**raw_opts) if options_cls is not None else raw_opts
        log.info(
            "Starting Claude SDK session in %s (resume=%s)",
            invocation.working_dir,
            invocation.resume_session_id or "new session",
        )

        pump = asyncio.create_task(self._pump_messages(query_fn, invocation.prompt, options))
        try:
            while True:
                item = await self._queue.get()
                if item is _EOF or cancel.cancelled:
                    break
                kind, payload = item
                if kind == "message":
                    self.state.message_count += 1
                    note_message(self.state, payload)
                elif kind == "stderr":
                    self.state.stderr_lines += 1
                yield item

            if pump.done() and not pump.cancelled() and pump.exception():
                e = pump.exception()
                self.state.exit_code = 1
                if isinstance(e, RuntimeFailure):
                    raise e
                raise RuntimeFailure(str(e) or type(e).__name__) from e

            self.state.exit_code = 1 if self.state.saw_error else 0
        finally:
            if not pump.done():
                pump.cancel()
            self._queue = None

    async def cleanup(self) -> None:
        # Cancelling the pump closes the query generator, which tears down
        # the SDK transport.
        return None
