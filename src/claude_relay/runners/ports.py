"""Ports (interfaces) for runner implementations.

The session runtime depends on these contracts rather than on the concrete
CLI or SDK backends.
"""

from __future__ import annotations

from typing import AsyncIterator, Protocol

from claude_relay.runners.base import CancelToken, InvocationSpec, RunState


# ("message", dict)  structured message from the unit
# ("raw", str)       stdout line that was not a JSON object
# ("stderr", str)    diagnostic output
# ("error", str)     runner-level failure worth showing to the client
RunnerEvent = tuple[str, object]


class Runner(Protocol):
    """Produces a sequence of structured messages for one invocation."""

    state: RunState

    def run(self, invocation: InvocationSpec, cancel: CancelToken) -> AsyncIterator[RunnerEvent]:
        ...

    async def cleanup(self) -> None:
        ...
