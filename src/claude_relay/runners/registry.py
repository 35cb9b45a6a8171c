"""Runner registry.

This provides a single place to map a backend name to its concrete runner
implementation. Callers should depend on the `Runner` port.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from claude_relay.config import RelayConfig

if TYPE_CHECKING:
    from claude_relay.runners.ports import Runner


def create_runner(backend: str, *, config: RelayConfig | None = None) -> Runner:
    backend = (backend or "").strip().lower()

    if backend == "cli":
        from claude_relay.runners.claude.runner import ClaudeRunner

        if config is None:
            return ClaudeRunner()
        return ClaudeRunner(
            claude_bin=config.claude_bin,
            stdout_limit=config.stdout_limit,
            kill_timeout_s=config.kill_timeout_s,
        )

    if backend == "sdk":
        from claude_relay.runners.claude.sdk import ClaudeSdkRunner

        return ClaudeSdkRunner()

    raise ValueError(f"Unknown backend: {backend}")
