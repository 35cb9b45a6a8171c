"""Claude backends (CLI subprocess and Agent SDK)."""

from claude_relay.runners.claude.runner import ClaudeRunner
from claude_relay.runners.claude.sdk import ClaudeSdkRunner

__all__ = ["ClaudeRunner", "ClaudeSdkRunner"]
