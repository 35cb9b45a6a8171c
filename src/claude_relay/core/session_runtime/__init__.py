"""Session runtime (core orchestration).

This package implements the per-unit supervisor with:
- the session identity handshake (provisional id -> unit-reported id)
- unified cancellation (abort from the channel, or supersession by a new unit)
- backend-agnostic runner orchestration (CLI subprocess / Agent SDK)

Transport (WebSocket) and the concrete runner are injected via ports.
"""

from claude_relay.core.session_runtime.registry import SessionRegistry
from claude_relay.core.session_runtime.runtime import SessionUnit, UnitState

__all__ = ["SessionRegistry", "SessionUnit", "UnitState"]
