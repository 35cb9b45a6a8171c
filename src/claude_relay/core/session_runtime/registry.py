"""Session registry: session id -> live unit.

One registry object is owned by the server and passed to every unit. All
operations are synchronous, so under asyncio no caller can observe an id
mapped to two units.
"""

from __future__ import annotations

import logging
from typing import Protocol

log = logging.getLogger("relay.registry")


class AbortableUnit(Protocol):
    def abort(self, reason: str = "abort") -> bool: ...


class SessionRegistry:
    def __init__(self) -> None:
        self._units: dict[str, AbortableUnit] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._units

    def __len__(self) -> int:
        return len(self._units)

    def get(self, session_id: str) -> AbortableUnit | None:
        return self._units.get(session_id)

    def register(self, session_id: str, unit: AbortableUnit) -> None:
        """Register unit under session_id, aborting any other live unit there."""
        existing = self._units.get(session_id)
        if existing is not None and existing is not unit:
            log.info(f"Aborting existing unit for session {session_id}")
            del self._units[session_id]
            existing.abort("superseded")
        self._units[session_id] = unit

    def rekey(self, old_id: str, new_id: str, unit: AbortableUnit) -> None:
        """Move unit from its provisional id to the id the unit reported."""
        if old_id == new_id:
            self.register(new_id, unit)
            return
        if self._units.get(old_id) is unit:
            del self._units[old_id]
        self.register(new_id, unit)
        log.info(f"Session {old_id} is now {new_id}")

    def remove(self, session_id: str, unit: AbortableUnit | None = None) -> bool:
        """Remove the entry; with unit given, only if it still maps to that unit."""
        current = self._units.get(session_id)
        if current is None:
            return False
        if unit is not None and current is not unit:
            return False
        del self._units[session_id]
        return True

    def abort(self, session_id: str) -> bool:
        """Signal cancellation and drop the entry. False when nothing is live."""
        unit = self._units.pop(session_id, None)
        if unit is None:
            return False
        log.info(f"Aborting session {session_id}")
        unit.abort("abort")
        return True

    def abort_all(self) -> int:
        count = 0
        for session_id in list(self._units):
            if self.abort(session_id):
                count += 1
        return count
