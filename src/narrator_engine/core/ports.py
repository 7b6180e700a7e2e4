from __future__ import annotations

from typing import Any, Protocol

from .types import GenerationResult


class GenerationPort(Protocol):
    async def invoke(
        self,
        system_context: str,
        transcript: list[dict[str, Any]],
        new_turn_text: str,
        preferred: str | None = None,
    ) -> GenerationResult:
        ...


class ActivityCheckPort(Protocol):
    def find_conflicting_activity(self, character_id: str) -> str | None:
        """Return the id of a long-running activity that blocks a new session, if any."""
        ...
