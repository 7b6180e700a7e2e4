from __future__ import annotations

from typing import Protocol


class ProviderPort(Protocol):
    """A free-text generation backend.

    ``messages`` alternate ``user`` and ``assistant`` roles; the system context
    is passed separately because backends place it differently.
    """

    name: str

    async def is_available(self) -> bool:
        ...

    async def generate(self, system_context: str, messages: list[dict[str, str]]) -> str:
        ...
