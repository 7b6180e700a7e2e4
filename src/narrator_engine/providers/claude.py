from __future__ import annotations

from typing import Any

import anthropic

from ..core.errors import ProviderRequestError, TransientProviderError

DEFAULT_CLAUDE_MODEL = "claude-sonnet-4-20250514"
TRANSIENT_STATUS_CODES = (429, 500, 502, 503, 529)


class ClaudeProvider:
    """Anthropic Messages API backend. Available whenever an API key is configured."""

    name = "claude"

    def __init__(
        self,
        api_key: str | None,
        model: str = DEFAULT_CLAUDE_MODEL,
        max_tokens: int = 1000,
        timeout: float = 120.0,
        client: Any | None = None,
    ):
        self._model = model
        self._max_tokens = max_tokens
        if client is None and api_key:
            # Retries belong to the gateway.
            client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0, timeout=timeout)
        self._client = client

    async def is_available(self) -> bool:
        return self._client is not None

    async def generate(self, system_context: str, messages: list[dict[str, str]]) -> str:
        if self._client is None:
            raise ProviderRequestError("ANTHROPIC_API_KEY is not configured")
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=system_context,
                messages=messages,
            )
        except anthropic.APIStatusError as exc:
            if exc.status_code in TRANSIENT_STATUS_CODES:
                raise TransientProviderError(f"claude returned {exc.status_code}") from exc
            raise ProviderRequestError(f"claude returned {exc.status_code}: {exc.message}") from exc
        except anthropic.APIConnectionError as exc:
            raise TransientProviderError(f"cannot reach claude: {exc}") from exc

        return "".join(block.text for block in response.content if getattr(block, "type", None) == "text")
