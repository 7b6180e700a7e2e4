from __future__ import annotations

from typing import Any

import httpx

from ..core.errors import ProviderRequestError, TransientProviderError

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "llama3.1:8b"
DEFAULT_OPTIONS = {"temperature": 0.7, "top_p": 0.9, "num_predict": 1000}


class OllamaProvider:
    """Local Ollama chat backend; available when ``/api/tags`` answers."""

    name = "ollama"

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        model: str = DEFAULT_OLLAMA_MODEL,
        timeout: float = 120.0,
        options: dict[str, Any] | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout = timeout
        self._options = dict(options or DEFAULT_OPTIONS)

    async def is_available(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self._base_url}/api/tags")
        except httpx.HTTPError:
            return False
        return resp.status_code == 200

    async def generate(self, system_context: str, messages: list[dict[str, str]]) -> str:
        payload = {
            "model": self._model,
            "messages": [{"role": "system", "content": system_context}, *messages],
            "stream": False,
            "options": dict(self._options),
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(f"{self._base_url}/api/chat", json=payload)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 429 or status >= 500:
                raise TransientProviderError(f"ollama returned {status}") from exc
            raise ProviderRequestError(f"ollama returned {status}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"cannot reach ollama at {self._base_url}: {exc}") from exc

        data = resp.json()
        content = (data.get("message") or {}).get("content")
        if not isinstance(content, str):
            raise ProviderRequestError("unexpected response format from ollama")
        return content
