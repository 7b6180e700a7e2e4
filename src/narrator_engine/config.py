from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .providers import ClaudeProvider, OllamaProvider, ProviderGateway, RetryPolicy
from .providers.claude import DEFAULT_CLAUDE_MODEL
from .providers.ollama import DEFAULT_OLLAMA_MODEL, DEFAULT_OLLAMA_URL


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _float_env(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class EngineSettings:
    database_url: str = "sqlite+pysqlite:///narrator.db"
    anthropic_api_key: Optional[str] = None
    claude_model: str = DEFAULT_CLAUDE_MODEL
    claude_max_tokens: int = 1000
    ollama_url: str = DEFAULT_OLLAMA_URL
    ollama_model: str = DEFAULT_OLLAMA_MODEL
    ollama_timeout: float = 120.0
    lease_ttl_seconds: int = 90
    generation_timeout_seconds: Optional[float] = 180.0
    max_transcript_turns: int = 40
    provider_retries: int = 3

    @classmethod
    def from_env(cls) -> "EngineSettings":
        defaults = cls()
        return cls(
            database_url=os.getenv("NARRATOR_DATABASE_URL", defaults.database_url),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            claude_model=os.getenv("CLAUDE_MODEL", defaults.claude_model),
            claude_max_tokens=_int_env("CLAUDE_MAX_TOKENS", defaults.claude_max_tokens),
            ollama_url=os.getenv("OLLAMA_URL", defaults.ollama_url),
            ollama_model=os.getenv("OLLAMA_MODEL", defaults.ollama_model),
            ollama_timeout=_float_env("OLLAMA_TIMEOUT", defaults.ollama_timeout),
            lease_ttl_seconds=_int_env("NARRATOR_LEASE_TTL_SECONDS", defaults.lease_ttl_seconds),
            generation_timeout_seconds=_float_env(
                "NARRATOR_GENERATION_TIMEOUT_SECONDS", defaults.generation_timeout_seconds
            ),
            max_transcript_turns=_int_env("NARRATOR_MAX_TRANSCRIPT_TURNS", defaults.max_transcript_turns),
            provider_retries=_int_env("NARRATOR_PROVIDER_RETRIES", defaults.provider_retries),
        )


def build_default_gateway(settings: EngineSettings) -> ProviderGateway:
    """Claude first when a key is configured, then the local Ollama server."""
    providers = []
    if settings.anthropic_api_key:
        providers.append(
            ClaudeProvider(
                api_key=settings.anthropic_api_key,
                model=settings.claude_model,
                max_tokens=settings.claude_max_tokens,
            )
        )
    providers.append(
        OllamaProvider(
            base_url=settings.ollama_url,
            model=settings.ollama_model,
            timeout=settings.ollama_timeout,
        )
    )
    return ProviderGateway(providers, retry_policy=RetryPolicy(attempts=settings.provider_retries + 1))
