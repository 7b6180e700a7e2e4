from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.errors import (
    GenerationError,
    NoProviderAvailableError,
    ProviderUnavailableError,
    TransientProviderError,
)
from ..core.types import GenerationResult
from .ports import ProviderPort

_META_COMMENTARY = (
    re.compile(r"\n*\(Note:[\s\S]*?\)\.?\s*$", re.IGNORECASE),
    re.compile(r"\n*\(This (?:scene |establishes|is the beginning)[\s\S]*?\)\.?\s*$", re.IGNORECASE),
    re.compile(r"\n*\[Note:[\s\S]*?\]\.?\s*$", re.IGNORECASE),
    re.compile(r"\n+Note:.*$", re.IGNORECASE),
    re.compile(r"\n*\*+(?:Note|DM|Behind the scenes)[\s\S]*?\*+\.?\s*$", re.IGNORECASE),
)

_CHAT_ROLES = {"participant": "user", "system": "user", "generator": "assistant"}


def cleanup_response(text: str) -> str:
    """Strip trailing out-of-character notes the model appends to its narration."""
    cleaned = text or ""
    for pattern in _META_COMMENTARY:
        cleaned = pattern.sub("", cleaned)
    return cleaned.strip()


def to_chat_messages(transcript: Sequence[dict[str, Any]], new_turn_text: str) -> list[dict[str, str]]:
    """Map transcript roles onto chat roles and merge consecutive same-role entries."""
    messages: list[dict[str, str]] = []
    entries = [*transcript, {"role": "participant", "content": new_turn_text}]
    for entry in entries:
        content = str(entry.get("content") or "").strip()
        if not content:
            continue
        role = _CHAT_ROLES.get(str(entry.get("role")), "user")
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + content
        else:
            messages.append({"role": role, "content": content})
    return messages


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 4
    initial_delay: float = 1.0
    max_delay: float = 4.0


class ProviderGateway:
    """Ordered provider strategies behind a single ``invoke`` call.

    With a preferred provider only that provider is tried. Otherwise the first
    provider that reports itself available wins. Transient failures are retried
    with exponential backoff according to ``retry_policy``.
    """

    def __init__(
        self,
        providers: Sequence[ProviderPort],
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._providers = list(providers)
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep
        self._logger = logger or logging.getLogger(__name__)

    @property
    def provider_names(self) -> list[str]:
        return [provider.name for provider in self._providers]

    async def invoke(
        self,
        system_context: str,
        transcript: list[dict[str, Any]],
        new_turn_text: str,
        preferred: str | None = None,
    ) -> GenerationResult:
        provider = await self._select(preferred)
        messages = to_chat_messages(transcript, new_turn_text)
        text = await self._generate_with_retry(provider, system_context, messages)
        return GenerationResult(text=cleanup_response(text), provider=provider.name)

    async def status(self) -> list[dict[str, Any]]:
        return [
            {"name": provider.name, "available": bool(await provider.is_available())}
            for provider in self._providers
        ]

    async def _select(self, preferred: str | None) -> ProviderPort:
        if preferred:
            wanted = preferred.strip().lower()
            for provider in self._providers:
                if provider.name == wanted:
                    if not await provider.is_available():
                        raise ProviderUnavailableError(preferred, "unreachable")
                    return provider
            raise ProviderUnavailableError(preferred, "unknown_provider")

        tried = []
        for provider in self._providers:
            tried.append(provider.name)
            if await provider.is_available():
                return provider
            self._logger.info("provider %s unavailable, trying next", provider.name)
        raise NoProviderAvailableError(tried)

    async def _generate_with_retry(
        self,
        provider: ProviderPort,
        system_context: str,
        messages: list[dict[str, str]],
    ) -> str:
        policy = self._retry_policy
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.attempts),
            wait=wait_exponential(multiplier=policy.initial_delay, min=policy.initial_delay, max=policy.max_delay),
            retry=retry_if_exception_type(TransientProviderError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    text = await provider.generate(system_context, messages)
        except TransientProviderError as exc:
            raise GenerationError(f"{provider.name} failed after {policy.attempts} attempts: {exc}") from exc
        return text

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        self._logger.warning(
            "transient provider failure (attempt %s), retrying in %.1fs: %s",
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
            outcome.exception() if outcome is not None else None,
        )
