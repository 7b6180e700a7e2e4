from __future__ import annotations


class NarratorEngineError(Exception):
    """Base class for every error raised by the engine."""


class NotFoundError(NarratorEngineError):
    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class PreconditionError(NarratorEngineError):
    """An operation was requested in a state that does not allow it."""


class InvalidSessionState(PreconditionError):
    def __init__(self, session_id: str, status: str, expected: tuple[str, ...] | str):
        if isinstance(expected, str):
            expected = (expected,)
        super().__init__(
            f"session {session_id} is {status}; expected {' or '.join(expected)}"
        )
        self.session_id = session_id
        self.status = status
        self.expected = tuple(expected)


class SessionConflictError(PreconditionError):
    def __init__(self, existing_session_id: str | None, reason: str):
        super().__init__(f"{reason}: {existing_session_id}")
        self.existing_session_id = existing_session_id
        self.reason = reason


class RewardsAlreadyClaimedError(PreconditionError):
    def __init__(self, session_id: str):
        super().__init__(f"rewards already claimed for session {session_id}")
        self.session_id = session_id


class InsufficientFundsError(PreconditionError):
    def __init__(self, needed_cp: int, available_cp: int, owner: str = "character"):
        super().__init__(f"{owner} needs {needed_cp} cp but has {available_cp} cp")
        self.needed_cp = needed_cp
        self.available_cp = available_cp
        self.owner = owner


class ItemNotAvailableError(PreconditionError):
    def __init__(self, item_name: str, owner: str, candidates: list[str] | None = None):
        message = f"{owner} has no '{item_name}'"
        if candidates:
            message += f" (did you mean: {', '.join(candidates)})"
        super().__init__(message)
        self.item_name = item_name
        self.owner = owner
        self.candidates = list(candidates or [])


class SessionBusyError(NarratorEngineError):
    def __init__(self, session_id: str):
        super().__init__(f"session {session_id} is handling another request")
        self.session_id = session_id


class StaleClaimError(NarratorEngineError):
    """The lease or row version changed between claim and apply."""


class GenerationError(NarratorEngineError):
    """Generation failed after the provider gave up."""


class GenerationTimeoutError(GenerationError):
    def __init__(self, timeout_seconds: float):
        super().__init__(f"generation exceeded {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


class ProviderError(GenerationError):
    pass


class NoProviderAvailableError(ProviderError):
    def __init__(self, tried: list[str] | None = None):
        tried = list(tried or [])
        super().__init__(f"no generation provider reachable (tried: {', '.join(tried) or 'none'})")
        self.tried = tried
        self.reason = "no_provider"


class ProviderUnavailableError(ProviderError):
    def __init__(self, provider: str, reason: str):
        super().__init__(f"provider '{provider}' unavailable: {reason}")
        self.provider = provider
        self.reason = reason


class TransientProviderError(ProviderError):
    """Connection resets, timeouts, rate limits and 5xx responses."""


class ProviderRequestError(ProviderError):
    """Authentication failures and malformed requests; never retried."""


class PersistenceError(NarratorEngineError):
    pass
