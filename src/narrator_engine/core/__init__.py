from .engine import SessionEngine
from .effects import ApplyContext, EffectApplier
from .initiative import advance_turn
from .errors import (
    GenerationError,
    GenerationTimeoutError,
    InsufficientFundsError,
    InvalidSessionState,
    ItemNotAvailableError,
    NarratorEngineError,
    NoProviderAvailableError,
    NotFoundError,
    PersistenceError,
    PreconditionError,
    ProviderError,
    ProviderRequestError,
    ProviderUnavailableError,
    RewardsAlreadyClaimedError,
    SessionBusyError,
    SessionConflictError,
    StaleClaimError,
    TransientProviderError,
)
from .ports import ActivityCheckPort, GenerationPort
from .trade import TradeService
from .types import (
    AppliedEffects,
    ClaimResult,
    CombatState,
    EndSessionResult,
    GenerationResult,
    InventoryChangeResult,
    MessageResult,
    RecruitmentOffer,
    RecruitmentResult,
    SessionRewards,
    SessionView,
    StartSessionInput,
    StartSessionResult,
    TradeResult,
    TurnOrderEntry,
)

__all__ = [
    "SessionEngine",
    "TradeService",
    "ApplyContext",
    "EffectApplier",
    "advance_turn",
    "ActivityCheckPort",
    "GenerationPort",
    "NarratorEngineError",
    "NotFoundError",
    "PreconditionError",
    "InvalidSessionState",
    "SessionConflictError",
    "RewardsAlreadyClaimedError",
    "InsufficientFundsError",
    "ItemNotAvailableError",
    "SessionBusyError",
    "StaleClaimError",
    "GenerationError",
    "GenerationTimeoutError",
    "ProviderError",
    "NoProviderAvailableError",
    "ProviderUnavailableError",
    "TransientProviderError",
    "ProviderRequestError",
    "PersistenceError",
    "AppliedEffects",
    "ClaimResult",
    "CombatState",
    "EndSessionResult",
    "GenerationResult",
    "InventoryChangeResult",
    "MessageResult",
    "RecruitmentOffer",
    "RecruitmentResult",
    "SessionRewards",
    "SessionView",
    "StartSessionInput",
    "StartSessionResult",
    "TradeResult",
    "TurnOrderEntry",
]
