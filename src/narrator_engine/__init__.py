from .config import EngineSettings, build_default_gateway
from .core.engine import SessionEngine
from .core.errors import NarratorEngineError
from .core.trade import TradeService
from .core.types import StartSessionInput
from .providers import ClaudeProvider, OllamaProvider, ProviderGateway, RetryPolicy

__all__ = [
    "SessionEngine",
    "TradeService",
    "StartSessionInput",
    "NarratorEngineError",
    "EngineSettings",
    "build_default_gateway",
    "ProviderGateway",
    "RetryPolicy",
    "ClaudeProvider",
    "OllamaProvider",
]
