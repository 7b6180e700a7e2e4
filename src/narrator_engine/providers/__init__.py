from .claude import ClaudeProvider
from .gateway import ProviderGateway, RetryPolicy, cleanup_response, to_chat_messages
from .ollama import OllamaProvider
from .ports import ProviderPort

__all__ = [
    "ClaudeProvider",
    "OllamaProvider",
    "ProviderGateway",
    "ProviderPort",
    "RetryPolicy",
    "cleanup_response",
    "to_chat_messages",
]
