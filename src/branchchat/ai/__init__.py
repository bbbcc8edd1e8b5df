"""AI backend client, stream consumption and reply orchestration."""

from .ai_types import AIBackend, BackendEvent, GenerationOptions, StreamResult
from .client import AIClient, ApproxByteCounter, ClientSettings, TiktokenCounter, TokenCounterRegistry

__all__ = [
    "AIBackend",
    "AIClient",
    "ApproxByteCounter",
    "BackendEvent",
    "ClientSettings",
    "GenerationOptions",
    "StreamResult",
    "TiktokenCounter",
    "TokenCounterRegistry",
]
