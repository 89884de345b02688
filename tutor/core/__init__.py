"""
Core Module Package

Provider abstractions and their Azure implementations:
- Registry: Responder definitions loaded from JSON
- LLM: Streaming generation and JSON answer parsing
- Speech: Text-to-speech synthesis (tutor.core.speech)
- Cache: TTL cache with bus-wide invalidation (tutor.core.cache)
"""

from tutor.core.registry import Responder, ResponderRegistry, RegistryError
from tutor.core.llm import (
    GenerationError,
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
    GenerationStream,
    AzureGenerationProvider,
)

__all__ = [
    "Responder",
    "ResponderRegistry",
    "RegistryError",
    "GenerationError",
    "GenerationProvider",
    "GenerationRequest",
    "GenerationResult",
    "GenerationStream",
    "AzureGenerationProvider",
]
