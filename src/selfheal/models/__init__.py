"""Code-generation backends."""

from .backend import CodeGenBackend, GenerationRequest, GenerationResponse, Transport, UsageStats
from .providers import AnthropicBackend, LocalBackend, OpenAIBackend, build_backend

__all__ = [
    "AnthropicBackend",
    "CodeGenBackend",
    "GenerationRequest",
    "GenerationResponse",
    "LocalBackend",
    "OpenAIBackend",
    "Transport",
    "UsageStats",
    "build_backend",
]
