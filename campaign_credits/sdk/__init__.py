"""
Provider SDK for Campaign Credits.

Adapters that turn generation tasks into OpenAI and Gemini calls.
"""

from .base import ImageArtifact, PromptContext, ProviderAdapter, TextArtifact
from .errors import (
    ProviderError,
    ProviderPermanentError,
    ProviderRateLimitedError,
    ProviderTransientError,
    ProviderUnsupportedError,
)
from .factory import ProviderRegistry, create_adapter

__all__ = [
    "ImageArtifact",
    "PromptContext",
    "ProviderAdapter",
    "ProviderError",
    "ProviderPermanentError",
    "ProviderRateLimitedError",
    "ProviderRegistry",
    "ProviderTransientError",
    "ProviderUnsupportedError",
    "TextArtifact",
    "create_adapter",
]
