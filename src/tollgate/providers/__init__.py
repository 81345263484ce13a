"""
Tollgate - Text Providers

Interchangeable text-generation backends and the ordered fallback router.
"""

from .base import Completion, ProviderError, TextProvider
from .clients import (
    GroqProvider,
    OpenAIProvider,
    WorkersAIProvider,
    LocalProvider,
    build_providers,
)
from .router import ProviderRouter, degraded_text

__all__ = [
    "Completion",
    "ProviderError",
    "TextProvider",
    "GroqProvider",
    "OpenAIProvider",
    "WorkersAIProvider",
    "LocalProvider",
    "build_providers",
    "ProviderRouter",
    "degraded_text",
]
