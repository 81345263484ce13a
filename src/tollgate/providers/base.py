"""
Text Provider Interface

A provider turns (system prompt, prompt) into text. Any failure of a single
provider is a ProviderError, which the router treats as "try the next one".
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


class ProviderError(Exception):
    """A recoverable failure of one provider for one request."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        self.provider = provider
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(f"{provider}: {message}" + (f" (status {status_code})" if status_code else ""))


@dataclass
class Completion:
    """Generated text plus whatever usage the provider reported."""
    text: str
    provider: str
    model: str
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "provider": self.provider,
            "model": self.model,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
        }


class TextProvider(ABC):
    """Base class for text-generation backends."""

    name: str = "base"

    def __init__(self, default_model: str):
        self.default_model = default_model

    def is_configured(self) -> bool:
        """Whether credentials/endpoints needed to call the provider are present."""
        return True

    @abstractmethod
    async def complete(
        self,
        model: str,
        prompt: str,
        system_prompt: Optional[str],
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> Completion:
        """Generate text or raise ProviderError."""
