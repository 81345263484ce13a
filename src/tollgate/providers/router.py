"""
Provider Router

Ordered fallback over interchangeable text providers. The requested provider
is tried first, then the rest of the configured priority order, each exactly
once. The first success wins.
"""

from typing import Any, Dict, List, Optional, Tuple
import asyncio
import re
import structlog

from ..config import GatewayConfig
from ..errors import AllProvidersFailed, InvalidRequest
from .base import Completion, ProviderError, TextProvider
from .clients import build_providers

logger = structlog.get_logger()

DEGRADED_PREFIX = "[DEGRADED:LLM] Unable to reach model. Showing a concise extract:\n"
DEGRADED_PROVIDER = "degraded"
DEGRADED_MODEL = "n/a"


def degraded_text(prompt: str) -> str:
    """Stand-in reply used when every provider failed."""
    extract = re.sub(r"\s+", " ", (prompt or "")[:240]).strip()
    return DEGRADED_PREFIX + extract


def clamp_max_tokens(value: Optional[int], cap: int = 2048, default: int = 256) -> int:
    if value is None:
        return min(default, cap)
    return max(1, min(int(value), cap))


def clamp_temperature(value: Optional[float], default: float = 0.2) -> float:
    if value is None:
        return default
    return max(0.0, min(float(value), 1.0))


class ProviderRouter:
    """
    Tries providers in order until one answers.

    Usage:
        router = ProviderRouter(config)
        completion = await router.complete("groq", None, "Hello", "Be brief")
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        providers: Optional[Dict[str, TextProvider]] = None,
    ):
        self.config = config or GatewayConfig()
        self.providers = providers if providers is not None else build_providers(self.config)

    def candidates(self, requested_provider: Optional[str] = None) -> List[str]:
        """Requested provider first, then the priority order without repeats."""
        first = (requested_provider or self.config.default_provider or "").strip().lower()
        ordered = [first] if first else []
        for name in self.config.provider_order:
            if name not in ordered:
                ordered.append(name)
        return ordered

    def primary(self) -> Tuple[str, str]:
        """Provider and model that a request without overrides tries first."""
        candidates = self.candidates(None)
        if not candidates:
            return "", ""
        return candidates[0], self._model_for(0, candidates[0], None)

    def configured(self) -> List[str]:
        """Providers whose credentials are present, in priority order."""
        return [
            name for name in self.candidates(None)
            if name in self.providers and self.providers[name].is_configured()
        ]

    def _model_for(self, index: int, name: str, requested_model: Optional[str]) -> str:
        provider = self.providers.get(name)
        default = provider.default_model if provider else ""
        if index == 0:
            # The override is specific to the provider the caller asked for
            return requested_model or self.config.default_model or default
        return default

    async def complete(
        self,
        requested_provider: Optional[str],
        requested_model: Optional[str],
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Completion:
        """Return the first successful completion or raise AllProvidersFailed."""
        if not prompt or not prompt.strip():
            raise InvalidRequest("Prompt is required", code="missing_prompt")

        max_tokens = clamp_max_tokens(max_tokens, self.config.max_tokens_cap)
        temperature = clamp_temperature(temperature)
        timeout = self.config.provider_timeout_seconds

        attempts: List[Dict[str, Any]] = []
        last_error: Optional[Exception] = None

        for index, name in enumerate(self.candidates(requested_provider)):
            model = self._model_for(index, name, requested_model)
            provider = self.providers.get(name)
            try:
                if provider is None:
                    raise ProviderError(name, "unknown provider")
                completion = await asyncio.wait_for(
                    provider.complete(model, prompt, system_prompt, max_tokens, temperature, timeout),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as e:
                last_error = ProviderError(name, f"timeout after {timeout}s")
                last_error.__cause__ = e
            except ProviderError as e:
                last_error = e
            except Exception as e:
                # Malformed replies and client bugs count as a failed attempt
                last_error = ProviderError(name, f"{type(e).__name__}: {e}")
                last_error.__cause__ = e
            else:
                logger.info("provider_succeeded", provider=name, model=completion.model, attempt=index + 1)
                return completion

            attempts.append({"provider": name, "model": model, "error": str(last_error)})
            logger.warning(
                "provider_attempt_failed",
                provider=name,
                model=model,
                error=str(last_error),
                body=getattr(last_error, "body", None),
            )

        logger.error("all_providers_failed", attempts=[a["provider"] for a in attempts])
        raise AllProvidersFailed(last_error, attempts)
