"""
HTTP Provider Clients

Groq, OpenAI and local llama.cpp-style servers all speak the OpenAI
``/chat/completions`` dialect; Cloudflare Workers AI has its own REST shape.
Every transport, status and decoding problem is raised as ProviderError.
"""

from typing import Any, Dict, List, Optional, Tuple
import httpx

from ..config import GatewayConfig
from .base import Completion, ProviderError, TextProvider


def build_messages(prompt: str, system_prompt: Optional[str]) -> List[Dict[str, str]]:
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    return messages


async def _post_json(
    provider: str,
    url: str,
    headers: Dict[str, str],
    body: Dict[str, Any],
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(url, headers=headers, json=body)
    except httpx.TimeoutException as e:
        raise ProviderError(provider, f"timeout after {timeout}s") from e
    except httpx.HTTPError as e:
        raise ProviderError(provider, f"transport error: {e}") from e

    if response.status_code >= 400:
        raise ProviderError(
            provider,
            "upstream rejected request",
            status_code=response.status_code,
            body=response.text[:2000],
        )
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderError(provider, "invalid JSON response", status_code=response.status_code,
                            body=response.text[:2000]) from e
    if not isinstance(data, dict):
        raise ProviderError(provider, "unexpected response shape", status_code=response.status_code,
                            body=response.text[:2000])
    return data


def _usage_counts(usage: Any) -> Tuple[Optional[int], Optional[int]]:
    """Reported prompt/completion tokens, or None where missing or malformed."""
    if not isinstance(usage, dict):
        return None, None
    tokens_in = usage.get("prompt_tokens")
    tokens_out = usage.get("completion_tokens")
    return (
        tokens_in if isinstance(tokens_in, int) else None,
        tokens_out if isinstance(tokens_out, int) else None,
    )


class OpenAICompatibleProvider(TextProvider):
    """Any backend that implements OpenAI's chat completions endpoint."""

    name = "openai_compatible"

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        default_model: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(default_model)
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.transport = transport

    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(
        self,
        model: str,
        prompt: str,
        system_prompt: Optional[str],
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> Completion:
        if not self.is_configured():
            raise ProviderError(self.name, "not configured")

        data = await _post_json(
            self.name,
            f"{self.base_url}/chat/completions",
            self._headers(),
            {
                "model": model,
                "messages": build_messages(prompt, system_prompt),
                "max_tokens": max_tokens,
                "temperature": temperature,
                "stream": False,
            },
            timeout,
            self.transport,
        )

        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(self.name, "unexpected response shape", body=str(data)[:2000]) from e
        if not isinstance(text, str) or not text.strip():
            raise ProviderError(self.name, "empty completion")

        tokens_in, tokens_out = _usage_counts(data.get("usage"))
        reported_model = data.get("model")
        return Completion(
            text=text,
            provider=self.name,
            model=reported_model if isinstance(reported_model, str) and reported_model else model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
        )


class GroqProvider(OpenAICompatibleProvider):
    name = "groq"


class OpenAIProvider(OpenAICompatibleProvider):
    name = "openai"


class LocalProvider(OpenAICompatibleProvider):
    """Self-hosted server; no API key required."""

    name = "local"

    def is_configured(self) -> bool:
        return bool(self.base_url)


class WorkersAIProvider(TextProvider):
    """Cloudflare Workers AI over its REST API."""

    name = "workers_ai"
    API_BASE = "https://api.cloudflare.com/client/v4"

    def __init__(
        self,
        account_id: Optional[str],
        api_token: Optional[str],
        default_model: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(default_model)
        self.account_id = account_id
        self.api_token = api_token
        self.transport = transport

    def is_configured(self) -> bool:
        return bool(self.account_id and self.api_token)

    async def complete(
        self,
        model: str,
        prompt: str,
        system_prompt: Optional[str],
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> Completion:
        if not self.is_configured():
            raise ProviderError(self.name, "not configured")

        data = await _post_json(
            self.name,
            f"{self.API_BASE}/accounts/{self.account_id}/ai/run/{model}",
            {"Authorization": f"Bearer {self.api_token}", "Content-Type": "application/json"},
            {
                "messages": build_messages(prompt, system_prompt),
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
            timeout,
            self.transport,
        )

        if data.get("success") is False:
            raise ProviderError(self.name, "upstream reported failure", body=str(data.get("errors"))[:2000])
        result = data.get("result")
        if not isinstance(result, dict):
            raise ProviderError(self.name, "unexpected response shape", body=str(data)[:2000])
        text = result.get("response")
        if not isinstance(text, str) or not text.strip():
            raise ProviderError(self.name, "empty completion")

        tokens_in, tokens_out = _usage_counts(result.get("usage"))
        return Completion(
            text=text,
            provider=self.name,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
        )


def build_providers(config: GatewayConfig) -> Dict[str, TextProvider]:
    """Instantiate every known provider from configuration."""
    return {
        "groq": GroqProvider(config.groq_base, config.groq_api_key, config.groq_model),
        "openai": OpenAIProvider(config.openai_base, config.openai_api_key, config.openai_model),
        "workers_ai": WorkersAIProvider(config.cf_account_id, config.cf_api_token, config.cf_ai_model),
        "local": LocalProvider(config.local_llm_url, None, config.local_llm_model),
    }
