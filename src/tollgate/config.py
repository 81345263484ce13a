"""
Gateway Configuration

All settings come from environment variables so the same build runs on a
laptop (SQLite, no provider keys) and in production (PostgreSQL, real keys).
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

DEFAULT_PROVIDER_ORDER = ["groq", "workers_ai", "openai"]

DEFAULT_MODELS: Dict[str, str] = {
    "groq": "llama-3.1-8b-instant",
    "openai": "gpt-4o-mini",
    "workers_ai": "@cf/meta/llama-3.1-8b-instruct",
    "local": "qwen2.5-7b-instruct-q5_k_m",
}


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except ValueError:
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    try:
        return Decimal(_env(name, default))
    except InvalidOperation:
        return Decimal(default)


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = _env(name)
    if raw is None:
        return list(default)
    return [p.strip().lower() for p in raw.split(",") if p.strip()]


@dataclass
class GatewayConfig:
    """Runtime configuration for the metered gateway."""
    database_url: str = "sqlite:///tollgate.db"

    # Pricing
    tokens_per_credit: int = 1000
    hard_stop_below: Decimal = Decimal("1")
    warn_credits: Decimal = Decimal("10")

    # Provider routing
    provider_order: List[str] = field(default_factory=lambda: list(DEFAULT_PROVIDER_ORDER))
    default_provider: str = "groq"
    default_model: Optional[str] = None
    provider_timeout_seconds: float = 8.0
    max_tokens_cap: int = 2048

    groq_api_key: Optional[str] = None
    groq_model: str = DEFAULT_MODELS["groq"]
    groq_base: str = "https://api.groq.com/openai/v1"

    openai_api_key: Optional[str] = None
    openai_model: str = DEFAULT_MODELS["openai"]
    openai_base: str = "https://api.openai.com/v1"

    cf_account_id: Optional[str] = None
    cf_api_token: Optional[str] = None
    cf_ai_model: str = DEFAULT_MODELS["workers_ai"]

    local_llm_url: Optional[str] = None
    local_llm_model: str = DEFAULT_MODELS["local"]

    # Internal credentials
    admin_key: Optional[str] = None
    admin_task_secret: Optional[str] = None

    # Job queue
    sweep_interval_seconds: float = 300.0
    sweep_batch_size: int = 5
    artifact_dir: str = "./artifacts"
    max_upload_bytes: int = 10 * 1024 * 1024

    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Build configuration from the process environment."""
        warn = _env_decimal("WARN_CREDITS", "10")
        if warn <= 0:
            warn = Decimal("10")

        return cls(
            database_url=_env("DATABASE_URL", "sqlite:///tollgate.db"),
            tokens_per_credit=max(1, _env_int("TOKENS_PER_CREDIT", 1000)),
            hard_stop_below=_env_decimal("HARD_STOP_BELOW", "1"),
            warn_credits=warn.quantize(Decimal("0.001")),
            provider_order=_env_list("PROVIDER_ORDER", DEFAULT_PROVIDER_ORDER),
            default_provider=(_env("LLM_PROVIDER", "groq") or "groq").lower(),
            default_model=_env("LLM_MODEL"),
            provider_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", 8.0),
            groq_api_key=_env("GROQ_API_KEY"),
            groq_model=_env("GROQ_MODEL", DEFAULT_MODELS["groq"]),
            groq_base=_env("GROQ_BASE", "https://api.groq.com/openai/v1"),
            openai_api_key=_env("OPENAI_API_KEY"),
            openai_model=_env("OPENAI_MODEL", DEFAULT_MODELS["openai"]),
            openai_base=_env("OPENAI_BASE", "https://api.openai.com/v1"),
            cf_account_id=_env("CF_ACCOUNT_ID"),
            cf_api_token=_env("CF_API_TOKEN"),
            cf_ai_model=_env("CF_AI_MODEL", DEFAULT_MODELS["workers_ai"]),
            local_llm_url=_env("LOCAL_LLM_URL"),
            local_llm_model=_env("LOCAL_LLM_MODEL", DEFAULT_MODELS["local"]),
            admin_key=_env("ADMIN_KEY"),
            admin_task_secret=_env("ADMIN_TASK_SECRET"),
            sweep_interval_seconds=_env_float("SWEEP_INTERVAL_SECONDS", 300.0),
            sweep_batch_size=max(1, _env_int("SWEEP_BATCH_SIZE", 5)),
            artifact_dir=_env("ARTIFACT_DIR", "./artifacts"),
            max_upload_bytes=max(1, _env_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)),
            cors_origins=[o.strip() for o in (_env("CORS_ORIGINS", "*") or "*").split(",") if o.strip()],
        )
