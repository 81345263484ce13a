"""
Pytest Configuration and Fixtures
"""

import asyncio
import os
import sys
import tempfile
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(tempfile.gettempdir(), "tollgate-test-default.db")
os.environ["ADMIN_KEY"] = "test-admin-key"
os.environ["ADMIN_TASK_SECRET"] = "test-task-secret"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"

from tollgate.config import GatewayConfig
from tollgate.gateway import MeteredGateway
from tollgate.persistence.database import Database
from tollgate.providers.base import Completion, ProviderError, TextProvider
from tollgate.providers.router import ProviderRouter
from tollgate.storage.object_store import MemoryObjectStore


class FakeProvider(TextProvider):
    """Scripted provider that records every call."""

    def __init__(
        self,
        name: str,
        text: str = "fake completion",
        fail: bool = False,
        delay: float = 0.0,
        tokens_in: Optional[int] = None,
        tokens_out: Optional[int] = None,
    ):
        super().__init__(default_model=f"{name}-default")
        self.name = name
        self.text = text
        self.fail = fail
        self.delay = delay
        self.tokens_in = tokens_in
        self.tokens_out = tokens_out
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, model, prompt, system_prompt, max_tokens, temperature, timeout):
        self.calls.append({
            "model": model,
            "prompt": prompt,
            "system_prompt": system_prompt,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ProviderError(self.name, "boom", status_code=500, body="raw upstream body")
        return Completion(self.text, self.name, model, self.tokens_in, self.tokens_out)


@pytest.fixture
def temp_db(tmp_path):
    """Fresh file-backed SQLite database per test."""
    db = Database(f"sqlite:///{tmp_path / 'tollgate.db'}")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def config(temp_db):
    """Gateway configuration for tests."""
    return GatewayConfig(
        database_url=temp_db.database_url,
        admin_key="test-admin-key",
        admin_task_secret="test-task-secret",
        sweep_interval_seconds=0,
        provider_timeout_seconds=0.5,
    )


@pytest.fixture
def fake_providers():
    """Three healthy providers in the default priority order."""
    return {
        "groq": FakeProvider("groq"),
        "workers_ai": FakeProvider("workers_ai"),
        "openai": FakeProvider("openai"),
    }


@pytest.fixture
def router(config, fake_providers):
    return ProviderRouter(config, fake_providers)


@pytest.fixture
def object_store():
    return MemoryObjectStore()


@pytest.fixture
def gateway(config, temp_db, router, object_store):
    """Gateway wired to the temp database and fake providers."""
    return MeteredGateway(config, db=temp_db, router=router, object_store=object_store)


@pytest.fixture
def funded_user(gateway):
    """A user holding 10 credits."""
    email = "alice@example.com"
    gateway.top_up(email, Decimal("10"))
    return email
