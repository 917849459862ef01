"""Pytest configuration and fixtures."""

import os

# Settings are cached on first use (logging and the rate limiter read them at
# import time), so the environment must be in place before app modules load.
os.environ.setdefault("ENGINE_ENV", "test")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ.setdefault("CONTENT_STORE_BACKEND", "memory")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

from app.core.config import Settings  # noqa: E402
from app.core.engine_context import EngineContext  # noqa: E402
from app.core.llm import ProviderRouter  # noqa: E402
from app.core.rate_limiter import generation_rate_limiter  # noqa: E402
from app.db.memory_store import InMemoryContentStore  # noqa: E402
from tests.fakes.scripted_provider import ScriptedProvider  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["ENGINE_ENV"] = "test"
    os.environ["ANTHROPIC_API_KEY"] = "test-anthropic-key"


@pytest.fixture(autouse=True)
def reset_rate_limits():
    generation_rate_limiter.reset()
    yield
    generation_rate_limiter.reset()


@pytest.fixture
def settings():
    """Small thresholds so short scripted outputs exercise every code path."""
    return Settings(
        ENGINE_ENV="test",
        ANTHROPIC_API_KEY="test-anthropic-key",
        SECTION_BUFFER_THRESHOLD=40,
        LIVE_HEARTBEAT_SECONDS=0.05,
        GENERATION_TIMEOUT_SECONDS=5.0,
    )


@pytest.fixture
def provider():
    return ScriptedProvider()


def make_context(settings: Settings, provider: ScriptedProvider, store=None) -> EngineContext:
    """Engine context with in-process backends and the scripted provider for every model."""
    router = ProviderRouter({"claude": provider, "gpt-": provider})
    return EngineContext.build(settings, store=store or InMemoryContentStore(), providers=router)


@pytest.fixture
def ctx(settings, provider):
    return make_context(settings, provider)
