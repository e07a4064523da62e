"""Pytest configuration and fixtures."""

import os
from collections.abc import Callable, Iterator

import pytest

from autocv_api.config import Settings

# Set test environment variables before importing app modules
os.environ.setdefault("OPENROUTER_API_KEY", "")
os.environ.setdefault("ENVIRONMENT", "development")
# Increase rate limit for testing
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "1000")
# Serve analyses from the mock generator, without pacing
os.environ.setdefault("MOCK_OPENROUTER", "true")
os.environ.setdefault("MOCK_FRAGMENT_DELAY_SECONDS", "0")
os.environ.setdefault("PERSISTENCE_ENABLED", "false")
# No heartbeat frames in recorded streams
os.environ.setdefault("SSE_HEARTBEAT_SECONDS", "0")


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    """Reset cached settings and rate limits before each test."""
    from autocv_api.config import get_settings

    get_settings.cache_clear()

    # Reset rate limiter storage
    try:
        from autocv_api.main import limiter

        limiter.reset()
    except (ImportError, AttributeError):
        pass

    yield
    get_settings.cache_clear()


@pytest.fixture
def mock_settings(monkeypatch: pytest.MonkeyPatch) -> Callable[..., Settings]:
    """Fixture to set test settings."""

    def _mock_settings(**kwargs: str) -> Settings:
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        from autocv_api.config import get_settings

        get_settings.cache_clear()
        return get_settings()

    return _mock_settings


def parse_sse(body: str) -> list[tuple[str, str]]:
    """Split an SSE body into (event, data) pairs, skipping comment frames."""
    events = []
    for frame in body.split("\n\n"):
        if not frame.strip() or frame.startswith(":"):
            continue
        event, data = "message", ""
        for line in frame.splitlines():
            if line.startswith("event: "):
                event = line[len("event: ") :]
            elif line.startswith("data: "):
                data = line[len("data: ") :]
        events.append((event, data))
    return events


@pytest.fixture
def sse_events() -> Callable[[str], list[tuple[str, str]]]:
    """Parser for recorded SSE bodies."""
    return parse_sse
