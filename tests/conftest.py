import httpx
import pytest

from bulletin_ai.core.config import Settings
from bulletin_ai.gateway.rate_tracker import RateTracker
from bulletin_ai.gateway.storage import MemoryStore
from bulletin_ai.gateway.types import ModelRateLimit


class FakeClock:
    """Monotonic clock driven by the test; sleeping advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


TEST_RATE_LIMITS = {
    "fast-model": ModelRateLimit(base_delay_ms=500, requests_per_minute=120),
    "slow-model": ModelRateLimit(base_delay_ms=6000, requests_per_minute=10),
    "gemini-2.5-flash": ModelRateLimit(base_delay_ms=6000, requests_per_minute=10),
}


@pytest.fixture(autouse=True)
def clean_settings_env(monkeypatch):
    """Keep exported API keys and other settings out of Settings() in tests."""
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tracker(clock, store):
    return RateTracker(
        TEST_RATE_LIMITS,
        store,
        default_delay_ms=6000,
        clock=clock,
        sleep=clock.sleep,
    )


def make_httpx_response(status_code: int, json_data=None, text: str = "") -> httpx.Response:
    """Create a proper httpx.Response with request set."""
    request = httpx.Request("POST", "https://example.com")
    if json_data is not None:
        return httpx.Response(status_code, json=json_data, request=request)
    return httpx.Response(status_code, text=text, request=request)
