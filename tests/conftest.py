from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from servewrap.config import get_settings
from servewrap.main import app
from servewrap.observability.metrics import reset_metrics


class FakeClock:
    """Deterministic clock: every call advances by ``step``."""

    def __init__(self, step: timedelta = timedelta(milliseconds=250)) -> None:
        self.current = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        now = self.current
        self.current = self.current + self.step
        return now


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("TS_ALLOW_DEBUG_IP", "TS_DEBUG_KEY_PATH", "DEV_MODE", "ENABLE_METRICS_ENDPOINT"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    reset_metrics()

    yield

    reset_metrics()
    get_settings.cache_clear()


@pytest.fixture
def log_lines() -> list[str]:
    return []


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def api_client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
