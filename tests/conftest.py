from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from codeforge.core.config import settings

# Override settings for tests
settings.app_env = "development"
settings.audit_enabled = False

from codeforge.core.rate_limit import limiter  # noqa: E402
from codeforge.main import app  # noqa: E402

# Route limits are exercised by slowapi itself, not per test
limiter.enabled = False


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
