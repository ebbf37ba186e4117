"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator, Iterator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from nextbus_collector.config import Settings, get_settings
from nextbus_collector.main import app
from nextbus_collector.services.pipeline.controller import reset_controller


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings writing under a temporary storage root."""
    return Settings(
        _env_file=None,
        storage_root=tmp_path,
        queue_capacity=4,
        stage_timeout_sec=1.0,
        drain_poll_interval_sec=0.01,
    )


@pytest.fixture(autouse=True)
def _reset_singletons() -> Iterator[None]:
    """Reset cached settings and the controller between tests."""
    reset_controller()
    get_settings.cache_clear()
    yield
    reset_controller()
    get_settings.cache_clear()


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
