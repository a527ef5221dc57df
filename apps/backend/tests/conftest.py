"""Shared test fixtures for pytest.

Environment defaults are set before importing the app so settings resolve
without an .env file and no test ever talks to a real generation service.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Generator

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient


os.environ.setdefault("ENVIRONMENT", "test")

from dependencies.analysis import get_manager, get_relay
from generation_fakes import FakeGenerationService, build_relay
from main import app
from services.analysis.manager import AnalysisManager
from services.analysis.relay import AnalysisRelay


@pytest.fixture
def fake_service() -> FakeGenerationService:
    return FakeGenerationService()


@pytest_asyncio.fixture
async def upstream_http(
    fake_service: FakeGenerationService,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.MockTransport(fake_service.handler)
    async with httpx.AsyncClient(transport=transport) as client:
        yield client


@pytest.fixture
def relay(upstream_http: httpx.AsyncClient) -> AnalysisRelay:
    return build_relay(upstream_http)


@pytest_asyncio.fixture
async def manager(relay: AnalysisRelay) -> AsyncGenerator[AnalysisManager, None]:
    manager = AnalysisManager(relay, inactivity_timeout=5.0)
    yield manager
    await manager.shutdown()


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """
    Create a test client for the FastAPI application.
    """
    with TestClient(app) as client:
        yield client


@pytest_asyncio.fixture
async def async_client(
    relay: AnalysisRelay, manager: AnalysisManager
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async client wired to the fake generation service."""
    app.dependency_overrides[get_relay] = lambda: relay
    app.dependency_overrides[get_manager] = lambda: manager
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.pop(get_relay, None)
    app.dependency_overrides.pop(get_manager, None)
