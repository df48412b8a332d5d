"""Shared fixtures: in-memory calendar store, calendar registry and an API client."""

import pytest
from fastapi.testclient import TestClient

from database import get_db
from main import app
from routes.chat import get_orchestrator, get_registry
from services.calendar_tools import register_calendar_tools
from services.orchestrator_core import ToolOrchestrator
from services.tool_registry import ToolRegistry
from settings import OrchestratorSettings
from tests.fixtures.builders import ScriptedGateway, make_session_factory


@pytest.fixture
def session_factory():
    return make_session_factory()


@pytest.fixture
def calendar_registry(session_factory) -> ToolRegistry:
    registry = ToolRegistry()
    register_calendar_tools(registry, session_factory)
    return registry


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def client(session_factory, calendar_registry, gateway):
    """API client on the in-memory store; the chat route uses the scripted gateway."""

    def _db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_registry] = lambda: calendar_registry
    app.dependency_overrides[get_orchestrator] = lambda: ToolOrchestrator(gateway, OrchestratorSettings())
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
