"""Shared test fixtures for Routewise."""
import pytest
from typing import Any
from unittest.mock import AsyncMock

from config.settings import reset_settings
from context.session import create_session, enter_route, enter_step
from models.schemas import HistoryEvent, ModelResponse
from routes.models import END_ROUTE, Route
from tools.manager import ToolManager


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    """Every test starts from the bundled settings.yaml."""
    monkeypatch.delenv("ROUTEWISE_CONFIG", raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def make_llm():
    """Build an AsyncMock model call that returns the given responses in order."""
    def _make(*responses: Any) -> AsyncMock:
        items = [
            r if isinstance(r, ModelResponse) else ModelResponse(structured=r) if isinstance(r, dict)
            else ModelResponse(message=str(r))
            for r in responses
        ]
        return AsyncMock(side_effect=items)
    return _make


@pytest.fixture
def tool_manager() -> ToolManager:
    """No backoff so retry tests run instantly."""
    return ToolManager(timeout_seconds=1.0, retry_count=2, retry_backoff_base=0, retry_backoff_max=0)


@pytest.fixture
def history() -> list[HistoryEvent]:
    return [
        HistoryEvent.assistant("Hi! How can I help?"),
        HistoryEvent.user("I want to book a flight to Lisbon"),
    ]


@pytest.fixture
def flight_route() -> Route:
    """Linear route: origin → destination → (optional) seat → END."""
    route = Route(
        title="Book a flight",
        id="book_flight",
        description="Collect trip details and book a flight",
        when=["User wants to book a flight"],
        required_fields=["origin", "destination"],
        optional_fields=["seat"],
        initial_step={"id": "ask_origin", "description": "Ask where they fly from", "collect": ["origin"]},
    )
    dest = route.initial_step.next_step(id="ask_destination", description="Ask for destination",
                                        collect=["destination"])
    seat = dest.next_step(id="ask_seat", description="Ask for seat preference", collect=["seat"])
    seat.next_step(END_ROUTE)
    return route


@pytest.fixture
def feedback_route() -> Route:
    route = Route(
        title="Feedback",
        id="feedback",
        description="Collect a rating",
        when=["User wants to leave feedback"],
        required_fields=["rating"],
        initial_step={"id": "ask_rating", "description": "Ask for a rating", "collect": ["rating"]},
    )
    route.initial_step.end_route()
    return route


@pytest.fixture
def session_in_flight(flight_route):
    """Session sitting on ask_destination with origin collected."""
    session = enter_route(create_session("s-1"), flight_route.id, flight_route.title)
    session = enter_step(session, "ask_destination", "Ask for destination")
    return session.model_copy(update={"data": {"origin": "Porto"}})
