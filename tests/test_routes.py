"""Tests for the Route / Step graph DSL."""
import pytest

from core.errors import RouteDefinitionError
from models.schemas import SessionState
from routes.models import END_ROUTE, END_ROUTE_ID, Guideline, Route, RouteTransitionConfig
from tools.models import Tool
from utils.conditions import ConditionContext


class TestRouteConstruction:
    def test_id_derived_from_title_is_deterministic(self):
        a = Route(title="Book a flight")
        b = Route(title="Book a flight")
        assert a.id == b.id
        assert a.id.startswith("route_book_a_flight_")

    def test_initial_step_defaults(self):
        route = Route(title="Support", id="support")
        assert route.initial_step.description == "Initial step"
        assert route.get_step(route.initial_step.id) is route.initial_step

    def test_step_ids_are_deterministic(self):
        first = Route(title="Support", id="support")
        second = Route(title="Support", id="support")
        a = first.initial_step.next_step(description="Ask for order number")
        b = second.initial_step.next_step(description="Ask for order number")
        assert a.id == b.id

    def test_title_required(self):
        with pytest.raises(RouteDefinitionError):
            Route(title="")

    def test_reserved_step_id_rejected(self):
        route = Route(title="Support", id="support")
        with pytest.raises(RouteDefinitionError):
            route.create_step(id=END_ROUTE_ID)

    def test_reserved_route_id_rejected(self):
        with pytest.raises(RouteDefinitionError):
            Route(title="End", id=END_ROUTE_ID)

    def test_duplicate_step_id_rejected(self):
        route = Route(title="Support", id="support")
        route.create_step(id="ask")
        with pytest.raises(RouteDefinitionError, match="Duplicate step id"):
            route.create_step(id="ask")

    def test_sequential_steps_build_linear_chain(self):
        route = Route(
            title="Signup",
            id="signup",
            steps=[
                {"id": "ask_name", "description": "Ask name", "collect": ["name"]},
                {"id": "ask_email", "description": "Ask email", "collect": ["email"]},
            ],
        )
        assert [s.id for s in route.reachable_steps()] == [route.initial_step.id, "ask_name", "ask_email"]
        last = route.get_step("ask_email")
        assert len(last.transitions) == 1 and last.transitions[0].is_terminal


class TestStepBuilder:
    def test_next_step_returns_new_step(self):
        route = Route(title="Support", id="support")
        step = route.initial_step.next_step(id="ask_issue", description="Ask about the issue")
        assert step is route.get_step("ask_issue")
        assert route.initial_step.transitions[0].target_id == "ask_issue"

    def test_next_step_to_end_returns_none(self):
        route = Route(title="Support", id="support")
        assert route.initial_step.next_step(END_ROUTE) is None
        assert route.initial_step.transitions[0].is_terminal

    def test_next_step_to_existing_step(self):
        route = Route(title="Support", id="support")
        a = route.initial_step.next_step(id="a")
        b = route.initial_step.next_step(id="b")
        assert a.next_step(b) is b
        assert a.next_step("b") is b

    def test_transition_carries_condition_and_tool(self):
        route = Route(title="Support", id="support")

        def lookup(ctx):
            return {"data": "ok"}

        route.initial_step.next_step(id="a", condition="User gave an order id", tool=lookup)
        transition = route.initial_step.transitions[0]
        assert isinstance(transition.tool, Tool)
        assert "User gave an order id" in transition.describe()

    def test_configure_overrides_initial_step(self):
        route = Route(title="Support", id="support")
        route.initial_step.configure(description="Greet", collect=["name"], skip_if=lambda c: True)
        assert route.initial_step.description == "Greet"
        assert route.initial_step.collect == ["name"]
        assert route.initial_step.should_skip(ConditionContext.build())

    def test_configure_rejects_unknown_property(self):
        route = Route(title="Support", id="support")
        with pytest.raises(RouteDefinitionError):
            route.initial_step.configure(colour="blue")

    def test_is_eligible_checks_requires_and_when(self):
        route = Route(title="Support", id="support")
        step = route.create_step(id="confirm", requires=["order_id"], when=lambda c: c.data.get("ok"))
        assert not step.is_eligible(ConditionContext.build(data={"ok": True}))
        assert not step.is_eligible(ConditionContext.build(data={"order_id": "A1"}))
        assert step.is_eligible(ConditionContext.build(data={"order_id": "A1", "ok": True}))


class TestRouteValidation:
    def test_dangling_transition_reported(self):
        route = Route(title="Support", id="support")
        route.initial_step.next_step("missing_step")
        assert route.validate() == ["Step '" + route.initial_step.id + "' transitions to unknown step 'missing_step'"]

    def test_reachable_steps_handles_cycles(self):
        route = Route(title="Loop", id="loop")
        a = route.initial_step.next_step(id="a")
        b = a.next_step(id="b")
        b.next_step(a)
        assert [s.id for s in route.reachable_steps()] == [route.initial_step.id, "a", "b"]


class TestRouteCompletion:
    def test_required_fields_complete(self):
        route = Route(title="T", id="t", required_fields=["a", "b"], optional_fields=["c"])
        assert route.is_complete({"a": 1, "b": 2})
        assert route.get_completion_progress({"a": 1, "b": 2}) == 1.0
        assert route.get_completion_progress({"a": 1}) == 0.5

    def test_no_fields_never_completes(self):
        route = Route(title="T", id="t")
        for data in ({}, {"a": 1}, {"anything": "at all"}):
            assert route.is_complete(data) is False
            assert route.get_completion_progress(data) == 0.0

    def test_optional_only_route_tracks_optional(self):
        route = Route(title="T", id="t", optional_fields=["x", "y"])
        assert route.get_completion_progress({"x": 1}) == 0.5
        assert route.is_complete({"x": 1, "y": 2})

    def test_none_values_count_as_missing(self):
        route = Route(title="T", id="t", required_fields=["a"])
        assert not route.is_complete({"a": None})
        assert route.missing_required_fields({"a": None}) == ["a"]

    def test_collects_only_optional(self):
        route = Route(title="T", id="t", required_fields=["a"], optional_fields=["c"])
        optional = route.create_step(id="opt", collect=["c"])
        required = route.create_step(id="req", collect=["a"])
        assert route.collects_only_optional(optional, {"a": 1})
        assert not route.collects_only_optional(optional, {"a": 1, "c": 3})
        assert not route.collects_only_optional(required, {})


class TestOnComplete:
    def _session(self) -> SessionState:
        return SessionState(id="s")

    @pytest.mark.asyncio
    async def test_string_target(self):
        route = Route(title="T", id="t", on_complete="feedback")
        config = await route.evaluate_on_complete(self._session())
        assert config == RouteTransitionConfig(transition_to="feedback")

    @pytest.mark.asyncio
    async def test_async_handler(self):
        async def decide(session, context):
            return {"transition_to": "upsell", "condition": "User seems happy"}
        route = Route(title="T", id="t", on_complete=decide)
        config = await route.evaluate_on_complete(self._session(), {})
        assert config.transition_to == "upsell"
        assert config.condition == "User seems happy"

    @pytest.mark.asyncio
    async def test_handler_returning_none(self):
        route = Route(title="T", id="t", on_complete=lambda session, context: None)
        assert await route.evaluate_on_complete(self._session()) is None

    @pytest.mark.asyncio
    async def test_invalid_result_raises(self):
        route = Route(title="T", id="t", on_complete=lambda session, context: 42)
        with pytest.raises(RouteDefinitionError):
            await route.evaluate_on_complete(self._session())


class TestGuidelines:
    def test_route_guideline_scoped_to_route(self):
        route = Route(title="T", id="t", guidelines=[{"action": "Be brief", "condition": "User is in a hurry"}])
        g = route.guidelines[0]
        assert g.scope_id == "t"
        assert g.describe() == "When User is in a hurry, then Be brief"

    def test_guideline_ids_are_deterministic(self):
        assert Guideline(action="Be brief").id == Guideline(action="Be brief").id

    def test_describe_lists_steps(self, flight_route):
        text = flight_route.describe()
        assert "Route: Book a flight" in text
        assert "ask_destination" in text
