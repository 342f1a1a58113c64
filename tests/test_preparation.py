"""Tests for the Preparation Loop."""
import asyncio
import pytest

from core.errors import DecisionCancelled
from models.schemas import SessionState
from preparation.engine import PreparationEngine
from routes.models import Guideline, Route
from tools.models import Tool


@pytest.fixture
def engine(tool_manager):
    return PreparationEngine(tool_manager, max_iterations=3)


@pytest.fixture
def session():
    return SessionState(id="s-prep", data={"order_id": "A1"})


class TestGuidelines:
    @pytest.mark.asyncio
    async def test_nothing_to_do_stops_after_one_iteration(self, engine, session):
        result = await engine.prepare(session)
        assert result.iterations == 1
        assert result.tool_executions == []
        assert result.prepared_to_respond is True
        assert result.stop_reason == "no_tools"
        assert result.final_data == {"order_id": "A1"}

    @pytest.mark.asyncio
    async def test_self_retriggering_guideline_halts_at_cap(self, engine, session):
        def bump(ctx):
            return {"context_update": {"count": ctx.context.get("count", 0) + 1}}

        always = Guideline(action="Keep counting", tools=[Tool(name="bump", id="bump", handler=bump)])
        result = await engine.prepare(session, guidelines=[always])

        assert result.iterations == 3
        assert result.prepared_to_respond is True
        assert result.stop_reason == "max_iterations"
        assert len(result.tool_executions) == 3
        assert result.final_context["count"] == 3

    @pytest.mark.asyncio
    async def test_updates_fold_forward_within_iteration(self, engine, session):
        def first(ctx):
            return {"data_update": {"x": 1}}

        def second(ctx):
            return {"data_update": {"y": ctx.get_field("x", 0) + 1}}

        g = Guideline(action="Enrich", condition=lambda c: "y" not in c.data,
                      tools=[Tool(name="first", id="first", handler=first),
                             Tool(name="second", id="second", handler=second)])
        result = await engine.prepare(session, guidelines=[g])

        assert result.final_data == {"order_id": "A1", "x": 1, "y": 2}
        assert [r.tool_id for r in result.tool_executions] == ["first", "second"]
        assert result.iterations == 2
        assert result.data_changed

    @pytest.mark.asyncio
    async def test_guideline_matching(self, engine, session):
        guidelines = [
            Guideline(action="Apologise", condition="User is upset"),
            Guideline(action="Offer refund", condition=lambda c: c.data.get("order_id") == "Z9"),
            Guideline(action="Be brief", enabled=False),
            Guideline(action="Greet"),
        ]
        result = await engine.prepare(session, guidelines=guidelines)
        assert [g.action for g in result.matched_guidelines] == ["Apologise", "Greet"]
        assert result.context_fragments == ["User is upset"]

    @pytest.mark.asyncio
    async def test_registered_tool_by_id(self, engine, tool_manager, session):
        tool_manager.register(Tool(name="Order lookup", id="order_lookup",
                                   handler=lambda ctx: {"data_update": {"status": "shipped"}}))
        g = Guideline(action="Look up the order", condition=lambda c: "status" not in c.data,
                      tools=["order_lookup"])
        result = await engine.prepare(session, guidelines=[g])
        assert result.final_data["status"] == "shipped"

    @pytest.mark.asyncio
    async def test_route_and_step_guidelines_included(self, engine, session):
        route = Route(title="Orders", id="orders", guidelines=[{"action": "Mention tracking"}])
        route.initial_step.add_guideline(Guideline(action="Confirm the order id"))
        result = await engine.prepare(session, route=route, step=route.initial_step)
        assert [g.action for g in result.matched_guidelines] == ["Mention tracking", "Confirm the order id"]


class TestTransitionTools:
    @pytest.mark.asyncio
    async def test_transition_tool_runs_once_when_condition_holds(self, engine, session):
        calls = []

        def lookup(ctx):
            calls.append(ctx.route_id)
            return {"data_update": {"status": "shipped"}}

        route = Route(title="Orders", id="orders", initial_step={"id": "start"})
        route.initial_step.next_step(id="report", condition=lambda c: "order_id" in c.data, tool=lookup)

        result = await engine.prepare(session, route=route, step=route.initial_step)

        assert calls == ["orders"]
        assert result.iterations == 2
        assert result.final_data["status"] == "shipped"
        assert result.tool_executions[0].metadata["source"].startswith("transition:start->report")

    @pytest.mark.asyncio
    async def test_false_condition_blocks_tool_and_path(self, engine, session):
        calls = []
        route = Route(title="Orders", id="orders", initial_step={"id": "start"})
        gated = route.initial_step.next_step(id="gated", condition=lambda c: False,
                                             tool=lambda ctx: calls.append("gated"))
        gated.next_step(id="after", tool=lambda ctx: calls.append("after"))

        result = await engine.prepare(session, route=route, step=route.initial_step)
        assert calls == []
        assert result.iterations == 1

    @pytest.mark.asyncio
    async def test_no_transition_tools_without_current_step(self, engine, session):
        calls = []
        route = Route(title="Orders", id="orders", initial_step={"id": "start"})
        a = route.initial_step.next_step(id="a", tool=lambda ctx: calls.append("a"))
        a.next_step(id="b", tool=lambda ctx: calls.append("b"))
        result = await engine.prepare(session, route=route)
        assert calls == []
        assert result.stop_reason == "no_tools"

    @pytest.mark.asyncio
    async def test_cycle_in_chain_terminates(self, engine, session):
        route = Route(title="Loop", id="loop", initial_step={"id": "start"})
        a = route.initial_step.next_step(id="a")
        a.next_step(route.initial_step)
        result = await engine.prepare(session, route=route, step=route.initial_step)
        assert result.iterations == 1


class TestReadinessAndFailures:
    @pytest.mark.asyncio
    async def test_step_readiness_stops_early(self, engine, session):
        route = Route(title="Orders", id="orders", initial_step={"id": "start", "prepared_to_respond": True})
        g = Guideline(action="Count", tools=[Tool(name="noop", id="noop", handler=lambda ctx: None)])
        result = await engine.prepare(session, route=route, step=route.initial_step, guidelines=[g])
        assert result.iterations == 1
        assert result.stop_reason == "ready"

    @pytest.mark.asyncio
    async def test_tool_readiness_signal(self, engine, session):
        g = Guideline(action="Check", tools=[Tool(
            name="ready", id="ready", handler=lambda ctx: {"data": "ok", "meta": {"prepared_to_respond": True}},
        )])
        result = await engine.prepare(session, guidelines=[g])
        assert result.iterations == 1
        assert result.stop_reason == "ready"

    @pytest.mark.asyncio
    async def test_failing_tool_is_recorded_and_loop_continues(self, engine, session):
        def broken(ctx):
            raise ValueError("bad input")

        def fine(ctx):
            return {"data_update": {"ok": True}}

        g = Guideline(action="Run both", condition=lambda c: "ok" not in c.data,
                      tools=[Tool(name="broken", id="broken", handler=broken),
                             Tool(name="fine", id="fine", handler=fine)])
        result = await engine.prepare(session, guidelines=[g])

        assert [r.success for r in result.tool_executions] == [False, True]
        assert result.failed_executions[0].tool_id == "broken"
        assert "bad input" in result.failed_executions[0].error
        assert result.final_data["ok"] is True

    @pytest.mark.asyncio
    async def test_unknown_tool_recorded_as_failure(self, engine, session):
        g = Guideline(action="Missing", condition=lambda c: "done" not in c.context, tools=["ghost"])
        result = await engine.prepare(session, guidelines=[g])
        assert all(not r.success for r in result.tool_executions)
        assert result.iterations == 3

    @pytest.mark.asyncio
    async def test_cancellation(self, engine, session):
        signal = asyncio.Event()
        signal.set()
        with pytest.raises(DecisionCancelled):
            await engine.prepare(session, signal=signal)

    def test_max_iterations_default_from_settings(self, tool_manager):
        assert PreparationEngine(tool_manager).max_iterations == 3
