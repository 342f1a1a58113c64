"""Tests for tool definitions, scoped resolution and resilient execution."""
import asyncio
import time

import httpx
import pytest

from core.errors import DecisionCancelled, ToolCreationError, ToolExecutionError
from routes.models import Route
from tools.manager import ToolManager, is_transient_error
from tools.models import Tool, ToolContext, ToolResult, ToolScope, normalize_result


def _tool(tool_id, handler, **kwargs):
    return Tool(name=kwargs.pop("name", tool_id), id=tool_id, handler=handler, **kwargs)


class TestToolDefinition:
    def test_id_derived_from_name(self):
        tool = Tool(name="Order lookup", handler=lambda ctx: None)
        assert tool.id.startswith("tool_order_lookup_")

    def test_invalid_id_rejected(self):
        with pytest.raises(ToolCreationError, match="alphanumeric"):
            Tool(name="x", id="bad id!", handler=lambda ctx: None)

    def test_multiple_errors_joined(self):
        with pytest.raises(ToolCreationError) as exc:
            Tool(name="x", id="x", handler="not callable", retry_count=-1)
        assert "; " in str(exc.value)

    def test_matches_id_or_name(self):
        tool = Tool(name="Order lookup", id="order_lookup", handler=lambda ctx: None)
        assert tool.matches("order_lookup") and tool.matches("Order lookup")


class TestNormalizeResult:
    def test_tool_result_passthrough(self):
        result = ToolResult(data=1)
        assert normalize_result(result) is result

    def test_result_shaped_dict(self):
        result = normalize_result({"success": False, "error": "nope"})
        assert result.success is False and result.error == "nope"

    def test_plain_value_wrapped(self):
        assert normalize_result({"city": "Lisbon"}).data == {"city": "Lisbon"}
        assert normalize_result(42).data == 42


class TestRegistry:
    def test_register_and_lookup(self, tool_manager):
        tool = tool_manager.register(_tool("weather", lambda ctx: "sunny"))
        assert tool_manager.is_registered("weather")
        assert tool_manager.get_registered("weather") is tool
        assert tool_manager.registered_ids == ["weather"]
        assert tool_manager.unregister("weather")
        assert not tool_manager.unregister("weather")

    def test_register_rejects_non_tool(self, tool_manager):
        with pytest.raises(ToolCreationError):
            tool_manager.register(lambda ctx: None)

    def test_clear_registry(self, tool_manager):
        tool_manager.register_many([_tool("a", lambda ctx: 1), _tool("b", lambda ctx: 2)])
        tool_manager.clear_registry()
        assert tool_manager.registered_ids == []


class TestScopedResolution:
    @pytest.fixture
    def scoped(self, tool_manager):
        step_tool = _tool("lookup", lambda ctx: "step", name="Lookup")
        route_tool = _tool("lookup", lambda ctx: "route", name="Lookup")
        agent_tool = _tool("lookup", lambda ctx: "agent", name="Lookup")
        tool_manager.register(_tool("lookup", lambda ctx: "registry", name="Lookup"))
        tool_manager.add_agent_tool(agent_tool)
        route = Route(title="Orders", id="orders", tools=[route_tool])
        step = route.create_step(id="s", tools=[step_tool])
        return tool_manager, route, step, step_tool, route_tool, agent_tool

    def test_narrower_scope_shadows_broader(self, scoped):
        manager, route, step, step_tool, route_tool, agent_tool = scoped
        assert manager.find("lookup", step=step, route=route) is step_tool
        assert manager.find("lookup", route=route) is route_tool
        assert manager.find("lookup") is agent_tool
        assert manager.find("lookup", ToolScope.REGISTERED).handler(None) == "registry"

    def test_lookup_by_name(self, scoped):
        manager, route, step, step_tool, *_ = scoped
        assert manager.find("Lookup", step=step, route=route) is step_tool

    def test_get_tool_info_reports_scope(self, scoped):
        manager, route, step, *_ = scoped
        info = manager.get_tool_info("lookup", step=step, route=route)
        assert info["found"] and info["scope"] == "step"
        assert manager.get_tool_info("missing") == {"found": False}

    def test_get_available_deduplicates(self, scoped):
        manager, route, step, step_tool, *_ = scoped
        available = manager.get_available(step=step, route=route)
        assert available == [step_tool]

    def test_validate_tool_references(self, scoped):
        manager, route, step, *_ = scoped
        report = manager.validate_tool_references(["lookup", "ghost"], step=step, route=route)
        assert report["valid"] is False
        assert report["missing"] == ["ghost"]
        assert report["found"] == ["lookup"]

    def test_health_check_warns_on_duplicates(self, scoped):
        manager, *_ = scoped
        health = manager.health_check()
        assert health["healthy"] is True
        assert "lookup" in health["warnings"][0]


class TestExecution:
    @pytest.mark.asyncio
    async def test_updates_go_through_caller_functions(self, tool_manager):
        applied = {"data": {}, "context": {}}

        async def update_data(patch):
            applied["data"].update(patch)

        async def update_context(patch):
            applied["context"].update(patch)

        data = {"city": "Lisbon"}
        tool = _tool("forecast", lambda ctx: ToolResult(data="sunny", data_update={"forecast": "sunny"},
                                                        context_update={"checked": True}))
        result = await tool_manager.execute(tool, data=data, update_data=update_data,
                                            update_context=update_context)

        assert result.success and result.data == "sunny"
        assert applied == {"data": {"forecast": "sunny"}, "context": {"checked": True}}
        assert data == {"city": "Lisbon"}
        assert "execution_time_ms" in result.metadata

    @pytest.mark.asyncio
    async def test_handler_with_args(self, tool_manager):
        tool = _tool("add", lambda ctx, args: args["a"] + args["b"])
        result = await tool_manager.execute(tool, {"a": 2, "b": 3})
        assert result.data == 5

    @pytest.mark.asyncio
    async def test_set_field_reaches_update_data(self, tool_manager):
        seen = {}

        async def update_data(patch):
            seen.update(patch)

        async def handler(ctx: ToolContext):
            await ctx.set_field("status", "shipped")
            return ctx.has_field("status")

        result = await tool_manager.execute(_tool("set", handler), update_data=update_data)
        assert result.data is True
        assert seen == {"status": "shipped"}

    @pytest.mark.asyncio
    async def test_unknown_tool_returns_failure(self, tool_manager):
        result = await tool_manager.execute("ghost")
        assert result.success is False
        assert "Tool not found: ghost" in result.error

    @pytest.mark.asyncio
    async def test_empty_id_returns_failure(self, tool_manager):
        result = await tool_manager.execute("  ")
        assert result.success is False

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, tool_manager):
        attempts = []

        def flaky(ctx):
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("connection reset")
            return "ok"

        result = await tool_manager.execute(_tool("flaky", flaky))
        assert result.success and result.data == "ok"
        assert result.metadata["attempt"] == 3
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_non_transient_error_not_retried(self, tool_manager):
        attempts = []

        def broken(ctx):
            attempts.append(1)
            raise ValueError("invalid order id")

        with pytest.raises(ToolExecutionError) as exc:
            await tool_manager.execute(_tool("broken", broken))
        assert exc.value.tool_id == "broken"
        assert exc.value.attempts == 1
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, tool_manager):
        def down(ctx):
            raise RuntimeError("503 Service Unavailable")

        with pytest.raises(ToolExecutionError) as exc:
            await tool_manager.execute(_tool("down", down))
        assert exc.value.attempts == 3

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self, tool_manager):
        async def slow(ctx):
            await asyncio.sleep(1)

        tool = _tool("slow", slow, timeout_seconds=0.01, retry_count=0)
        with pytest.raises(ToolExecutionError, match="timeout"):
            await tool_manager.execute(tool)

    @pytest.mark.asyncio
    async def test_slow_sync_handler_times_out(self, tool_manager):
        def blocking(ctx):
            time.sleep(0.5)
            return "late"

        tool = _tool("blocking", blocking, timeout_seconds=0.05, retry_count=0)
        started = time.monotonic()
        with pytest.raises(ToolExecutionError, match="timeout"):
            await tool_manager.execute(tool)
        assert time.monotonic() - started < 0.4

    @pytest.mark.asyncio
    async def test_fallback_used_after_primary_fails(self, tool_manager):
        def primary(ctx):
            raise ValueError("primary broke")

        tool_manager.register(_tool("backup", lambda ctx: "from backup"))
        result = await tool_manager.execute(_tool("primary", primary, fallback_tools=["backup"]))

        assert result.success and result.data == "from backup"
        assert result.metadata["fallback_used"] == "backup"
        assert result.metadata["primary_tool"] == "primary"

    @pytest.mark.asyncio
    async def test_fallback_for_unknown_tool(self, tool_manager):
        tool_manager.register(_tool("backup", lambda ctx: "from backup"))
        result = await tool_manager.execute("ghost", fallback_tools=["backup"])
        assert result.success and result.metadata["fallback_used"] == "backup"

    @pytest.mark.asyncio
    async def test_all_fallbacks_fail(self, tool_manager):
        def broken(ctx):
            raise ValueError("nope")

        tool_manager.register(_tool("backup", broken))
        with pytest.raises(ToolExecutionError, match="fallback tools also failed: backup"):
            await tool_manager.execute(_tool("primary", broken, fallback_tools=["backup"]))

    @pytest.mark.asyncio
    async def test_failed_update_reports_failure(self, tool_manager):
        async def update_data(patch):
            raise RuntimeError("store offline")

        tool = _tool("t", lambda ctx: {"data_update": {"x": 1}})
        result = await tool_manager.execute(tool, update_data=update_data)
        assert result.success is False
        assert "Failed to apply data update" in result.error

    @pytest.mark.asyncio
    async def test_cancelled_signal(self, tool_manager):
        signal = asyncio.Event()
        signal.set()
        with pytest.raises(DecisionCancelled):
            await tool_manager.execute(_tool("t", lambda ctx: 1), signal=signal)

    def test_defaults_from_settings(self):
        manager = ToolManager()
        assert manager.timeout_seconds == 30.0
        assert manager.retry_count == 2


class TestTransientClassification:
    @pytest.mark.parametrize("error", [
        TimeoutError("slow"),
        ConnectionError("reset"),
        httpx.ConnectTimeout("connect timeout"),
        RuntimeError("rate limit exceeded"),
        RuntimeError("upstream returned 502"),
        RuntimeError("ECONNRESET"),
    ])
    def test_transient(self, error):
        assert is_transient_error(error)

    @pytest.mark.parametrize("error", [
        ValueError("invalid input"),
        DecisionCancelled("cancelled"),
        ToolCreationError("network config invalid"),
        RuntimeError("status 5020"),
    ])
    def test_not_transient(self, error):
        assert not is_transient_error(error)
