"""
Tool Manager — registry, scoped resolution and resilient execution.

Resolution order for a tool reference (id or name):
  1. step-local tools
  2. route-level tools
  3. agent-level tools
  4. the id-keyed registry
Narrower scopes shadow broader ones.

Execution wraps the handler with a timeout and retries transient failures
with exponential backoff (tenacity). When the primary tool is exhausted,
or cannot be found, the ordered fallback list is tried. A tool that is
exhausted with no successful fallback raises ToolExecutionError; a tool
that cannot be found never raises.
"""
from __future__ import annotations

import asyncio
import inspect
import re
import time
from typing import Any, Iterable, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import get_settings
from core.errors import DecisionCancelled, ToolCreationError, ToolExecutionError
from models.schemas import HistoryEvent, ToolExecutionResult
from tools.models import Tool, ToolContext, ToolRef, ToolScope, UpdateFn, _noop_update, normalize_result
from utils.cancellation import raise_if_cancelled

logger = structlog.get_logger()

_TRANSIENT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"network", r"timeout", r"timed out", r"connection", r"temporary",
        r"rate limit", r"\b502\b", r"\b503\b", r"\b504\b",
        r"ECONNRESET", r"ETIMEDOUT", r"ENOTFOUND",
    )
]


def is_transient_error(error: BaseException) -> bool:
    """Network/timeout/rate-limit shaped failures are worth retrying."""
    if isinstance(error, (DecisionCancelled, ToolCreationError)):
        return False
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError,
                          httpx.TimeoutException, httpx.NetworkError)):
        return True
    message = str(error)
    return any(p.search(message) for p in _TRANSIENT_PATTERNS)


def _handler_arity(handler) -> int:
    try:
        params = inspect.signature(handler).parameters.values()
    except (TypeError, ValueError):
        return 2
    if any(p.kind == p.VAR_POSITIONAL for p in params):
        return 2
    positional = [p for p in params if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)]
    return len(positional)


class ToolManager:
    """
    Owns the global tool registry and executes tools on behalf of the
    routing and preparation engines.
    """

    def __init__(
        self,
        agent_tools: Iterable[Tool] = (),
        timeout_seconds: float = None,
        retry_count: int = None,
        retry_backoff_base: float = None,
        retry_backoff_max: float = None,
    ):
        cfg = get_settings().tools
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else cfg.timeout_seconds
        self.retry_count = retry_count if retry_count is not None else cfg.retry_count
        self.retry_backoff_base = (
            retry_backoff_base if retry_backoff_base is not None else cfg.retry_backoff_base
        )
        self.retry_backoff_max = retry_backoff_max if retry_backoff_max is not None else cfg.retry_backoff_max
        self._registry: dict[str, Tool] = {}
        self._agent_tools: list[Tool] = list(agent_tools)

    # ── Registration ──────────────────────────────────

    def register(self, tool: Tool) -> Tool:
        if not isinstance(tool, Tool):
            raise ToolCreationError(f"Cannot register {type(tool).__name__}; expected Tool")
        if tool.id in self._registry:
            logger.warning("tool_overwritten", tool_id=tool.id)
        self._registry[tool.id] = tool
        logger.info("tool_registered", tool_id=tool.id, name=tool.name, category=tool.category.value)
        return tool

    def register_many(self, tools: Iterable[Tool]) -> list[Tool]:
        return [self.register(t) for t in tools]

    def unregister(self, tool_id: str) -> bool:
        removed = self._registry.pop(tool_id, None)
        if removed:
            logger.info("tool_unregistered", tool_id=tool_id)
        return removed is not None

    def get_registered(self, tool_id: str) -> Optional[Tool]:
        return self._registry.get(tool_id)

    def is_registered(self, tool_id: str) -> bool:
        return tool_id in self._registry

    @property
    def registered_ids(self) -> list[str]:
        return list(self._registry.keys())

    def clear_registry(self) -> None:
        self._registry.clear()

    def add_agent_tool(self, tool: Tool) -> Tool:
        self._agent_tools.append(tool)
        return tool

    @property
    def agent_tools(self) -> list[Tool]:
        return list(self._agent_tools)

    # ── Resolution ────────────────────────────────────

    def _scoped(self, scope: ToolScope, step=None, route=None) -> list[tuple[str, list[Tool]]]:
        layers: list[tuple[str, list[Tool]]] = []
        if scope in (ToolScope.STEP, ToolScope.ALL) and step is not None:
            layers.append(("step", [t for t in step.tools if isinstance(t, Tool)]))
        if scope in (ToolScope.ROUTE, ToolScope.ALL) and route is not None:
            layers.append(("route", list(route.tools)))
        if scope in (ToolScope.AGENT, ToolScope.ALL):
            layers.append(("agent", self._agent_tools))
        if scope in (ToolScope.REGISTERED, ToolScope.ALL):
            layers.append(("registry", list(self._registry.values())))
        return layers

    def _locate(self, ref: str, scope: ToolScope, step=None, route=None) -> tuple[Optional[Tool], str]:
        for layer, tools in self._scoped(scope, step, route):
            if layer == "registry" and ref in self._registry:
                return self._registry[ref], layer
            for tool in tools:
                if tool.matches(ref):
                    return tool, layer
        return None, ""

    def find(self, tool_id: str, scope: ToolScope = ToolScope.ALL, step=None, route=None) -> Optional[Tool]:
        tool, _ = self._locate(tool_id, scope, step, route)
        return tool

    def resolve(self, ref: ToolRef, step=None, route=None) -> Optional[Tool]:
        """A bound Tool resolves to itself; a string goes through find()."""
        if isinstance(ref, Tool):
            return ref
        return self.find(ref, ToolScope.ALL, step, route)

    def exists(self, tool_id: str, step=None, route=None) -> bool:
        return self.find(tool_id, ToolScope.ALL, step, route) is not None

    def get_available(self, scope: ToolScope = ToolScope.ALL, step=None, route=None) -> list[Tool]:
        """Every reachable tool, deduplicated by id in priority order."""
        seen: set[str] = set()
        available: list[Tool] = []
        for _, tools in self._scoped(scope, step, route):
            for tool in tools:
                if tool.id not in seen:
                    seen.add(tool.id)
                    available.append(tool)
        return available

    def get_tool_info(self, tool_id: str, scope: ToolScope = ToolScope.ALL, step=None, route=None) -> dict[str, Any]:
        tool, layer = self._locate(tool_id, scope, step, route)
        if tool is None:
            return {"found": False}
        return {
            "found": True,
            "tool": tool,
            "scope": layer,
            "metadata": {
                "id": tool.id,
                "name": tool.name,
                "has_description": bool(tool.description),
                "has_parameters": bool(tool.parameters),
                "category": tool.category.value,
            },
        }

    def validate_tool_references(self, tool_ids: Iterable[str], step=None, route=None) -> dict[str, Any]:
        missing, found, details = [], [], []
        for tool_id in tool_ids:
            info = self.get_tool_info(tool_id, ToolScope.ALL, step, route)
            if info["found"]:
                found.append(tool_id)
                details.append({"id": tool_id, "found": True, "scope": info["scope"]})
            else:
                missing.append(tool_id)
                details.append({"id": tool_id, "found": False})
        return {"valid": not missing, "missing": missing, "found": found, "details": details}

    def get_statistics(self) -> dict[str, Any]:
        registered = list(self._registry.keys())
        agent_ids = [t.id for t in self._agent_tools]
        return {
            "registered_tools": len(registered),
            "agent_tools": len(agent_ids),
            "total_available": len(self.get_available()),
            "registered_tool_ids": registered,
            "duplicate_ids": [i for i in registered if i in agent_ids],
        }

    def health_check(self) -> dict[str, Any]:
        issues, warnings = [], []
        stats = self.get_statistics()
        if stats["duplicate_ids"]:
            warnings.append(
                f"Duplicate tool IDs found between registry and agent: {', '.join(stats['duplicate_ids'])}"
            )
        for tool in list(self._registry.values()) + self._agent_tools:
            if not callable(tool.handler):
                issues.append(f"Tool '{tool.id}' has invalid or missing handler")
        return {"healthy": not issues, "issues": issues, "warnings": warnings, "statistics": stats}

    # ── Execution ─────────────────────────────────────

    async def execute(
        self,
        tool_ref: ToolRef,
        args: dict[str, Any] = None,
        *,
        step=None,
        route=None,
        context: dict[str, Any] = None,
        data: dict[str, Any] = None,
        history: list[HistoryEvent] = None,
        update_context: UpdateFn = None,
        update_data: UpdateFn = None,
        fallback_tools: list[str] = None,
        retry_count: int = None,
        timeout_seconds: float = None,
        signal: Optional[asyncio.Event] = None,
    ) -> ToolExecutionResult:
        """
        Resolve and run a tool with retries and fallbacks.

        Raises ToolExecutionError only when a resolved tool fails after every
        retry and fallback. Unknown tools yield success=False.
        """
        raise_if_cancelled(signal, "tool execution")
        call = dict(step=step, route=route, context=context, data=data, history=history,
                    update_context=update_context, update_data=update_data, signal=signal)

        ref_id = tool_ref.id if isinstance(tool_ref, Tool) else tool_ref
        if not ref_id or not isinstance(ref_id, str) or not ref_id.strip():
            return ToolExecutionResult(tool_id=str(ref_id or ""), success=False,
                                       error="Tool ID is required and must be a non-empty string")

        tool = self.resolve(tool_ref, step, route)
        fallbacks = list(fallback_tools or []) + (list(tool.fallback_tools) if tool else [])

        if tool is None:
            logger.warning("tool_not_found", tool_id=ref_id, fallbacks=fallbacks)
            recovered = await self._try_fallbacks(ref_id, fallbacks, args, call, primary_error="not found")
            if recovered is not None:
                return recovered
            suffix = f" (fallback tools also failed: {', '.join(fallbacks)})" if fallbacks else ""
            return ToolExecutionResult(tool_id=ref_id, success=False, error=f"Tool not found: {ref_id}{suffix}",
                                       metadata={"args": args or {}, "fallback_tools": fallbacks})

        retries = retry_count if retry_count is not None else (
            tool.retry_count if tool.retry_count is not None else self.retry_count
        )
        timeout = timeout_seconds or tool.timeout_seconds or self.timeout_seconds
        attempts = 0
        last_error: Optional[BaseException] = None

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_exponential(multiplier=self.retry_backoff_base, max=self.retry_backoff_max),
            retry=retry_if_exception(is_transient_error),
            before_sleep=lambda rs: logger.warning(
                "tool_retry", tool_id=tool.id, attempt=rs.attempt_number,
                error=str(rs.outcome.exception()) if rs.outcome else "",
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    raise_if_cancelled(signal, "tool execution")
                    result = await self.execute_tool(tool, args, timeout_seconds=timeout, **call)
                    result.metadata.update({"attempt": attempts, "max_retries": retries})
                    return result
        except DecisionCancelled:
            raise
        except Exception as e:
            last_error = e
            logger.error("tool_execution_failed", tool_id=tool.id, attempts=attempts, error=str(e))

        recovered = await self._try_fallbacks(tool.id, fallbacks, args, call, primary_error=str(last_error))
        if recovered is not None:
            return recovered

        suffix = f" (fallback tools also failed: {', '.join(fallbacks)})" if fallbacks else ""
        raise ToolExecutionError(
            f"Tool execution failed after {attempts} attempts: {last_error}{suffix}",
            tool_id=tool.id,
            attempts=attempts,
            execution_context={"args": args or {}, "fallback_tools": fallbacks},
            cause=last_error,
        )

    async def _try_fallbacks(
        self,
        primary_id: str,
        fallbacks: list[str],
        args: Optional[dict[str, Any]],
        call: dict[str, Any],
        primary_error: str,
    ) -> Optional[ToolExecutionResult]:
        for fallback_id in fallbacks:
            if fallback_id == primary_id:
                continue
            try:
                result = await self.execute(fallback_id, args, fallback_tools=[], retry_count=0, **call)
            except ToolExecutionError as e:
                logger.warning("tool_fallback_failed", tool_id=primary_id, fallback=fallback_id, error=str(e))
                continue
            if result.success:
                logger.info("tool_fallback_succeeded", tool_id=primary_id, fallback=fallback_id)
                result.metadata.update({"primary_tool": primary_id, "primary_error": primary_error,
                                        "fallback_used": fallback_id})
                return result
        return None

    async def execute_tool(
        self,
        tool: Tool,
        args: dict[str, Any] = None,
        *,
        step=None,
        route=None,
        context: dict[str, Any] = None,
        data: dict[str, Any] = None,
        history: list[HistoryEvent] = None,
        update_context: UpdateFn = None,
        update_data: UpdateFn = None,
        signal: Optional[asyncio.Event] = None,
        timeout_seconds: float = None,
    ) -> ToolExecutionResult:
        """One attempt: run the handler under a timeout and apply its updates."""
        update_context = update_context or _noop_update
        update_data = update_data or _noop_update
        tool_ctx = ToolContext(
            context=dict(context or {}),
            data=dict(data or {}),
            history=list(history or []),
            step_id=step.id if step is not None else "",
            route_id=route.id if route is not None else "",
            signal=signal,
            update_context=update_context,
            update_data=update_data,
        )
        timeout = timeout_seconds or self.timeout_seconds
        started = time.monotonic()

        async def _invoke():
            call_args = (tool_ctx, args or {}) if _handler_arity(tool.handler) >= 2 else (tool_ctx,)
            if inspect.iscoroutinefunction(tool.handler):
                raw = tool.handler(*call_args)
            else:
                # plain functions run off the loop so the timeout can fire
                raw = await asyncio.to_thread(tool.handler, *call_args)
            if inspect.isawaitable(raw):
                raw = await raw
            return raw

        logger.debug("tool_executing", tool_id=tool.id, args=args)
        try:
            raw = await asyncio.wait_for(_invoke(), timeout=timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Tool execution timeout after {timeout}s") from None

        elapsed_ms = int((time.monotonic() - started) * 1000)
        result = normalize_result(raw)

        for label, update, apply in (
            ("data", result.data_update, update_data),
            ("context", result.context_update, update_context),
        ):
            if update is None:
                continue
            if not isinstance(update, dict):
                logger.warning("tool_invalid_update", tool_id=tool.id, kind=label, got=type(update).__name__)
                continue
            try:
                await apply(update)
            except Exception as e:
                logger.error("tool_update_failed", tool_id=tool.id, kind=label, error=str(e))
                return ToolExecutionResult(
                    tool_id=tool.id, tool_name=tool.name, success=False,
                    error=f"Failed to apply {label} update: {e}",
                    metadata={"execution_time_ms": elapsed_ms},
                )

        logger.debug("tool_completed", tool_id=tool.id, success=result.success, elapsed_ms=elapsed_ms)
        return ToolExecutionResult(
            tool_id=tool.id,
            tool_name=tool.name,
            success=result.success,
            data=result.data,
            error=result.error,
            context_update=result.context_update,
            data_update=result.data_update,
            metadata={"execution_time_ms": elapsed_ms, **result.meta},
        )
