"""
Preparation Loop — runs tools before the reply is generated.

Each iteration:
  1. Match every enabled guideline (agent, route and step scoped) against
     the working context and collected data.
  2. Run the tools bound to matched guidelines, one after another, folding
     their context/data updates in immediately.
  3. When a step is current, walk the route's step chain from it and run the
     tool bound to each transition whose condition holds.

The loop stops when an iteration runs no tools, when a step or tool signals
readiness, or at max_iterations. Tool selection is driven by graph position
and guideline matching only; the model is never asked which tool to run.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import structlog

from config.settings import get_settings
from core.errors import DecisionCancelled, ToolExecutionError
from models.schemas import HistoryEvent, SessionState, ToolExecutionResult
from routes.models import Guideline, Route, Step
from tools.manager import ToolManager
from tools.models import ToolRef, tool_ref_id
from utils.cancellation import raise_if_cancelled
from utils.conditions import ConditionContext, evaluate_when

logger = structlog.get_logger()


@dataclass
class PreparationResult:
    iterations: int
    final_context: dict[str, Any]
    final_data: dict[str, Any]
    tool_executions: list[ToolExecutionResult] = field(default_factory=list)
    prepared_to_respond: bool = True
    matched_guidelines: list[Guideline] = field(default_factory=list)
    context_fragments: list[str] = field(default_factory=list)
    stop_reason: str = ""                 # no_tools | ready | max_iterations

    @property
    def failed_executions(self) -> list[ToolExecutionResult]:
        return [r for r in self.tool_executions if not r.success]

    @property
    def data_changed(self) -> bool:
        return any(r.success and r.data_update for r in self.tool_executions)


class _WorkingState:
    """Context and data owned by one prepare() call; tools write through it."""

    def __init__(self, context: dict[str, Any], data: dict[str, Any]):
        self.context = dict(context)
        self.data = dict(data)

    async def update_context(self, patch: dict[str, Any]) -> None:
        self.context.update(patch)

    async def update_data(self, patch: dict[str, Any]) -> None:
        self.data.update(patch)


class PreparationEngine:
    def __init__(self, tool_manager: ToolManager, max_iterations: int = None):
        self.tool_manager = tool_manager
        self.max_iterations = max_iterations or get_settings().preparation.max_iterations

    # ──────────────────────────────────────────────────
    #  Guideline matching
    # ──────────────────────────────────────────────────

    def match_guidelines(
        self,
        guidelines: Iterable[Guideline],
        ctx: ConditionContext,
    ) -> tuple[list[Guideline], list[str]]:
        """Enabled guidelines whose predicates hold, plus their descriptive fragments."""
        matched: list[Guideline] = []
        fragments: list[str] = []
        for g in guidelines:
            if not g.enabled:
                continue
            if g.condition is None:
                matched.append(g)
                continue
            result = evaluate_when(g.condition, ctx)
            if result.programmatic_result:
                matched.append(g)
                fragments.extend(result.ai_context_strings)
        return matched, fragments

    # ──────────────────────────────────────────────────
    #  Loop
    # ──────────────────────────────────────────────────

    async def prepare(
        self,
        session: SessionState,
        history: list[HistoryEvent] = None,
        route: Optional[Route] = None,
        step: Optional[Step] = None,
        context: dict[str, Any] = None,
        guidelines: Iterable[Guideline] = (),
        signal: Optional[asyncio.Event] = None,
    ) -> PreparationResult:
        history = list(history or [])
        state = _WorkingState(context or {}, session.data)
        scoped = list(guidelines)
        if route is not None:
            scoped += route.guidelines
        if step is not None:
            scoped += step.guidelines

        executions: list[ToolExecutionResult] = []
        matched: list[Guideline] = []
        fragments: list[str] = []
        fired_edges: set[tuple[str, str]] = set()
        iterations = 0
        stop_reason = "max_iterations"

        while iterations < self.max_iterations:
            raise_if_cancelled(signal, "preparation")
            iterations += 1
            ran: list[ToolExecutionResult] = []

            ctx = self._ctx(state, session, history)
            matched, fragments = self.match_guidelines(scoped, ctx)
            for g in matched:
                for ref in g.tools:
                    ran.append(await self._run(ref, state, session, history, route, step, signal,
                                               source=f"guideline:{g.id}"))

            if route is not None and step is not None:
                await self._walk_transitions(route, step, state, session, history, signal,
                                             ran, fired_edges, visited=set())

            executions.extend(ran)
            logger.debug("preparation_iteration", iteration=iterations, tools_run=len(ran),
                         guidelines_matched=len(matched))

            if not ran:
                stop_reason = "no_tools"
                break
            if (step is not None and step.prepared_to_respond) or any(
                r.success and r.metadata.get("prepared_to_respond") for r in ran
            ):
                stop_reason = "ready"
                break

        if stop_reason == "max_iterations":
            logger.info("preparation_iteration_cap", iterations=iterations, session_id=session.id)

        return PreparationResult(
            iterations=iterations,
            final_context=state.context,
            final_data=state.data,
            tool_executions=executions,
            prepared_to_respond=True,
            matched_guidelines=matched,
            context_fragments=fragments,
            stop_reason=stop_reason,
        )

    async def _walk_transitions(
        self,
        route: Route,
        step: Step,
        state: _WorkingState,
        session: SessionState,
        history: list[HistoryEvent],
        signal: Optional[asyncio.Event],
        ran: list[ToolExecutionResult],
        fired_edges: set[tuple[str, str]],
        visited: set[str],
    ) -> None:
        """Depth-first along transitions whose condition holds; each edge tool fires once per prepare()."""
        if step.id in visited:
            return
        visited.add(step.id)

        for transition in step.transitions:
            if transition.is_terminal:
                continue
            if transition.condition is not None:
                holds = evaluate_when(transition.condition, self._ctx(state, session, history))
                if not holds.programmatic_result:
                    continue
            edge = (transition.source_id, transition.target_id)
            if transition.tool is not None and edge not in fired_edges:
                fired_edges.add(edge)
                ran.append(await self._run(transition.tool, state, session, history, route, step, signal,
                                           source=f"transition:{edge[0]}->{edge[1]}"))
            target = route.get_step(transition.target_id)
            if target is None:
                logger.warning("transition_target_unknown", route_id=route.id, step_id=transition.target_id)
                continue
            await self._walk_transitions(route, target, state, session, history, signal,
                                         ran, fired_edges, visited)

    async def _run(
        self,
        ref: ToolRef,
        state: _WorkingState,
        session: SessionState,
        history: list[HistoryEvent],
        route: Optional[Route],
        step: Optional[Step],
        signal: Optional[asyncio.Event],
        source: str,
    ) -> ToolExecutionResult:
        try:
            result = await self.tool_manager.execute(
                ref,
                step=step,
                route=route,
                context=state.context,
                data=state.data,
                history=history,
                update_context=state.update_context,
                update_data=state.update_data,
                signal=signal,
            )
        except DecisionCancelled:
            raise
        except ToolExecutionError as e:
            logger.error("preparation_tool_failed", tool_id=e.tool_id, attempts=e.attempts, source=source)
            result = ToolExecutionResult(tool_id=e.tool_id, success=False, error=str(e),
                                         metadata={"attempts": e.attempts})
        if not result.success:
            logger.warning("preparation_tool_unsuccessful", tool_id=result.tool_id or tool_ref_id(ref),
                           error=result.error, source=source)
        result.metadata["source"] = source
        return result

    @staticmethod
    def _ctx(state: _WorkingState, session: SessionState, history: list[HistoryEvent]) -> ConditionContext:
        return ConditionContext.build(context=state.context, data=state.data, session=session, history=history)
