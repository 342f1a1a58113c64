"""
Routing Engine — decides which route is active and which step runs next.

One decision costs at most one model call:
  - a pending cross-route transition is resolved first, without scoring
  - with a single eligible route, intent scoring is skipped and the model is
    asked to pick a step only when there is more than one candidate
  - with several eligible routes, one structured call returns a 0-100 score
    per route plus, when a route is active, the next step within it

Scores are boosted by completion progress so half-finished routes are
favoured; fully-collected routes are never re-selected by scoring.
Invalid ids or missing structured output fall back to safe defaults and
are logged, never raised.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

import structlog

from config.settings import get_settings
from context.session import (
    clear_pending_transition, enter_route, enter_step, mark_route_completed,
    merge_collected, set_pending_transition,
)
from core.llm import parse_json_object
from models.schemas import AgentOptions, HistoryEvent, ModelRequest, ModelResponse, SessionState
from routes.models import Route, Step
from routing.models import CandidateStep, RoutingDecision
from routing.prompts import (
    build_routing_prompt, build_routing_schema,
    build_step_selection_prompt, build_step_selection_schema,
)
from utils.cancellation import raise_if_cancelled
from utils.conditions import Condition, ConditionContext, evaluate_skip_if, evaluate_when

logger = structlog.get_logger()

LLMGenerate = Callable[[ModelRequest], Awaitable[ModelResponse]]


def parse_structured(response: ModelResponse) -> Optional[dict[str, Any]]:
    """Structured output, or the message parsed as JSON when the transport returned text."""
    if isinstance(response.structured, dict):
        return response.structured
    return parse_json_object(response.message)


class RoutingEngine:
    def __init__(self, completion_boost: float = None):
        cfg = get_settings().routing
        self.completion_boost = completion_boost if completion_boost is not None else cfg.completion_boost

    # ──────────────────────────────────────────────────
    #  Candidate steps
    # ──────────────────────────────────────────────────

    def get_candidate_steps(
        self,
        route: Route,
        current_step: Optional[Step],
        data: dict[str, Any],
        context: dict[str, Any] = None,
        session: SessionState = None,
        history: list[HistoryEvent] = None,
    ) -> list[CandidateStep]:
        """
        Steps the conversation may move to from current_step.

        A single CandidateStep with is_route_complete=True means the route is
        finished. When required data is complete but optional-only steps
        remain, those steps are returned alongside a completion option.
        """
        ctx = ConditionContext.build(context=context, data=data, session=session, history=history)
        if current_step is None:
            base = self._entry_candidates(route, ctx)
        else:
            base = self._next_candidates(route, current_step, ctx)

        if route.is_complete(data) and not (len(base) == 1 and base[0].is_route_complete):
            anchor = current_step or route.initial_step
            optional = [c for c in base if not c.is_route_complete and route.collects_only_optional(c.step, data)]
            if optional:
                logger.debug("route_complete_with_optional_steps", route_id=route.id,
                             steps=[c.step.id for c in optional])
                return optional + [CandidateStep(anchor, is_route_complete=True)]
            logger.debug("route_complete_by_data", route_id=route.id)
            return [CandidateStep(anchor, is_route_complete=True)]
        return base

    def _entry_candidates(self, route: Route, ctx: ConditionContext) -> list[CandidateStep]:
        initial = route.initial_step
        if not initial.should_skip(ctx):
            return [CandidateStep(initial)]
        found, complete = self._first_valid_step(route, initial, ctx, set())
        if complete:
            logger.debug("route_complete_on_entry", route_id=route.id)
            return [CandidateStep(initial, is_route_complete=True)]
        return [CandidateStep(found)] if found else []

    def _next_candidates(self, route: Route, current: Step, ctx: ConditionContext) -> list[CandidateStep]:
        candidates: list[CandidateStep] = []
        seen: set[str] = set()
        has_end = False

        for transition in current.transitions:
            if transition.is_terminal:
                has_end = True
                continue
            target = self._target(route, transition.target_id)
            if target is None or not target.is_eligible(ctx):
                continue
            if target.should_skip(ctx):
                logger.debug("step_skipped", route_id=route.id, step_id=target.id)
                found, complete = self._first_valid_step(route, target, ctx, {current.id})
                if complete:
                    has_end = True
                elif found and found.id not in seen:
                    seen.add(found.id)
                    candidates.append(CandidateStep(found))
                continue
            if target.id not in seen:
                seen.add(target.id)
                candidates.append(CandidateStep(target))

        if not candidates:
            if has_end:
                logger.debug("route_complete_end_reached", route_id=route.id, step_id=current.id)
                return [CandidateStep(current, is_route_complete=True)]
            if not current.should_skip(ctx):
                return [CandidateStep(current)]
        return candidates

    def _first_valid_step(
        self, route: Route, step: Step, ctx: ConditionContext, visited: set[str],
    ) -> tuple[Optional[Step], bool]:
        """Depth-first walk past skipped steps; returns (step, reached_end)."""
        if step.id in visited:
            return None, False
        visited.add(step.id)

        for transition in step.transitions:
            if transition.is_terminal:
                return None, True
            target = self._target(route, transition.target_id)
            if target is None or not target.is_eligible(ctx):
                continue
            if not target.should_skip(ctx):
                return target, False
            found, complete = self._first_valid_step(route, target, ctx, visited)
            if found or complete:
                return found, complete
        return None, False

    @staticmethod
    def _target(route: Route, step_id: str) -> Optional[Step]:
        target = route.get_step(step_id)
        if target is None:
            logger.warning("transition_target_unknown", route_id=route.id, step_id=step_id)
        return target

    # ──────────────────────────────────────────────────
    #  Route eligibility
    # ──────────────────────────────────────────────────

    def evaluate_routes(
        self,
        routes: list[Route],
        session: SessionState,
        history: list[HistoryEvent],
        context: dict[str, Any],
    ) -> tuple[list[Route], dict[str, list[str]]]:
        """skip_if (OR) then when (AND); returns eligible routes and their prompt fragments."""
        eligible: list[Route] = []
        fragments: dict[str, list[str]] = {}
        for route in routes:
            ctx = ConditionContext.build(context=context, data=session.data_for(route.id),
                                         session=session, history=history)
            skip = evaluate_skip_if(route.skip_if, ctx)
            if skip.programmatic_result:
                logger.debug("route_skipped", route_id=route.id)
                continue
            when = evaluate_when(route.when, ctx)
            if not when.programmatic_result:
                logger.debug("route_ineligible", route_id=route.id)
                continue
            eligible.append(route)
            fragments[route.id] = when.ai_context_strings + [
                f"not when {s}" for s in skip.ai_context_strings
            ]
        return eligible, fragments

    # ──────────────────────────────────────────────────
    #  Decision
    # ──────────────────────────────────────────────────

    async def decide_route_and_step(
        self,
        routes: list[Route],
        session: SessionState,
        history: list[HistoryEvent],
        llm_generate: LLMGenerate,
        agent_options: AgentOptions = None,
        context: dict[str, Any] = None,
        signal: Optional[asyncio.Event] = None,
    ) -> RoutingDecision:
        raise_if_cancelled(signal, "routing")
        context = context or {}
        history = list(history or [])
        call = dict(history=history, llm_generate=llm_generate, agent=agent_options,
                    context=context, signal=signal, routes=routes)

        if session.pending_transition is not None:
            session, decision = await self._resolve_pending(session, **call)
            if decision is not None:
                return decision

        eligible, fragments = self.evaluate_routes(routes, session, history, context)
        if not eligible:
            logger.info("no_eligible_routes", session_id=session.id, routes=len(routes))
            return RoutingDecision(session=session, completed_routes=self._completed(routes, session))

        if len(eligible) == 1:
            route = eligible[0]
            return await self._decide_within_route(route, session, fragments.get(route.id, []), **call)

        return await self._decide_across_routes(eligible, session, fragments, **call)

    async def _resolve_pending(self, session: SessionState, routes: list[Route], **call):
        pending = session.pending_transition
        target = self._find_route(routes, pending.target_route_id)
        if target is None:
            logger.warning("pending_transition_target_unknown", session_id=session.id,
                           target=pending.target_route_id)
            return clear_pending_transition(session), None

        ctx = ConditionContext.build(context=call["context"], data=session.data_for(target.id),
                                     session=session, history=call["history"])
        guard = evaluate_when(Condition.of(pending.condition or None), ctx)
        if not guard.programmatic_result:
            logger.info("pending_transition_deferred", session_id=session.id, target=target.id)
            return session, None

        logger.info("pending_transition_resolved", session_id=session.id,
                    source=pending.source_route_id, target=target.id)
        session = clear_pending_transition(session)
        session = self._enter(session, target, force=True)
        decision = await self._decide_within_route(target, session, guard.ai_context_strings,
                                                   routes=routes, **call)
        return decision.session, decision

    async def _decide_within_route(
        self,
        route: Route,
        session: SessionState,
        fragments: list[str],
        *,
        routes: list[Route],
        history: list[HistoryEvent],
        llm_generate: LLMGenerate,
        agent: Optional[AgentOptions],
        context: dict[str, Any],
        signal: Optional[asyncio.Event],
    ) -> RoutingDecision:
        """Single-route path: no scoring call, step selection only if it is ambiguous."""
        session = self._enter(session, route)
        current = self._current_step(route, session)
        candidates = self.get_candidate_steps(route, current, session.data, context, session, history)

        chosen: Optional[CandidateStep] = None
        directives: list[str] = []
        calls = 0

        if not candidates:
            logger.warning("no_candidate_steps", route_id=route.id)
        elif len(candidates) == 1:
            chosen = candidates[0]
        else:
            response = await self._call_model(llm_generate, ModelRequest(
                prompt=build_step_selection_prompt(route, current, candidates, session.data, history,
                                                   agent, fragments),
                history=history,
                context=context,
                json_schema=build_step_selection_schema([c.selectable_id for c in candidates]),
                schema_name="step_selection",
                signal=signal,
            ))
            calls += 1
            structured = parse_structured(response) or {}
            chosen = self._pick_candidate(route, candidates, structured.get("selectedStepId"))
            directives = list(structured.get("responseDirectives") or [])
            if structured.get("reasoning"):
                logger.debug("step_selection_reasoning", route_id=route.id, reasoning=structured["reasoning"])

        decision = await self._finalize(route, chosen, session, routes, context, history)
        decision.response_directives = directives
        decision.context_fragments = list(fragments)
        decision.model_calls = calls
        return decision

    async def _decide_across_routes(
        self,
        eligible: list[Route],
        session: SessionState,
        fragments: dict[str, list[str]],
        *,
        routes: list[Route],
        history: list[HistoryEvent],
        llm_generate: LLMGenerate,
        agent: Optional[AgentOptions],
        context: dict[str, Any],
        signal: Optional[asyncio.Event],
    ) -> RoutingDecision:
        """Multi-route path: one structured call scores every eligible route."""
        active = next((r for r in eligible if r.id == session.active_route_id), None)
        active_candidates: list[CandidateStep] = []
        active_finished = False
        if active is not None:
            current = self._current_step(active, session)
            cands = self.get_candidate_steps(active, current, session.data, context, session, history)
            active_finished = len(cands) == 1 and cands[0].is_route_complete
            if not active_finished:
                active_candidates = cands

        response = await self._call_model(llm_generate, ModelRequest(
            prompt=build_routing_prompt(eligible, session, history, agent, fragments, active_candidates),
            history=history,
            context=context,
            json_schema=build_routing_schema([r.id for r in eligible],
                                             [c.selectable_id for c in active_candidates]),
            schema_name="routing_output",
            signal=signal,
        ))
        structured = parse_structured(response) or {}
        scores = self.weighted_scores(eligible, session, structured.get("routes"))
        selected = self._select_route(eligible, scores, active, session)

        chosen: Optional[CandidateStep] = None
        if selected is active and active is not None:
            if active_candidates:
                chosen = self._pick_candidate(active, active_candidates, structured.get("selectedStepId"))
                if structured.get("stepReasoning"):
                    logger.debug("step_selection_reasoning", route_id=active.id,
                                 reasoning=structured["stepReasoning"])
            elif active_finished:
                chosen = CandidateStep(self._current_step(active, session) or active.initial_step,
                                       is_route_complete=True)
            else:
                logger.warning("no_candidate_steps", route_id=active.id)
        else:
            if active is not None and active.is_complete(session.data):
                session = mark_route_completed(session, active.id)
            session = self._enter(session, selected)
            cands = self.get_candidate_steps(selected, self._current_step(selected, session),
                                             session.data, context, session, history)
            chosen = cands[0] if cands else None

        logger.info("route_selected", session_id=session.id, route_id=selected.id,
                    score=scores.get(selected.id), switched=selected is not active)

        decision = await self._finalize(selected, chosen, session, routes, context, history)
        decision.response_directives = list(structured.get("responseDirectives") or [])
        decision.context_fragments = list(fragments.get(selected.id, []))
        decision.route_scores = scores
        decision.model_calls = 1
        return decision

    # ──────────────────────────────────────────────────
    #  Scoring
    # ──────────────────────────────────────────────────

    def weighted_scores(
        self,
        routes: list[Route],
        session: SessionState,
        raw_scores: Any,
    ) -> dict[str, float]:
        """
        raw + progress * completion_boost, capped at 100. Routes whose data is
        100% collected and routes the model did not score are left out.
        """
        if not isinstance(raw_scores, dict):
            if raw_scores is not None:
                logger.warning("routing_scores_invalid", got=type(raw_scores).__name__)
            return {}
        weighted: dict[str, float] = {}
        for route in routes:
            raw = raw_scores.get(route.id)
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                if raw is not None:
                    logger.warning("route_score_invalid", route_id=route.id, score=raw)
                continue
            progress = route.get_completion_progress(session.data_for(route.id))
            if progress >= 1.0:
                logger.debug("route_excluded_complete", route_id=route.id)
                continue
            weighted[route.id] = min(100.0, float(raw) + progress * self.completion_boost)

        unknown = set(raw_scores) - {r.id for r in routes}
        if unknown:
            logger.warning("route_scores_unknown_ids", route_ids=sorted(unknown))
        return weighted

    def _select_route(
        self,
        eligible: list[Route],
        scores: dict[str, float],
        active: Optional[Route],
        session: SessionState,
    ) -> Route:
        order = {r.id: i for i, r in enumerate(eligible)}
        ranked = sorted(scores.items(), key=lambda kv: (-kv[1], order[kv[0]]))
        if ranked:
            return next(r for r in eligible if r.id == ranked[0][0])
        open_routes = [r for r in eligible if not r.is_complete(session.data_for(r.id))]
        if active is not None and active in open_routes:
            fallback = active
        else:
            fallback = open_routes[0] if open_routes else active or eligible[0]
        logger.warning("routing_fallback", route_id=fallback.id,
                       reason="no usable scores in structured output")
        return fallback

    # ──────────────────────────────────────────────────
    #  Session updates
    # ──────────────────────────────────────────────────

    def _enter(self, session: SessionState, route: Route, force: bool = False) -> SessionState:
        if session.active_route_id == route.id and not force:
            return session
        session = enter_route(session, route.id, route.title)
        if route.initial_data:
            session = merge_collected(session, route.initial_data)
        logger.info("route_entered", session_id=session.id, route_id=route.id)
        return session

    @staticmethod
    def _current_step(route: Route, session: SessionState) -> Optional[Step]:
        if session.active_route_id != route.id or session.current_step is None:
            return None
        step = route.get_step(session.current_step.id)
        if step is None:
            logger.warning("current_step_unknown", route_id=route.id, step_id=session.current_step.id)
        return step

    @staticmethod
    def _pick_candidate(route: Route, candidates: list[CandidateStep], selected_id: Any) -> CandidateStep:
        for c in candidates:
            if c.selectable_id == selected_id:
                return c
        logger.warning("step_selection_fallback", route_id=route.id, selected=selected_id,
                       using=candidates[0].selectable_id)
        return candidates[0]

    async def _finalize(
        self,
        route: Route,
        chosen: Optional[CandidateStep],
        session: SessionState,
        routes: list[Route],
        context: dict[str, Any],
        history: list[HistoryEvent],
    ) -> RoutingDecision:
        complete = chosen is not None and chosen.is_route_complete
        step: Optional[Step] = None
        if complete:
            session = await self.complete_route(route, session, context, history)
        elif chosen is not None:
            step = chosen.step
            session = enter_step(session, step.id, step.description)
        return RoutingDecision(
            session=session,
            selected_route=route,
            selected_step=step,
            is_route_complete=complete,
            completed_routes=self._completed(routes, session),
        )

    async def complete_route(
        self,
        route: Route,
        session: SessionState,
        context: dict[str, Any] = None,
        history: list[HistoryEvent] = None,
    ) -> SessionState:
        """Mark the route's visit complete and queue its on_complete target, if any."""
        session = mark_route_completed(session, route.id)
        try:
            config = await route.evaluate_on_complete(session, context or {})
        except Exception as e:
            logger.error("on_complete_failed", route_id=route.id, error=str(e))
            return session
        if config is None:
            return session

        ctx = ConditionContext.build(context=context, data=session.data_for(route.id),
                                     session=session, history=history)
        guard = evaluate_when(Condition.of(config.condition), ctx)
        if not guard.programmatic_result:
            logger.info("completion_transition_blocked", route_id=route.id, target=config.transition_to)
            return session
        return set_pending_transition(session, config.transition_to,
                                      condition=" and ".join(guard.ai_context_strings))

    @staticmethod
    def _completed(routes: list[Route], session: SessionState) -> list[str]:
        return [r.id for r in routes if r.is_complete(session.data_for(r.id))]

    @staticmethod
    def _find_route(routes: list[Route], ref: str) -> Optional[Route]:
        for r in routes:
            if r.id == ref:
                return r
        lowered = (ref or "").lower()
        return next((r for r in routes if r.title.lower() == lowered), None)

    async def _call_model(self, llm_generate: LLMGenerate, request: ModelRequest) -> ModelResponse:
        raise_if_cancelled(request.signal, "model call")
        try:
            response = await llm_generate(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("routing_model_call_failed", schema=request.schema_name, error=str(e))
            return ModelResponse()
        raise_if_cancelled(request.signal, "model call")
        return response if isinstance(response, ModelResponse) else ModelResponse()
