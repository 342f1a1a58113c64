"""
Agent — one conversational turn end to end.

Flow per inbound message:
  1. RoutingEngine picks the route and step (or resolves a pending transition)
  2. PreparationEngine runs guideline and transition tools
  3. The response prompt is built and the model writes the reply, returning
     any fields the current step collects alongside the message
  4. Collected fields are merged; if that completes the route, its visit is
     closed and on_complete is queued as a pending transition
  5. The new session is saved when a store is configured
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

import structlog

from config.settings import get_settings
from context.session import create_session, merge_collected
from context.store import SessionStore
from core.llm import parse_json_object
from models.schemas import AgentOptions, HistoryEvent, ModelRequest, SessionState, ToolExecutionResult
from preparation.engine import PreparationEngine, PreparationResult
from routes.models import Guideline, Route, Step
from routes.registry import RouteRegistry
from routing.engine import LLMGenerate, RoutingEngine
from routing.models import RoutingDecision
from routing.prompts import build_response_prompt
from tools.manager import ToolManager
from tools.models import Tool
from utils.cancellation import raise_if_cancelled

logger = structlog.get_logger()

FALLBACK_MESSAGE = "Sorry, I couldn't process that just now. Could you say it again?"


@dataclass
class AgentResponse:
    message: str
    session: SessionState
    decision: RoutingDecision
    preparation: Optional[PreparationResult] = None
    collected: dict[str, Any] = field(default_factory=dict)

    @property
    def is_route_complete(self) -> bool:
        return self.decision.is_route_complete

    @property
    def tool_executions(self) -> list[ToolExecutionResult]:
        return self.preparation.tool_executions if self.preparation else []


class Agent:
    def __init__(
        self,
        llm_generate: LLMGenerate,
        options: AgentOptions = None,
        routes: Union[RouteRegistry, Iterable[Route]] = (),
        tools: Iterable[Tool] = (),
        guidelines: Iterable[Any] = (),
        context: dict[str, Any] = None,
        store: SessionStore = None,
        tool_manager: ToolManager = None,
        routing: RoutingEngine = None,
        preparation: PreparationEngine = None,
    ):
        self.llm_generate = llm_generate
        self.options = options or AgentOptions()
        if isinstance(routes, RouteRegistry):
            self.registry = routes
        else:
            self.registry = RouteRegistry()
            self.registry.register_many(list(routes))
            routes_file = get_settings().routes_file
            if not self.registry.list_all() and routes_file:
                self.registry.load_yaml(routes_file)
                logger.info("routes_file_loaded", path=routes_file)
        self.tool_manager = tool_manager or ToolManager()
        for tool in tools:
            self.tool_manager.add_agent_tool(tool)
        self.guidelines: list[Guideline] = []
        for g in guidelines:
            self.create_guideline(g)
        self.context = dict(context or {})
        self.store = store
        self.routing = routing or RoutingEngine()
        self.preparation = preparation or PreparationEngine(self.tool_manager)

    # ── Authoring ─────────────────────────────────────

    @property
    def routes(self) -> list[Route]:
        return self.registry.list_all()

    def create_route(self, **spec: Any) -> Route:
        return self.registry.register(Route(**spec))

    def create_guideline(self, guideline: Any) -> Guideline:
        if isinstance(guideline, dict):
            guideline = Guideline(**guideline)
        self.guidelines.append(guideline)
        return guideline

    # ── Sessions ──────────────────────────────────────

    async def get_session(self, session_id: str = None) -> SessionState:
        """Load from the store when possible, otherwise start a new session."""
        if session_id and self.store is not None:
            session = await self.store.load(session_id)
            if session is not None:
                return session
        return create_session(session_id)

    # ── Turn ──────────────────────────────────────────

    async def respond(
        self,
        message: str = "",
        history: list[HistoryEvent] = None,
        session: SessionState = None,
        session_id: str = None,
        context: dict[str, Any] = None,
        signal: Optional[asyncio.Event] = None,
    ) -> AgentResponse:
        history = list(history or [])
        if message:
            history.append(HistoryEvent.user(message))
        if session is None:
            session = await self.get_session(session_id)
        turn_context = {**self.context, **(context or {})}

        decision = await self.routing.decide_route_and_step(
            self.routes, session, history, self.llm_generate,
            agent_options=self.options, context=turn_context, signal=signal,
        )
        session = decision.session
        route, step = decision.selected_route, decision.selected_step

        prep = await self.preparation.prepare(
            session, history, route=route, step=step, context=turn_context,
            guidelines=self.guidelines, signal=signal,
        )
        changed = {k: v for k, v in prep.final_data.items() if session.data.get(k) != v}
        if changed:
            session = merge_collected(session, changed)

        fields = self._fields_to_collect(route, step, session, decision.is_route_complete)
        prompt = build_response_prompt(
            route, step, session, history, self.options,
            guidelines=prep.matched_guidelines,
            directives=decision.response_directives,
            context_fragments=decision.context_fragments + prep.context_fragments,
            route_complete=decision.is_route_complete,
        )
        text, collected = await self._generate_reply(prompt, history, prep.final_context, fields, signal)

        if collected:
            session = merge_collected(session, collected)
            logger.info("data_collected", session_id=session.id, fields=sorted(collected))
            if route is not None and not decision.is_route_complete:
                after = self.routing.get_candidate_steps(route, step, session.data, turn_context, session, history)
                if len(after) == 1 and after[0].is_route_complete:
                    session = await self.routing.complete_route(route, session, turn_context, history)
                    logger.info("route_completed", session_id=session.id, route_id=route.id)

        if self.store is not None:
            await self.store.save(session)

        return AgentResponse(message=text, session=session, decision=decision,
                             preparation=prep, collected=collected)

    @staticmethod
    def _fields_to_collect(
        route: Optional[Route], step: Optional[Step], session: SessionState, route_complete: bool,
    ) -> list[str]:
        if route is None or step is None or route_complete:
            return []
        return step.missing_collect_fields(session.data)

    async def _generate_reply(
        self,
        prompt: str,
        history: list[HistoryEvent],
        context: dict[str, Any],
        fields: list[str],
        signal: Optional[asyncio.Event],
    ) -> tuple[str, dict[str, Any]]:
        schema = None
        if fields:
            schema = {
                "type": "object",
                "properties": {
                    "message": {"type": "string", "description": "The reply to send to the user"},
                    "collected": {
                        "type": "object",
                        "properties": {f: {"description": f"Value for {f} if the user provided it"} for f in fields},
                        "description": "Only fields the user actually provided",
                    },
                },
                "required": ["message"],
            }
        raise_if_cancelled(signal, "response generation")
        try:
            response = await self.llm_generate(ModelRequest(
                prompt=prompt, history=history, context=context,
                json_schema=schema, schema_name="response" if schema else "", signal=signal,
            ))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("response_generation_failed", error=str(e))
            return FALLBACK_MESSAGE, {}
        raise_if_cancelled(signal, "response generation")

        if schema is None:
            return response.message or FALLBACK_MESSAGE, {}

        structured = response.structured if isinstance(response.structured, dict) \
            else parse_json_object(response.message)
        if not structured:
            return response.message or FALLBACK_MESSAGE, {}
        raw = structured.get("collected") or {}
        collected = {k: v for k, v in raw.items() if k in fields and v is not None} \
            if isinstance(raw, dict) else {}
        return str(structured.get("message") or response.message or FALLBACK_MESSAGE), collected
