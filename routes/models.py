"""
Route / Step graph — the declarative map of goal-directed dialogue flows.

A Route owns an arena of Steps keyed by id. Each Step holds Transitions
that point at child step ids or at END_ROUTE_ID, the terminal marker.
Builder calls return the new Step so construction stays fluent:

    route = Route(title="Book a flight", required_fields=["origin", "destination"])
    ask = route.initial_step.next_step(description="Ask for origin", collect=["origin"])
    ask.next_step(description="Ask for destination", collect=["destination"]) \\
       .next_step(END_ROUTE)

Completion is data-driven: a route with required (or, failing that,
optional) fields is complete once every one of them is collected. A route
with neither never completes on data alone.
"""
from __future__ import annotations

import inspect
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Union

import structlog

from core.errors import RouteDefinitionError
from models.schemas import SessionState
from tools.models import Tool, ToolRef, as_tool_ref
from utils.conditions import (
    Condition, ConditionContext, evaluate_skip_if, evaluate_when, extract_ai_context_strings,
)
from utils.ids import generate_guideline_id, generate_route_id, generate_step_id

logger = structlog.get_logger()

END_ROUTE_ID = "END_ROUTE"
END_ROUTE = END_ROUTE_ID

DEFAULT_END_STEP_PROMPT = (
    "Summarize what was accomplished and confirm completion based on the "
    "conversation history and collected data"
)


# ──────────────────────────────────────────────────────────────
#  Guideline — matched independently of the step graph
# ──────────────────────────────────────────────────────────────

@dataclass
class Guideline:
    action: str
    condition: Any = None                         # anything Condition.of accepts
    id: str = ""
    tools: list[ToolRef] = field(default_factory=list)
    enabled: bool = True
    tags: list[str] = field(default_factory=list)
    scope_id: str = "agent"                       # "agent" or the owning route id

    def __post_init__(self):
        self.condition = Condition.of(self.condition)
        if not self.id:
            self.id = generate_guideline_id(self.scope_id, self.action)
        self.tools = [as_tool_ref(t, self.id) for t in self.tools]

    def describe(self) -> str:
        fragments = extract_ai_context_strings(self.condition)
        if fragments:
            return f"When {' and '.join(fragments)}, then {self.action}"
        return self.action


# ──────────────────────────────────────────────────────────────
#  Completion handler output
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RouteTransitionConfig:
    """Where to go once a route completes."""
    transition_to: str                            # route id or title
    condition: Any = None                         # optional guard, anything Condition.of accepts

    @classmethod
    def of(cls, raw: Any) -> Optional["RouteTransitionConfig"]:
        if not raw:
            return None
        if isinstance(raw, RouteTransitionConfig):
            return raw
        if isinstance(raw, str):
            return cls(transition_to=raw)
        if isinstance(raw, dict) and raw.get("transition_to"):
            return cls(transition_to=raw["transition_to"], condition=raw.get("condition"))
        raise RouteDefinitionError(f"Invalid on_complete result: {raw!r}")


# ──────────────────────────────────────────────────────────────
#  Transition — an edge between steps
# ──────────────────────────────────────────────────────────────

@dataclass
class Transition:
    source_id: str
    target_id: str                                # a step id or END_ROUTE_ID
    condition: Optional[Condition] = None
    tool: Optional[ToolRef] = None
    instructions: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.target_id == END_ROUTE_ID

    def describe(self) -> str:
        parts = [f"step: {self.target_id}"]
        if self.instructions:
            parts.insert(0, f'chat: "{self.instructions}"')
        if self.tool is not None:
            parts.append(f"tool: {self.tool.name if isinstance(self.tool, Tool) else self.tool}")
        text = f"{self.source_id} -> [{', '.join(parts)}]"
        fragments = extract_ai_context_strings(self.condition)
        return f"{text} (when: {' and '.join(fragments)})" if fragments else text


# ──────────────────────────────────────────────────────────────
#  Step
# ──────────────────────────────────────────────────────────────

class Step:
    """One node of a route's graph. Create through Route.create_step / next_step."""

    def __init__(
        self,
        route: "Route",
        id: str,
        description: str = "",
        collect: Iterable[str] = (),
        requires: Iterable[str] = (),
        when: Any = None,
        skip_if: Any = None,
        tools: Iterable[Any] = (),
        prompt: str = "",
        prepared_to_respond: bool = False,
    ):
        if id == END_ROUTE_ID:
            raise RouteDefinitionError(f"'{END_ROUTE_ID}' is reserved and cannot be used as a step id",
                                       route_id=route.id)
        self._route = route
        self.id = id
        self.route_id = route.id
        self.description = description
        self.collect = list(collect)
        self.requires = list(requires)
        self.when = Condition.of(when)
        self.skip_if = Condition.of(skip_if)
        self.tools: list[ToolRef] = [as_tool_ref(t, id) for t in tools]
        self.prompt = prompt or description
        self.prepared_to_respond = prepared_to_respond
        self.transitions: list[Transition] = []
        self.guidelines: list[Guideline] = []

    def __repr__(self) -> str:
        return f"Step(id={self.id!r}, route_id={self.route_id!r})"

    # ── Building ──────────────────────────────────────

    def next_step(
        self,
        target: Union["Step", str, None] = None,
        *,
        condition: Any = None,
        tool: Any = None,
        instructions: str = "",
        **step_spec: Any,
    ) -> Optional["Step"]:
        """
        Add an outbound edge and return the step it points at.

        target may be an existing Step, a step id, END_ROUTE (returns None),
        or omitted to create a new step from step_spec.
        """
        if isinstance(target, Step):
            target_id = target.id
            result: Optional[Step] = target
        elif isinstance(target, str):
            target_id = target
            result = None if target == END_ROUTE_ID else self._route.get_step(target)
        else:
            if instructions and "description" not in step_spec:
                step_spec["description"] = instructions
            result = self._route.create_step(**step_spec)
            target_id = result.id

        edge_tool = as_tool_ref(tool, f"{self.id}_to_{target_id}") if tool is not None else None
        self.transitions.append(Transition(
            source_id=self.id,
            target_id=target_id,
            condition=Condition.of(condition),
            tool=edge_tool,
            instructions=instructions,
        ))
        return result

    def end_route(self, condition: Any = None, tool: Any = None) -> None:
        self.next_step(END_ROUTE_ID, condition=condition, tool=tool)

    def configure(self, **changes: Any) -> "Step":
        """Override properties after creation (mostly for the initial step)."""
        for key, value in changes.items():
            if key in ("when", "skip_if"):
                value = Condition.of(value)
            elif key in ("collect", "requires"):
                value = list(value)
            elif key == "tools":
                value = [as_tool_ref(t, self.id) for t in value]
            elif not hasattr(self, key) or key in ("id", "route_id", "transitions"):
                raise RouteDefinitionError(f"Unknown step property: {key}", route_id=self.route_id)
            setattr(self, key, value)
        return self

    def add_guideline(self, guideline: Guideline) -> "Step":
        self.guidelines.append(guideline)
        return self

    # ── Evaluation ────────────────────────────────────

    def should_skip(self, ctx: ConditionContext) -> bool:
        if self.skip_if is None:
            return False
        return evaluate_skip_if(self.skip_if, ctx).programmatic_result

    def has_requires(self, data: dict[str, Any]) -> bool:
        return all(data.get(key) is not None for key in self.requires)

    def is_eligible(self, ctx: ConditionContext) -> bool:
        """`when` holds programmatically and every required field is present."""
        if not self.has_requires(ctx.data):
            return False
        if self.when is None:
            return True
        return evaluate_when(self.when, ctx).programmatic_result

    def missing_collect_fields(self, data: dict[str, Any]) -> list[str]:
        return [f for f in self.collect if data.get(f) is None]


# ──────────────────────────────────────────────────────────────
#  Route
# ──────────────────────────────────────────────────────────────

OnComplete = Union[str, RouteTransitionConfig, dict, Callable[..., Any], None]


class Route:
    def __init__(
        self,
        title: str,
        id: str = None,
        description: str = "",
        when: Any = None,
        skip_if: Any = None,
        initial_step: dict[str, Any] = None,
        steps: list[dict[str, Any]] = None,
        required_fields: Iterable[str] = (),
        optional_fields: Iterable[str] = (),
        end_step_prompt: str = DEFAULT_END_STEP_PROMPT,
        initial_data: dict[str, Any] = None,
        guidelines: Iterable[Any] = (),
        tools: Iterable[Tool] = (),
        rules: Iterable[str] = (),
        prohibitions: Iterable[str] = (),
        on_complete: OnComplete = None,
    ):
        if not title:
            raise RouteDefinitionError("Route title is required")
        self.id = id or generate_route_id(title)
        if self.id == END_ROUTE_ID:
            raise RouteDefinitionError(f"'{END_ROUTE_ID}' is reserved and cannot be used as a route id",
                                       route_id=self.id)
        self.title = title
        self.description = description
        self.when = Condition.of(when)
        self.skip_if = Condition.of(skip_if)
        self.required_fields = list(required_fields)
        self.optional_fields = list(optional_fields)
        self.end_step_prompt = end_step_prompt
        self.initial_data = dict(initial_data or {})
        self.tools: list[Tool] = list(tools)
        self.rules = list(rules)
        self.prohibitions = list(prohibitions)
        self.on_complete = on_complete
        self.guidelines: list[Guideline] = []
        self._steps: dict[str, Step] = {}

        spec = dict(initial_step or {})
        spec.setdefault("description", "Initial step")
        spec.setdefault("id", generate_step_id(self.id, "initial"))
        self.initial_step = self.create_step(**spec)

        for g in guidelines:
            self.create_guideline(g)

        if steps:
            self._build_sequential_steps(steps)

    def __repr__(self) -> str:
        return f"Route(id={self.id!r}, title={self.title!r})"

    # ── Arena ─────────────────────────────────────────

    def create_step(self, id: str = None, **spec: Any) -> Step:
        step_id = id or self._derive_step_id(spec.get("description") or spec.get("prompt") or "")
        if step_id in self._steps:
            raise RouteDefinitionError(f"Duplicate step id '{step_id}' in route '{self.id}'",
                                       route_id=self.id)
        step = Step(self, step_id, **spec)
        self._steps[step_id] = step
        return step

    def _derive_step_id(self, content: str) -> str:
        step_id = generate_step_id(self.id, content) if content else ""
        if not step_id or step_id in self._steps:
            step_id = generate_step_id(self.id, index=len(self._steps))
        return step_id

    def _build_sequential_steps(self, steps: list[dict[str, Any]]) -> None:
        current = self.initial_step
        for spec in steps:
            spec = dict(spec)
            condition = spec.pop("condition", None)
            tool = spec.pop("tool", None)
            current = current.next_step(condition=condition, tool=tool, **spec)
        current.end_route()

    @property
    def steps(self) -> list[Step]:
        return list(self._steps.values())

    def get_step(self, step_id: str) -> Optional[Step]:
        return self._steps.get(step_id)

    def reachable_steps(self) -> list[Step]:
        """Steps reachable from the initial step, breadth-first."""
        seen: set[str] = set()
        ordered: list[Step] = []
        queue = deque([self.initial_step])
        while queue:
            step = queue.popleft()
            if step.id in seen:
                continue
            seen.add(step.id)
            ordered.append(step)
            for t in step.transitions:
                target = self._steps.get(t.target_id)
                if target is not None and target.id not in seen:
                    queue.append(target)
        return ordered

    def validate(self) -> list[str]:
        """Return a list of structural errors (empty means valid)."""
        errors = []
        for step in self._steps.values():
            for t in step.transitions:
                if not t.is_terminal and t.target_id not in self._steps:
                    errors.append(f"Step '{step.id}' transitions to unknown step '{t.target_id}'")
        return errors

    def create_guideline(self, guideline: Any) -> Guideline:
        if isinstance(guideline, dict):
            guideline = Guideline(**{"scope_id": self.id, **guideline})
        elif guideline.scope_id == "agent":
            guideline.scope_id = self.id
        self.guidelines.append(guideline)
        return guideline

    # ── Completion ────────────────────────────────────

    def get_completion_progress(self, data: dict[str, Any]) -> float:
        """Fraction (0.0 - 1.0) of required fields collected; optional fields if none are required."""
        tracked = self.required_fields or self.optional_fields
        if not tracked:
            return 0.0
        present = sum(1 for f in tracked if data.get(f) is not None)
        return present / len(tracked)

    def is_complete(self, data: dict[str, Any]) -> bool:
        if not self.required_fields and not self.optional_fields:
            return False
        return self.get_completion_progress(data) >= 1.0

    def missing_required_fields(self, data: dict[str, Any]) -> list[str]:
        return [f for f in self.required_fields if data.get(f) is None]

    def missing_optional_fields(self, data: dict[str, Any]) -> list[str]:
        return [f for f in self.optional_fields if data.get(f) is None]

    def collects_only_optional(self, step: Step, data: dict[str, Any]) -> bool:
        """True when the step still has work and all of it is optional."""
        missing = step.missing_collect_fields(data)
        if not missing:
            return False
        return all(f in self.optional_fields and f not in self.required_fields for f in missing)

    async def evaluate_on_complete(
        self,
        session: SessionState,
        context: dict[str, Any] = None,
    ) -> Optional[RouteTransitionConfig]:
        handler = self.on_complete
        if not handler:
            return None
        if callable(handler) and not isinstance(handler, (str, dict, RouteTransitionConfig)):
            result = handler(session, context or {})
            if inspect.isawaitable(result):
                result = await result
            return RouteTransitionConfig.of(result)
        return RouteTransitionConfig.of(handler)

    # ── Description ───────────────────────────────────

    def condition_fragments(self) -> list[str]:
        return extract_ai_context_strings(self.when)

    def describe(self) -> str:
        lines = [
            f"Route: {self.title}",
            f"ID: {self.id}",
            f"Description: {self.description or 'N/A'}",
            f"Conditions: {', '.join(self.condition_fragments()) or 'None'}",
            "",
            "Steps:",
        ]
        for step in self.reachable_steps():
            lines.append(f"  - {step.id}{f': {step.description}' if step.description else ''}")
            for t in step.transitions:
                lines.append(f"    -> {t.describe()}")
        return "\n".join(lines)
