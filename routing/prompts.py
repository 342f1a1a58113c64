"""
Prompt building for routing, step selection and response composition.

PromptComposer assembles typed sections into one prompt string. The
schema builders describe the structured output each call must return.
Wording is kept stable so the model sees the same framing every turn.
"""
from __future__ import annotations

import json
from typing import Any, Iterable, Optional

from models.schemas import AgentOptions, HistoryEvent, SessionState, Term
from routes.models import END_ROUTE_ID, Guideline, Route, Step
from routing.models import CandidateStep
from utils.conditions import extract_ai_context_strings
from utils.history import format_history, last_user_message

SCORING_RULES = "\n".join([
    "Scoring rules:",
    "- 90-100: explicit keywords + clear intent",
    "- 70-89: strong contextual evidence + relevant keywords",
    "- 50-69: moderate relevance",
    "- 30-49: weak connection or ambiguous",
    "- 0-29: minimal/none",
    "Return ONLY JSON matching the provided schema. Include scores for ALL routes.",
])


class PromptComposer:
    def __init__(self):
        self._parts: list[str] = []

    def add_agent_meta(self, agent: Optional[AgentOptions]) -> "PromptComposer":
        if agent is None:
            return self
        lines = [f"Agent: {agent.name}"]
        if agent.goal:
            lines.append(f"Goal: {agent.goal}")
        if agent.description:
            lines.append(f"Description: {agent.description}")
        if agent.identity:
            lines.append(f"Identity: {agent.identity}")
        if agent.personality.strip():
            lines.append(f"Personality: {agent.personality.strip()}")
        self._parts.append("\n".join(lines))
        return self.add_glossary(agent.terms)

    def add_instruction(self, text: str) -> "PromptComposer":
        if text:
            self._parts.append(text)
        return self

    def add_interaction_history(self, history: list[HistoryEvent], note: str = "") -> "PromptComposer":
        header = f"{note}\n" if note else ""
        self._parts.append(f"{header}Recent conversation events:\n{format_history(history)}")
        return self

    def add_last_message(self, message: str) -> "PromptComposer":
        self._parts.append(f"Last user message:\n{message}")
        return self

    def add_glossary(self, terms: list[Term]) -> "PromptComposer":
        if not terms:
            return self
        lines = []
        for i, t in enumerate(terms, 1):
            synonyms = f" (synonyms: {', '.join(t.synonyms)})" if t.synonyms else ""
            lines.append(f"{i}) {t.name}{synonyms}: {t.description}")
        self._parts.append("Glossary:\n" + "\n".join(lines))
        return self

    def add_guidelines(self, guidelines: Iterable[Guideline]) -> "PromptComposer":
        enabled = [g for g in guidelines if g.enabled]
        if enabled:
            text = "\n".join(f"Guideline #{i}) {g.describe()}" for i, g in enumerate(enabled, 1))
            self._parts.append(f"Guidelines:\n{text}")
        return self

    def add_routes(self, routes: list[Route], fragments: dict[str, list[str]] = None) -> "PromptComposer":
        if not routes:
            return self
        fragments = fragments or {}
        blocks = []
        for i, r in enumerate(routes, 1):
            lines = [f"{i}) {r.title} [id: {r.id}]"]
            if r.description:
                lines.append(f"  {r.description}")
            triggers = fragments.get(r.id) or r.condition_fragments()
            if triggers:
                lines.append(f"  Triggered when: {' OR '.join(triggers)}")
            if r.rules:
                lines.append("  RULES: " + "; ".join(f"{n}. {x}" for n, x in enumerate(r.rules, 1)))
            if r.prohibitions:
                lines.append("  PROHIBITIONS: " + "; ".join(f"{n}. {x}" for n, x in enumerate(r.prohibitions, 1)))
            blocks.append("\n".join(lines))
        self._parts.append("Available routes:\n" + "\n\n".join(blocks))
        return self

    def add_directives(self, directives: Optional[list[str]]) -> "PromptComposer":
        if directives:
            self._parts.append("Address concisely:\n- " + "\n- ".join(directives))
        return self

    def add_context_fragments(self, fragments: Optional[list[str]]) -> "PromptComposer":
        if fragments:
            self._parts.append("Relevant context:\n- " + "\n- ".join(fragments))
        return self

    def build(self) -> str:
        return "\n\n".join(p for p in self._parts if p).strip()


# ──────────────────────────────────────────────────────
#  Candidate steps
# ──────────────────────────────────────────────────────

def describe_candidates(candidates: list[CandidateStep]) -> str:
    blocks = []
    for i, c in enumerate(candidates, 1):
        if c.is_route_complete:
            blocks.append(
                f"{i}. Step ID: {END_ROUTE_ID}\n"
                "   Description: Finish the route. All required information has been collected; "
                "choose this unless the user wants to provide the remaining optional details."
            )
            continue
        blocks.append(_describe_step(i, c.step))
    return "\n\n".join(blocks)


def _describe_step(index: int, step: Step) -> str:
    parts = [f"{index}. Step ID: {step.id}", f"   Description: {step.description or 'N/A'}"]
    when = extract_ai_context_strings(step.when)
    if when:
        parts.append(f"   When this step should be completed: {' and '.join(when)}")
    if step.requires:
        parts.append(f"   Required Data: {', '.join(step.requires)}")
    if step.collect:
        parts.append(f"   Collects: {', '.join(step.collect)}")
    return "\n".join(parts)


def _collected(data: dict[str, Any]) -> str:
    if not data:
        return "Collected Data: None yet"
    return f"Collected Data So Far:\n{json.dumps(data, indent=2, default=str)}"


# ──────────────────────────────────────────────────────
#  Prompts
# ──────────────────────────────────────────────────────

def build_step_selection_prompt(
    route: Route,
    current_step: Optional[Step],
    candidates: list[CandidateStep],
    data: dict[str, Any],
    history: list[HistoryEvent],
    agent: Optional[AgentOptions] = None,
    context_fragments: list[str] = None,
) -> str:
    pc = PromptComposer().add_agent_meta(agent)
    pc.add_instruction(f"Active Route: {route.title}\nDescription: {route.description or 'N/A'}")
    if current_step is not None:
        pc.add_instruction(f"Current Step: {current_step.id}\nDescription: {current_step.description or 'N/A'}")
    else:
        pc.add_instruction("Current Step: None (entering route)")
    pc.add_instruction(_collected(data))
    pc.add_context_fragments(context_fragments)
    pc.add_interaction_history(history)
    pc.add_last_message(last_user_message(history))
    pc.add_instruction(f"Available Steps to Transition To:\n{describe_candidates(candidates)}")
    pc.add_instruction("\n".join([
        "Task: Decide which step to transition to based on:",
        "1. The user's current message and intent",
        "2. The conversation history and context",
        "3. The collected data we already have",
        "4. The conditions and requirements of each step",
        "5. The logical flow of the conversation",
        "",
        "Rules:",
        "- If a step has a condition, evaluate whether it's met based on context",
        "- If a step requires data we don't have, consider if we should collect it now",
        "- Choose the step that makes the most sense for moving the conversation forward",
        "- Steps whose skip conditions are met have already been filtered out",
        "",
        "Return ONLY JSON matching the provided schema.",
    ]))
    return pc.build()


def build_routing_prompt(
    routes: list[Route],
    session: SessionState,
    history: list[HistoryEvent],
    agent: Optional[AgentOptions] = None,
    fragments: dict[str, list[str]] = None,
    active_candidates: list[CandidateStep] = None,
) -> str:
    pc = PromptComposer().add_agent_meta(agent)
    pc.add_instruction("Task: Intent analysis and route scoring (0-100). Score ALL listed routes.")

    if session.current_route is not None:
        info = [
            "Current conversation context:",
            f"- Active route: {session.current_route.title} ({session.current_route.id})",
        ]
        if session.current_step is not None:
            info.append(f"- Current step: {session.current_step.id}")
            if session.current_step.description:
                info.append(f'  "{session.current_step.description}"')
        if session.data:
            info.append(f"- Collected data: {json.dumps(session.data, default=str)}")
        info.append("Note: User is mid-conversation. They may want to continue the current route "
                    "or switch to a new one based on their intent.")
        pc.add_instruction("\n".join(info))

        if active_candidates:
            pc.add_instruction("\n".join([
                "Available steps in active route (choose one to transition to):",
                describe_candidates(active_candidates),
                "",
                "IMPORTANT: You MUST select a step to transition to. Evaluate which step makes the most sense "
                "based on the conversation flow, what data is still needed, and whether step conditions are met.",
            ]))

    pc.add_interaction_history(history)
    pc.add_last_message(last_user_message(history))
    pc.add_routes(routes, fragments)
    pc.add_instruction(SCORING_RULES)
    return pc.build()


def build_response_prompt(
    route: Optional[Route],
    step: Optional[Step],
    session: SessionState,
    history: list[HistoryEvent],
    agent: Optional[AgentOptions] = None,
    guidelines: Iterable[Guideline] = (),
    directives: list[str] = None,
    context_fragments: list[str] = None,
    route_complete: bool = False,
) -> str:
    """Prompt for the reply itself, once routing and preparation are done."""
    pc = PromptComposer().add_agent_meta(agent)
    pc.add_guidelines(guidelines)
    if route is not None:
        pc.add_routes([route])
        if route_complete:
            pc.add_instruction(f"Route complete. {route.end_step_prompt}")
        elif step is not None:
            pc.add_instruction(f"Current step: {step.prompt or step.description or step.id}")
            missing = step.missing_collect_fields(session.data)
            if missing:
                pc.add_instruction(f"Gather from the user: {', '.join(missing)}")
    pc.add_instruction(_collected(session.data))
    pc.add_context_fragments(context_fragments)
    pc.add_directives(directives)
    pc.add_interaction_history(history)
    pc.add_last_message(last_user_message(history))
    pc.add_instruction("Write the next assistant message.")
    return pc.build()


# ──────────────────────────────────────────────────────
#  Structured output schemas
# ──────────────────────────────────────────────────────

_DIRECTIVES = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Optional bullet points the response should address (concise)",
}


def build_step_selection_schema(step_ids: list[str]) -> dict[str, Any]:
    return {
        "description": "Step transition decision based on conversation context and collected data",
        "type": "object",
        "properties": {
            "reasoning": {"type": "string", "description": "Brief explanation of why this step was selected"},
            "selectedStepId": {
                "type": "string",
                "description": "The ID of the selected step to transition to",
                "enum": step_ids,
            },
            "responseDirectives": _DIRECTIVES,
        },
        "required": ["reasoning", "selectedStepId"],
        "additionalProperties": False,
    }


def build_routing_schema(route_ids: list[str], step_ids: list[str] = None) -> dict[str, Any]:
    schema: dict[str, Any] = {
        "description": "Full intent analysis: score ALL available routes (0-100) using evidence and context",
        "type": "object",
        "properties": {
            "context": {"type": "string", "description": "Brief summary of the user's intent/context"},
            "routes": {
                "type": "object",
                "properties": {
                    rid: {
                        "type": "number",
                        "minimum": 0,
                        "maximum": 100,
                        "description": f"Score for route {rid} based on direct evidence, context and semantic fit (0-100)",
                    }
                    for rid in route_ids
                },
                "required": list(route_ids),
                "description": "Mapping of routeId to score (0-100)",
            },
            "responseDirectives": _DIRECTIVES,
        },
        "required": ["context", "routes"],
        "additionalProperties": False,
    }
    if step_ids:
        schema["properties"]["selectedStepId"] = {
            "type": "string",
            "description": "The step ID to transition to within the active route (required if continuing in current route)",
            "enum": step_ids,
        }
        schema["properties"]["stepReasoning"] = {
            "type": "string",
            "description": "Brief explanation of why this step was selected",
        }
        schema["required"] = schema["required"] + ["selectedStepId", "stepReasoning"]
    return schema
