"""
Routing — route eligibility, intent scoring and step selection.
"""
from routing.models import CandidateStep, RoutingDecision
from routing.engine import RoutingEngine, LLMGenerate, parse_structured
from routing.prompts import (
    PromptComposer, build_routing_prompt, build_routing_schema,
    build_step_selection_prompt, build_step_selection_schema, build_response_prompt,
)

__all__ = [
    "CandidateStep", "RoutingDecision",
    "RoutingEngine", "LLMGenerate", "parse_structured",
    "PromptComposer", "build_routing_prompt", "build_routing_schema",
    "build_step_selection_prompt", "build_step_selection_schema", "build_response_prompt",
]
