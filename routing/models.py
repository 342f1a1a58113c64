"""Records produced by the routing engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from models.schemas import SessionState
from routes.models import END_ROUTE_ID, Route, Step


@dataclass(frozen=True)
class CandidateStep:
    """
    A step the conversation may move to next.

    is_route_complete=True with more than one candidate is the explicit
    completion option; its selectable id is END_ROUTE_ID.
    """
    step: Step
    is_route_complete: bool = False

    @property
    def selectable_id(self) -> str:
        return END_ROUTE_ID if self.is_route_complete else self.step.id


@dataclass
class RoutingDecision:
    session: SessionState
    selected_route: Optional[Route] = None
    selected_step: Optional[Step] = None
    is_route_complete: bool = False
    completed_routes: list[str] = field(default_factory=list)
    response_directives: list[str] = field(default_factory=list)
    context_fragments: list[str] = field(default_factory=list)
    route_scores: dict[str, float] = field(default_factory=dict)
    model_calls: int = 0
