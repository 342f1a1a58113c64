"""
Core data models for the decision core.
These are the wire/data records shared across all modules: everything the
caller persists or passes between turns. DSL objects that hold callables
(Route, Step, Tool, Condition) live next to the code that walks them.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class TransitionReason(str, Enum):
    ROUTE_COMPLETE = "route_complete"
    MANUAL = "manual"


# ──────────────────────────────────────────────────────────────
#  History — one event in the conversation transcript
# ──────────────────────────────────────────────────────────────

class HistoryEvent(BaseModel):
    """A single message in the conversation history."""
    role: MessageRole
    content: str
    name: str = ""                            # display name of the participant
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = {}

    @classmethod
    def user(cls, content: str, **kwargs) -> "HistoryEvent":
        return cls(role=MessageRole.USER, content=content, **kwargs)

    @classmethod
    def assistant(cls, content: str, **kwargs) -> "HistoryEvent":
        return cls(role=MessageRole.ASSISTANT, content=content, **kwargs)


# ──────────────────────────────────────────────────────────────
#  Rule Condition — declarative predicate over collected data
# ──────────────────────────────────────────────────────────────

class RuleCondition(BaseModel):
    field: str
    operator: str           # eq | neq | gt | gte | lt | lte | in | contains | regex | exists | not_exists
    value: Any = None


class ConditionEvaluationResult(BaseModel):
    """
    Outcome of evaluating a hybrid condition.

    programmatic_result only reflects predicates. When
    has_programmatic_conditions is False it is the neutral element of the
    requested logic (True for AND, False for OR) and the decision is left to
    the model through ai_context_strings.
    """
    programmatic_result: bool
    ai_context_strings: list[str] = []
    has_programmatic_conditions: bool = False
    evaluation_details: list[dict[str, Any]] = []


# ──────────────────────────────────────────────────────────────
#  Session State — the per-conversation decision record
# ──────────────────────────────────────────────────────────────

class RouteRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    entered_at: datetime = Field(default_factory=_utcnow)


class StepRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    description: str = ""
    entered_at: datetime = Field(default_factory=_utcnow)


class RouteVisit(BaseModel):
    model_config = ConfigDict(frozen=True)

    route_id: str
    entered_at: datetime = Field(default_factory=_utcnow)
    exited_at: Optional[datetime] = None
    completed: bool = False


class PendingTransition(BaseModel):
    """Cross-route transition queued when a route completes with a follow-up."""
    model_config = ConfigDict(frozen=True)

    target_route_id: str
    condition: str = ""                       # descriptive condition forwarded to the model
    reason: TransitionReason = TransitionReason.ROUTE_COMPLETE
    source_route_id: str = ""


class SessionState(BaseModel):
    """
    Immutable session record. Every decision returns a new instance built
    with the helpers in context/session.py; callers keep the latest one
    between turns.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    current_route: Optional[RouteRef] = None
    current_step: Optional[StepRef] = None
    data: dict[str, Any] = {}                          # collected data of the active route
    data_by_route: dict[str, dict[str, Any]] = {}      # saved data per route (resume on re-entry)
    route_history: list[RouteVisit] = []
    pending_transition: Optional[PendingTransition] = None
    metadata: dict[str, Any] = {}

    @property
    def active_route_id(self) -> Optional[str]:
        return self.current_route.id if self.current_route else None

    def data_for(self, route_id: str) -> dict[str, Any]:
        """Collected data for a route, whether active or suspended."""
        if self.current_route and self.current_route.id == route_id:
            return dict(self.data)
        return dict(self.data_by_route.get(route_id, {}))


# ──────────────────────────────────────────────────────────────
#  Model call contract
# ──────────────────────────────────────────────────────────────

class ModelRequest(BaseModel):
    """Everything the external language-model call receives."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    prompt: str
    history: list[HistoryEvent] = []
    context: dict[str, Any] = {}
    json_schema: Optional[dict[str, Any]] = None
    schema_name: str = ""
    signal: Optional[asyncio.Event] = None
    parameters: dict[str, Any] = {}


class ModelResponse(BaseModel):
    """Free text plus, when a schema was supplied, the parsed structured object."""
    message: str = ""
    structured: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Tool execution record
# ──────────────────────────────────────────────────────────────

class ToolExecutionResult(BaseModel):
    """Normalized outcome of one tool invocation."""
    tool_id: str
    tool_name: str = ""
    success: bool = True
    data: Any = None
    error: str = ""
    context_update: Optional[dict[str, Any]] = None
    data_update: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Agent identity — prompt metadata shared by every model call
# ──────────────────────────────────────────────────────────────

class Term(BaseModel):
    """Glossary entry surfaced to the model."""
    name: str
    description: str
    synonyms: list[str] = []


class AgentOptions(BaseModel):
    name: str = "Assistant"
    goal: str = ""
    description: str = ""
    identity: str = ""
    personality: str = ""
    terms: list[Term] = []
