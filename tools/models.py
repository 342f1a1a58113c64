"""
Tool Models — what a tool is, what it sees, and what it returns.

A Tool pairs a handler with a stable id. Handlers receive a ToolContext and
the call arguments, may be sync or async, and may return:
  - a ToolResult
  - a dict carrying any of data / success / error / context_update / data_update
  - anything else (wrapped as ToolResult(data=...))

Tools never mutate session or agent context directly: updates travel back
through the caller-supplied update_context / update_data functions.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel

from core.errors import ToolCreationError
from models.schemas import HistoryEvent
from utils.ids import generate_tool_id

_VALID_ID = re.compile(r"^[a-zA-Z0-9_-]+$")

RESULT_KEYS = ("data", "success", "error", "context_update", "data_update")

UpdateFn = Callable[[dict[str, Any]], Awaitable[None]]


class ToolScope(str, Enum):
    """Where a lookup searches; ALL walks step → route → agent → registry."""
    STEP = "step"
    ROUTE = "route"
    AGENT = "agent"
    REGISTERED = "registered"
    ALL = "all"


class ToolCategory(str, Enum):
    DATA_FETCH = "data_fetch"          # Read data from an external service
    ENRICHMENT = "enrichment"          # Derive new collected fields
    VALIDATION = "validation"          # Check collected fields
    COMPUTATION = "computation"        # Pure calculation over inputs
    INTERNAL = "internal"              # Anything else


class ToolResult(BaseModel):
    data: Any = None
    success: bool = True
    error: str = ""
    context_update: Optional[dict[str, Any]] = None
    data_update: Optional[dict[str, Any]] = None
    meta: dict[str, Any] = {}


def normalize_result(raw: Any) -> ToolResult:
    """Coerce whatever a handler returned into a ToolResult."""
    if isinstance(raw, ToolResult):
        return raw
    if isinstance(raw, dict) and any(k in raw for k in RESULT_KEYS):
        return ToolResult(
            data=raw.get("data"),
            success=raw.get("success", True) is not False,
            error=str(raw.get("error") or ""),
            context_update=raw.get("context_update"),
            data_update=raw.get("data_update"),
            meta=raw.get("meta") or {},
        )
    return ToolResult(data=raw)


async def _noop_update(_: dict[str, Any]) -> None:
    return None


@dataclass
class ToolContext:
    """Everything a handler can read, plus the two ways it can write."""
    context: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)
    history: list[HistoryEvent] = field(default_factory=list)
    step_id: str = ""
    route_id: str = ""
    signal: Optional[asyncio.Event] = None
    update_context: UpdateFn = _noop_update
    update_data: UpdateFn = _noop_update
    metadata: dict[str, Any] = field(default_factory=dict)

    def get_field(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def has_field(self, key: str) -> bool:
        return key in self.data

    async def set_field(self, key: str, value: Any) -> None:
        self.data[key] = value
        await self.update_data({key: value})


Handler = Callable[..., Any]


@dataclass
class Tool:
    name: str
    handler: Handler
    id: str = ""
    description: str = ""
    parameters: Union[dict[str, Any], str, None] = None
    category: ToolCategory = ToolCategory.INTERNAL
    timeout_seconds: Optional[float] = None       # None = manager default
    retry_count: Optional[int] = None             # None = manager default
    fallback_tools: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.id and self.name:
            self.id = generate_tool_id(self.name)
        errors = self._validate()
        if errors:
            raise ToolCreationError(
                f"Tool definition validation failed: {'; '.join(errors)}",
                tool_id=self.id or "unknown",
            )

    def _validate(self) -> list[str]:
        errors = []
        if not isinstance(self.name, str) or not self.name.strip():
            errors.append("Tool name is required and must be a non-empty string")
        if not self.id or not _VALID_ID.match(self.id):
            errors.append("Tool ID must contain only alphanumeric characters, underscores, and hyphens")
        if not callable(self.handler):
            errors.append("Tool handler is required and must be callable")
        if isinstance(self.parameters, dict):
            if "type" in self.parameters and not isinstance(self.parameters["type"], str):
                errors.append("Tool parameters type must be a string if specified")
            if "properties" in self.parameters and not isinstance(self.parameters["properties"], dict):
                errors.append("Tool parameters properties must be an object if specified")
        elif self.parameters is not None and not isinstance(self.parameters, str):
            errors.append("Tool parameters must be a JSON schema dict or a string")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            errors.append("Tool timeout_seconds must be positive")
        if self.retry_count is not None and self.retry_count < 0:
            errors.append("Tool retry_count cannot be negative")
        return errors

    def matches(self, ref: str) -> bool:
        return ref == self.id or ref == self.name

    @classmethod
    def inline(cls, handler: Handler, owner_id: str) -> "Tool":
        """Wrap a bare function bound to a step or transition."""
        name = f"inline_{owner_id}"
        return cls(name=name, handler=handler, id=generate_tool_id(name),
                   description=f"Inline tool for {owner_id}")


ToolRef = Union[Tool, str]


def as_tool_ref(raw: Any, owner_id: str) -> ToolRef:
    """Accept a Tool, a tool id/name, or a bare function."""
    if isinstance(raw, (Tool, str)):
        return raw
    if callable(raw):
        return Tool.inline(raw, owner_id)
    raise ToolCreationError(f"Unsupported tool reference: {type(raw).__name__}", tool_id=owner_id)


def tool_ref_id(ref: ToolRef) -> str:
    return ref.id if isinstance(ref, Tool) else ref
