"""
Typed errors for the decision core.

Only two families are ever raised to callers:
  - creation errors (authoring bugs caught at construction time)
  - execution errors (a tool exhausted its retries and fallbacks)

Resolution failures (unknown route, step or tool ids) are never raised;
the engines log them and fall back to a safe default instead.
"""
from __future__ import annotations

from typing import Any, Optional


class DecisionError(Exception):
    """Base class for every error raised by the decision core."""


class RouteDefinitionError(DecisionError):
    """A route or step graph is malformed (reserved id, dangling edge, duplicate)."""

    def __init__(self, message: str, route_id: str = ""):
        super().__init__(message)
        self.route_id = route_id


class ToolCreationError(DecisionError):
    """A tool definition or tool factory config is invalid."""

    def __init__(self, message: str, tool_id: str = "unknown", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.tool_id = tool_id
        self.cause = cause


class ToolExecutionError(DecisionError):
    """A tool failed after every retry and fallback was exhausted."""

    def __init__(
        self,
        message: str,
        tool_id: str,
        attempts: int = 1,
        execution_context: dict[str, Any] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.tool_id = tool_id
        self.attempts = attempts
        self.execution_context = execution_context or {}
        self.cause = cause


class DecisionCancelled(DecisionError):
    """The caller-supplied cancellation signal was set mid-decision."""
