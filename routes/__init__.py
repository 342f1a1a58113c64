"""
Route DSL — goal-directed dialogue flows as step graphs.

Each route owns an arena of steps joined by transitions. A route is
complete when its tracked fields are collected or when traversal reaches
the END_ROUTE marker.
"""
from routes.models import (
    END_ROUTE, END_ROUTE_ID, DEFAULT_END_STEP_PROMPT,
    Route, Step, Transition, Guideline, RouteTransitionConfig,
)
from routes.registry import RouteRegistry

__all__ = [
    "END_ROUTE", "END_ROUTE_ID", "DEFAULT_END_STEP_PROMPT",
    "Route", "Step", "Transition", "Guideline", "RouteTransitionConfig",
    "RouteRegistry",
]
