"""
Session helpers — every change to a SessionState goes through here.

SessionState is frozen; each helper returns a new instance via model_copy and
stamps metadata.last_updated_at. Per-route data is mirrored into
data_by_route so a route can be resumed where it was left.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from models.schemas import (
    PendingTransition, RouteRef, RouteVisit, SessionState, StepRef, TransitionReason,
)

logger = structlog.get_logger()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _touch(metadata: dict[str, Any]) -> dict[str, Any]:
    return {**metadata, "last_updated_at": _now_iso()}


def create_session(session_id: str = None, metadata: dict[str, Any] = None) -> SessionState:
    now = _now_iso()
    fields: dict[str, Any] = {
        "metadata": {**(metadata or {}), "created_at": now, "last_updated_at": now},
    }
    if session_id:
        fields["id"] = session_id
    return SessionState(**fields)


def enter_route(session: SessionState, route_id: str, route_title: str = "") -> SessionState:
    """
    Switch the active route. The outgoing route's data is saved, its open
    visit is closed, and the incoming route resumes any data saved earlier.
    """
    data_by_route = dict(session.data_by_route)
    if session.current_route and session.data:
        data_by_route[session.current_route.id] = dict(session.data)

    history = list(session.route_history)
    if session.current_route:
        for i in range(len(history) - 1, -1, -1):
            visit = history[i]
            if visit.route_id == session.current_route.id and visit.exited_at is None:
                history[i] = visit.model_copy(update={"exited_at": datetime.now(timezone.utc)})
                break

    history.append(RouteVisit(route_id=route_id))
    logger.debug("session_route_entered", session_id=session.id, route_id=route_id,
                 previous=session.active_route_id)

    return session.model_copy(update={
        "current_route": RouteRef(id=route_id, title=route_title or route_id),
        "current_step": None,
        "data": dict(data_by_route.get(route_id, {})),
        "data_by_route": data_by_route,
        "route_history": history,
        "metadata": _touch(session.metadata),
    })


def enter_step(session: SessionState, step_id: str, description: str = "") -> SessionState:
    return session.model_copy(update={
        "current_step": StepRef(id=step_id, description=description),
        "metadata": _touch(session.metadata),
    })


def merge_collected(session: SessionState, data: dict[str, Any]) -> SessionState:
    """Shallow-merge new values into the active route's data."""
    if not data:
        return session
    merged = {**session.data, **data}
    data_by_route = dict(session.data_by_route)
    if session.current_route:
        data_by_route[session.current_route.id] = merged
    return session.model_copy(update={
        "data": merged,
        "data_by_route": data_by_route,
        "metadata": _touch(session.metadata),
    })


def mark_route_completed(session: SessionState, route_id: str) -> SessionState:
    """Flag the latest visit of a route as completed."""
    history = list(session.route_history)
    for i in range(len(history) - 1, -1, -1):
        if history[i].route_id == route_id:
            if history[i].completed:
                return session
            history[i] = history[i].model_copy(update={"completed": True})
            break
    else:
        return session
    return session.model_copy(update={
        "route_history": history,
        "metadata": _touch(session.metadata),
    })


def set_pending_transition(
    session: SessionState,
    target_route_id: str,
    condition: str = "",
    reason: TransitionReason = TransitionReason.ROUTE_COMPLETE,
) -> SessionState:
    pending = PendingTransition(
        target_route_id=target_route_id,
        condition=condition,
        reason=reason,
        source_route_id=session.active_route_id or "",
    )
    logger.info("pending_transition_set", session_id=session.id,
                source=pending.source_route_id, target=target_route_id)
    return session.model_copy(update={
        "pending_transition": pending,
        "metadata": _touch(session.metadata),
    })


def clear_pending_transition(session: SessionState) -> SessionState:
    if session.pending_transition is None:
        return session
    return session.model_copy(update={
        "pending_transition": None,
        "metadata": _touch(session.metadata),
    })


# ──────────────────────────────────────────────────────
#  Persistence shape
# ──────────────────────────────────────────────────────

def session_to_record(session: SessionState) -> dict[str, Any]:
    """Flatten a session into the JSON-friendly shape stores persist."""
    return {
        "id": session.id,
        "current_route": session.current_route.id if session.current_route else None,
        "current_step": session.current_step.id if session.current_step else None,
        "collected_data": {
            "data": session.data,
            "data_by_route": session.data_by_route,
            "route_history": [v.model_dump(mode="json") for v in session.route_history],
            "current_route_title": session.current_route.title if session.current_route else None,
            "current_step_description": session.current_step.description if session.current_step else None,
            "pending_transition": (
                session.pending_transition.model_dump(mode="json")
                if session.pending_transition else None
            ),
            "metadata": session.metadata,
        },
    }


def session_from_record(record: dict[str, Any], session_id: Optional[str] = None) -> SessionState:
    collected = record.get("collected_data") or {}
    route_id = record.get("current_route")
    step_id = record.get("current_step")
    pending = collected.get("pending_transition")

    return SessionState(
        id=session_id or record.get("id") or create_session().id,
        current_route=RouteRef(id=route_id, title=collected.get("current_route_title") or route_id)
        if route_id else None,
        current_step=StepRef(id=step_id, description=collected.get("current_step_description") or "")
        if step_id else None,
        data=collected.get("data") or {},
        data_by_route=collected.get("data_by_route") or {},
        route_history=[RouteVisit(**v) for v in collected.get("route_history") or []],
        pending_transition=PendingTransition(**pending) if pending else None,
        metadata=collected.get("metadata") or {},
    )
