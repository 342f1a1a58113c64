"""Helpers for reading the conversation transcript."""
from __future__ import annotations

import json
from typing import Iterable

from models.schemas import HistoryEvent, MessageRole


def last_user_message(history: Iterable[HistoryEvent]) -> str:
    """Content of the most recent user message, or '' if there is none."""
    for event in reversed(list(history)):
        if event.role == MessageRole.USER and event.content:
            return event.content
    return ""


def recent_events(history: Iterable[HistoryEvent], limit: int = 10) -> list[HistoryEvent]:
    events = list(history)
    return events[-limit:] if limit > 0 else events


def format_history(history: Iterable[HistoryEvent], limit: int = 10) -> str:
    """One JSON line per event, oldest first."""
    return "\n".join(
        json.dumps({"role": e.role.value, "name": e.name, "content": e.content}, ensure_ascii=False)
        if e.name else
        json.dumps({"role": e.role.value, "content": e.content}, ensure_ascii=False)
        for e in recent_events(history, limit)
    )
