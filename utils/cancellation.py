"""Helpers for the single caller-supplied cancellation signal."""
from __future__ import annotations

import asyncio
from typing import Optional

from core.errors import DecisionCancelled


def is_cancelled(signal: Optional[asyncio.Event]) -> bool:
    return signal is not None and signal.is_set()


def raise_if_cancelled(signal: Optional[asyncio.Event], where: str = "") -> None:
    """Raise DecisionCancelled if the signal has been set."""
    if is_cancelled(signal):
        raise DecisionCancelled(f"Decision cancelled{f' during {where}' if where else ''}")
