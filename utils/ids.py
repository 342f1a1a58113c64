"""
Deterministic id generation for routes, steps and tools.

Ids are derived from a hash of their owning scope plus their content, so
the same route definition yields the same ids across processes and restarts.
"""
from __future__ import annotations

import hashlib
import re

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def _short_hash(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:8]


def _sanitize(value: str, max_len: int = 40) -> str:
    return _NON_ALNUM.sub("_", value.lower()).strip("_")[:max_len]


def generate_route_id(title: str) -> str:
    """route_{sanitized_title}_{hash}"""
    return f"route_{_sanitize(title)}_{_short_hash(title)}"


def generate_step_id(route_id: str, content: str = "", index: int = None) -> str:
    if content:
        return f"step_{_sanitize(content)}_{_short_hash(f'{route_id}:{content}')}"
    suffix = index if index is not None else _short_hash(route_id)
    return f"step_{route_id}_{suffix}"


def generate_tool_id(name: str) -> str:
    return f"tool_{_sanitize(name)}_{_short_hash(name)}"


def generate_guideline_id(scope_id: str, content: str) -> str:
    return f"guideline_{_short_hash(f'{scope_id}:{content}')}"
