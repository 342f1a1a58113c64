"""
Session stores — where callers keep SessionState between turns.

Implementations:
  - InMemorySessionStore (dict-based, single-process, no persistence)
  - FileSessionStore     (one JSON file per session, survives restarts)

Both hold the record shape produced by session_to_record, so any adapter a
caller writes for its own database is drop-in compatible.
"""
from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import structlog

from context.session import session_from_record, session_to_record
from models.schemas import SessionState

logger = structlog.get_logger()


class SessionStore(ABC):
    """Interface that all session store backends must implement."""

    @abstractmethod
    async def load(self, session_id: str) -> Optional[SessionState]:
        ...

    @abstractmethod
    async def save(self, session: SessionState) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...


class InMemorySessionStore(SessionStore):
    """Keeps records (not live objects) so loads behave like a real backend."""

    def __init__(self):
        self._records: dict[str, dict[str, Any]] = {}

    async def load(self, session_id: str) -> Optional[SessionState]:
        record = self._records.get(session_id)
        return session_from_record(record, session_id) if record else None

    async def save(self, session: SessionState) -> None:
        self._records[session.id] = session_to_record(session)
        logger.debug("session_saved", session_id=session.id, backend="memory")

    async def delete(self, session_id: str) -> bool:
        return self._records.pop(session_id, None) is not None

    @property
    def count(self) -> int:
        return len(self._records)


_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class FileSessionStore(SessionStore):
    """
    JSON file per session under data_dir.
    Single-process only (no concurrent write safety).
    """

    def __init__(self, data_dir: str = "./data/sessions"):
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        logger.info("file_session_store_initialized", data_dir=str(self._data_dir))

    def _file_path(self, session_id: str) -> Path:
        return self._data_dir / f"{_SAFE_NAME.sub('_', session_id)}.json"

    async def load(self, session_id: str) -> Optional[SessionState]:
        path = self._file_path(session_id)
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                record = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning("file_session_load_error", session_id=session_id, error=str(e))
            return None
        return session_from_record(record, session_id)

    async def save(self, session: SessionState) -> None:
        path = self._file_path(session.id)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(session_to_record(session), f, default=str, indent=2)
        tmp.replace(path)
        logger.debug("session_saved", session_id=session.id, backend="file")

    async def delete(self, session_id: str) -> bool:
        path = self._file_path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True
