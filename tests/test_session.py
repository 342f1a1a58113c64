"""Tests for session helpers and session stores."""
import json

import pytest
from pydantic import ValidationError

from context.session import (
    clear_pending_transition, create_session, enter_route, enter_step, mark_route_completed,
    merge_collected, session_from_record, session_to_record, set_pending_transition,
)
from context.store import FileSessionStore, InMemorySessionStore
from models.schemas import SessionState, TransitionReason


@pytest.fixture
def active():
    session = enter_route(create_session("s-1"), "book_flight", "Book a flight")
    session = enter_step(session, "ask_origin", "Ask for origin")
    return merge_collected(session, {"origin": "Porto"})


class TestSessionHelpers:
    def test_create_session(self):
        session = create_session("abc", metadata={"channel": "web"})
        assert session.id == "abc"
        assert session.metadata["channel"] == "web"
        assert "created_at" in session.metadata
        assert create_session().id != create_session().id

    def test_sessions_are_immutable(self, active):
        with pytest.raises(ValidationError):
            active.data = {}

    def test_helpers_return_new_instances(self):
        session = create_session("s")
        entered = enter_route(session, "r1")
        assert session.current_route is None
        assert entered.active_route_id == "r1"
        assert entered.current_route.title == "r1"

    def test_enter_route_saves_and_resumes_data(self, active):
        switched = enter_route(active, "feedback", "Feedback")
        assert switched.data == {}
        assert switched.data_by_route["book_flight"] == {"origin": "Porto"}
        assert switched.current_step is None
        assert switched.route_history[0].exited_at is not None
        assert switched.data_for("book_flight") == {"origin": "Porto"}

        back = enter_route(switched, "book_flight", "Book a flight")
        assert back.data == {"origin": "Porto"}
        assert [v.route_id for v in back.route_history] == ["book_flight", "feedback", "book_flight"]

    def test_merge_collected(self, active):
        merged = merge_collected(active, {"destination": "Oslo"})
        assert merged.data == {"origin": "Porto", "destination": "Oslo"}
        assert merged.data_by_route["book_flight"] == merged.data
        assert merge_collected(merged, {}) is merged

    def test_mark_route_completed(self, active):
        done = mark_route_completed(active, "book_flight")
        assert done.route_history[-1].completed
        assert mark_route_completed(done, "book_flight") is done
        assert mark_route_completed(active, "never_visited") is active

    def test_pending_transition_roundtrip(self, active):
        pending = set_pending_transition(active, "feedback", condition="User seems happy")
        assert pending.pending_transition.target_route_id == "feedback"
        assert pending.pending_transition.source_route_id == "book_flight"
        assert pending.pending_transition.reason == TransitionReason.ROUTE_COMPLETE
        cleared = clear_pending_transition(pending)
        assert cleared.pending_transition is None
        assert clear_pending_transition(cleared) is cleared


class TestSessionRecord:
    def test_record_shape(self, active):
        record = session_to_record(active)
        assert record["id"] == "s-1"
        assert record["current_route"] == "book_flight"
        assert record["current_step"] == "ask_origin"
        assert record["collected_data"]["data"] == {"origin": "Porto"}
        json.dumps(record, default=str)

    def test_restore_from_record(self, active):
        pending = set_pending_transition(mark_route_completed(active, "book_flight"), "feedback")
        restored = session_from_record(session_to_record(pending))

        assert restored.id == "s-1"
        assert restored.current_route.title == "Book a flight"
        assert restored.current_step.description == "Ask for origin"
        assert restored.data == {"origin": "Porto"}
        assert restored.route_history[0].completed
        assert restored.pending_transition.target_route_id == "feedback"

    def test_restore_minimal_record(self):
        restored = session_from_record({"current_route": "r1"}, session_id="given")
        assert restored.id == "given"
        assert restored.current_route.title == "r1"
        assert restored.current_step is None


class TestStores:
    @pytest.mark.asyncio
    async def test_in_memory_store(self, active):
        store = InMemorySessionStore()
        assert await store.load("s-1") is None
        await store.save(active)
        loaded = await store.load("s-1")
        assert isinstance(loaded, SessionState)
        assert loaded.data == active.data
        assert loaded is not active
        assert store.count == 1
        assert await store.delete("s-1")
        assert not await store.delete("s-1")

    @pytest.mark.asyncio
    async def test_file_store(self, active, tmp_path):
        store = FileSessionStore(data_dir=str(tmp_path / "sessions"))
        await store.save(active)
        assert (tmp_path / "sessions" / "s-1.json").exists()

        loaded = await FileSessionStore(data_dir=str(tmp_path / "sessions")).load("s-1")
        assert loaded.current_route.id == "book_flight"
        assert loaded.data == {"origin": "Porto"}

        assert await store.delete("s-1")
        assert await store.load("s-1") is None

    @pytest.mark.asyncio
    async def test_file_store_sanitizes_ids(self, tmp_path):
        store = FileSessionStore(data_dir=str(tmp_path))
        await store.save(create_session("../escape"))
        assert (tmp_path / ".._escape.json").exists()

    @pytest.mark.asyncio
    async def test_file_store_corrupt_file(self, tmp_path):
        store = FileSessionStore(data_dir=str(tmp_path))
        (tmp_path / "bad.json").write_text("{not json")
        assert await store.load("bad") is None
