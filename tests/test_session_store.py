import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import SessionNotFoundError, SessionPermissionError, StorageError
from app.schemas.chat import ArticleSource
from app.services.session_store import SessionStore, build_default_title


def test_build_default_title():
    assert build_default_title("   ") == "New Conversation"
    assert build_default_title("Where is  the library?") == "Where is the library?"
    long_title = build_default_title("word " * 30)
    assert len(long_title) == 60
    assert long_title.endswith("...")


def test_session_ownership_is_enforced(store):
    session = store.create_session("alice", title="Housing")

    assert store.get_session(session.id, "alice").title == "Housing"
    with pytest.raises(SessionPermissionError):
        store.get_session(session.id, "mallory")
    with pytest.raises(SessionNotFoundError):
        store.get_session("does-not-exist", "alice")


def test_messages_are_ordered_and_keep_sources(store):
    session = store.create_session("alice")
    store.save_message(session.id, "user", "Where can I live?")
    store.save_message(
        session.id,
        "assistant",
        "Try the dorms.",
        [ArticleSource(title="Dorm Guide", slug="dorm-guide", category="Housing")],
    )

    messages = store.get_messages(session.id)

    assert [m.role for m in messages] == ["user", "assistant"]
    assert messages[0].sources is None
    assert messages[1].sources[0].slug == "dorm-guide"
    assert store.count_messages(session.id) == 2
    assert [m.content for m in store.get_messages(session.id, limit=1)] == ["Try the dorms."]


def test_list_sessions_orders_by_activity_and_counts_messages(store):
    older = store.create_session("alice", title="Older")
    newer = store.create_session("alice", title="Newer")
    store.create_session("bob", title="Not mine")

    store.save_message(older.id, "user", "bump")
    sessions = store.list_sessions("alice")

    assert [s.title for s in sessions] == ["Older", "Newer"]
    assert [s.message_count for s in sessions] == [1, 0]
    assert newer.id in {s.id for s in sessions}


def test_delete_session_cascades_messages(store):
    session = store.create_session("alice")
    store.save_message(session.id, "user", "hello")

    with pytest.raises(SessionPermissionError):
        store.delete_session(session.id, "bob")

    store.delete_session(session.id, "alice")

    assert store.list_sessions("alice") == []
    assert store.count_messages(session.id) == 0


def test_update_session_title(store):
    session = store.create_session("alice")

    updated = store.update_session_title(session.id, "alice", "Exams")

    assert updated.title == "Exams"


def test_touch_session_moves_it_to_the_top(store):
    first = store.create_session("alice", title="First")
    store.create_session("alice", title="Second")

    store.touch_session(first.id)

    assert store.list_sessions("alice")[0].id == first.id
    with pytest.raises(SessionNotFoundError):
        store.touch_session("missing")


def test_database_failures_become_storage_errors(session_factory):
    class BrokenSession:
        def __init__(self):
            self.inner = session_factory()
            self.rolled_back = False

        def get(self, *args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

        def rollback(self):
            self.rolled_back = True

        def close(self):
            self.inner.close()

    broken = SessionStore(session_factory=BrokenSession)

    with pytest.raises(StorageError) as exc_info:
        broken.get_session("anything", "alice")
    assert exc_info.value.retryable is True
