import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from chat_core.domain.conversation import MessageRecord
from chat_core.domain.exceptions import ThreadNotFoundError
from chat_core.infrastructure.storage.json_store import JsonThreadStore


def _msg(mid, thread_id, role="user", content="hi", created_at=None):
    return MessageRecord(
        id=mid,
        thread_id=thread_id,
        role=role,
        content=content,
        created_at=created_at or datetime.now(timezone.utc),
    )


def test_json_store_create_and_messages():
    with tempfile.TemporaryDirectory() as d:
        store = JsonThreadStore(root=Path(d) / ".storage")
        thread = store.create_thread("u1")
        assert thread.title is None
        store.append_message(thread.id, _msg("m1", thread.id, "user", "hello"))
        updated = store.append_message(thread.id, _msg("m2", thread.id, "assistant", "hi there"))
        assert [m.id for m in updated.messages] == ["m1", "m2"]
        loaded = store.get_thread(thread.id, "u1")
        assert [m.role for m in loaded.messages] == ["user", "assistant"]
        assert loaded.updated_at >= loaded.created_at


def test_json_store_filters_by_owner():
    with tempfile.TemporaryDirectory() as d:
        store = JsonThreadStore(root=Path(d) / ".storage")
        thread = store.create_thread("u1")
        with pytest.raises(ThreadNotFoundError):
            store.get_thread(thread.id, "u2")
        with pytest.raises(ThreadNotFoundError):
            store.get_thread("t-missing", "u1")
        with pytest.raises(ThreadNotFoundError):
            store.delete_thread(thread.id, "u2")
        assert store.list_threads("u2") == []


def test_json_store_list_most_recent_first():
    with tempfile.TemporaryDirectory() as d:
        store = JsonThreadStore(root=Path(d) / ".storage")
        older = store.create_thread("u1")
        newer = store.create_thread("u1")
        time.sleep(0.01)
        store.append_message(older.id, _msg("m1", older.id))
        store.set_title(older.id, "Trip planning")
        summaries = store.list_threads("u1")
        assert [s.id for s in summaries] == [older.id, newer.id]
        assert summaries[0].title == "Trip planning"
        assert summaries[0].message_count == 1
        assert summaries[1].title == "New Chat"


def test_json_store_delete_and_clear():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonThreadStore(root=root)
        first = store.create_thread("u1")
        store.create_thread("u1")
        other = store.create_thread("u2")
        store.delete_thread(first.id, "u1")
        assert not (root / "threads" / first.id).exists()
        assert store.delete_all_threads("u1") == 1
        assert store.list_threads("u1") == []
        assert [s.id for s in store.list_threads("u2")] == [other.id]


def test_json_store_toggle_star():
    with tempfile.TemporaryDirectory() as d:
        store = JsonThreadStore(root=Path(d) / ".storage")
        thread = store.create_thread("u1")
        assert store.toggle_star(thread.id, "u1") is True
        assert store.get_thread(thread.id, "u1").is_starred is True
        assert store.toggle_star(thread.id, "u1") is False


def test_json_store_count_messages_since():
    with tempfile.TemporaryDirectory() as d:
        store = JsonThreadStore(root=Path(d) / ".storage")
        thread = store.create_thread("u1")
        now = datetime.now(timezone.utc)
        store.append_message(thread.id, _msg("old", thread.id, "assistant", created_at=now - timedelta(days=1)))
        store.append_message(thread.id, _msg("new", thread.id, "assistant", created_at=now))
        store.append_message(thread.id, _msg("u", thread.id, "user", created_at=now))
        since = now - timedelta(hours=1)
        assert store.count_messages_since("u1", "assistant", since) == 1
        assert store.count_messages_since("u1", "user", since) == 1
        assert store.count_messages_since("u2", "assistant", since) == 0


def test_json_store_concurrent_appends_keep_every_message():
    with tempfile.TemporaryDirectory() as d:
        store = JsonThreadStore(root=Path(d) / ".storage")
        thread = store.create_thread("u1")

        def worker(prefix):
            for i in range(10):
                store.append_message(thread.id, _msg(f"{prefix}-{i}", thread.id, content=f"{prefix}{i}"))

        threads = [threading.Thread(target=worker, args=(p,)) for p in ("a", "b", "c")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        ids = [m.id for m in store.get_thread(thread.id, "u1").messages]
        assert len(ids) == 30
        # 每个写入者自己的消息保持插入顺序
        for prefix in ("a", "b", "c"):
            mine = [i for i in ids if i.startswith(prefix)]
            assert mine == [f"{prefix}-{i}" for i in range(10)]


def test_json_store_clear_drops_thread_locks():
    with tempfile.TemporaryDirectory() as d:
        store = JsonThreadStore(root=Path(d) / ".storage")
        for _ in range(3):
            thread = store.create_thread("u1")
            store.append_message(thread.id, _msg(f"m-{thread.id}", thread.id))
        assert len(store._locks) == 3
        assert store.delete_all_threads("u1") == 3
        assert store._locks == {}


def test_json_store_count_skips_threads_not_updated_since(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        store = JsonThreadStore(root=Path(d) / ".storage")
        now = datetime.now(timezone.utc)
        stale = store.create_thread("u1")
        store.append_message(stale.id, _msg("old", stale.id, "assistant", created_at=now - timedelta(days=2)))
        meta = store._read_meta(stale.id)
        meta.updated_at = now - timedelta(days=2)
        store._write_meta(store._thread_root / stale.id, meta)
        fresh = store.create_thread("u1")
        store.append_message(fresh.id, _msg("new", fresh.id, "assistant", created_at=now))

        read = []
        original = store._read_messages

        def tracking(thread_id):
            read.append(thread_id)
            return original(thread_id)

        monkeypatch.setattr(store, "_read_messages", tracking)
        assert store.count_messages_since("u1", "assistant", now - timedelta(hours=1)) == 1
        assert read == [fresh.id]
