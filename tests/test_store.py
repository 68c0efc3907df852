"""Tests for saved conversations: the sqlite index and the history cache."""

from __future__ import annotations

import time
from pathlib import Path

import pytest

from oi.errors import CacheError, ManyMatchesError, NoMatchesError
from oi.store import (
    ConversationCache,
    ConversationDB,
    format_conversation,
    new_conversation_id,
    resolve_cache_details,
)
from oi.types import Message, Role, ToolCall

ID_A = "a1b2c3" + "0" * 34
ID_B = "a1b2ff" + "1" * 34
ID_C = "c0ffee" + "2" * 34


@pytest.fixture
def db() -> ConversationDB:
    conn = ConversationDB(":memory:")
    yield conn
    conn.close()


@pytest.fixture
def cache(tmp_path: Path, db: ConversationDB) -> ConversationCache:
    return ConversationCache(tmp_path / "conversations", db)


def _history() -> list[Message]:
    return [
        Message(role=Role.USER, content="list files"),
        Message(role=Role.ASSISTANT, tool_calls=[ToolCall(0, "list_dir", b'{"path": "."}')]),
        Message(role=Role.TOOL, content="f a.txt", tool_call_id="call_0", tool_name="list_dir"),
        Message(role=Role.ASSISTANT, content="There is one file."),
    ]


# ---------------------------------------------------------------------------
# ConversationDB
# ---------------------------------------------------------------------------

class TestConversationDB:
    def test_find_by_id_title_and_prefix(self, db: ConversationDB):
        db.save(ID_A, "groceries", "ollama", "qwen3")
        db.save(ID_C, "poems")

        assert db.find(ID_A).title == "groceries"
        assert db.find("poems").id == ID_C
        assert db.find("c0ff").id == ID_C
        assert db.find("groceries").model == "qwen3"

    def test_short_prefix_is_not_matched(self, db: ConversationDB):
        db.save(ID_C, "poems")
        with pytest.raises(NoMatchesError):
            db.find("c0f")

    def test_ambiguous_prefix(self, db: ConversationDB):
        db.save(ID_A, "one")
        db.save(ID_B, "two")
        with pytest.raises(ManyMatchesError):
            db.find("a1b2")
        assert db.find("a1b2c").id == ID_A

    def test_save_updates_existing(self, db: ConversationDB):
        db.save(ID_A, "old")
        db.save(ID_A, "new")
        assert [c.title for c in db.list()] == ["new"]

    def test_find_head(self, db: ConversationDB):
        with pytest.raises(NoMatchesError):
            db.find_head()
        db.save(ID_A, "first")
        time.sleep(0.01)
        db.save(ID_C, "second")
        assert db.find_head().id == ID_C

    def test_older_than(self, db: ConversationDB):
        db.save(ID_A, "old")
        db._conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (time.time() - 3600, ID_A))
        db.save(ID_C, "new")
        assert [c.id for c in db.older_than(60)] == [ID_A]

    def test_delete(self, db: ConversationDB):
        db.save(ID_A, "gone")
        db.delete(ID_A)
        assert db.list() == []

    def test_file_database(self, tmp_path: Path):
        path = tmp_path / "nested" / "oi.db"
        first = ConversationDB(path)
        first.save(ID_A, "persisted")
        first.close()

        second = ConversationDB(path)
        assert second.find("persisted").id == ID_A
        second.close()


# ---------------------------------------------------------------------------
# ConversationCache
# ---------------------------------------------------------------------------

class TestConversationCache:
    def test_write_then_read(self, cache: ConversationCache, db: ConversationDB):
        cache.write(ID_A, "files", "ollama", "qwen3", _history())

        assert cache.read(ID_A) == _history()
        entry = db.find(ID_A)
        assert (entry.title, entry.api, entry.model) == ("files", "ollama", "qwen3")
        assert not list(cache.directory.glob("*.tmp"))

    def test_untitled_uses_short_id(self, cache: ConversationCache, db: ConversationDB):
        cache.write(ID_C, "", "ollama", "qwen3", _history())
        assert db.find(ID_C).title == ID_C[:8]

    def test_missing(self, cache: ConversationCache):
        with pytest.raises(CacheError, match="not found"):
            cache.read(ID_A)

    def test_corrupt(self, cache: ConversationCache):
        (cache.directory / f"{ID_A}.json").write_text("{broken")
        with pytest.raises(CacheError, match="unreadable"):
            cache.read(ID_A)

    def test_invalid_id(self, cache: ConversationCache):
        with pytest.raises(CacheError):
            cache.read("../escape")

    def test_delete(self, cache: ConversationCache, db: ConversationDB):
        cache.write(ID_A, "files", "ollama", "qwen3", _history())
        cache.delete(ID_A)
        assert db.list() == []
        with pytest.raises(CacheError):
            cache.read(ID_A)


# ---------------------------------------------------------------------------
# Cache details for a run
# ---------------------------------------------------------------------------

class TestResolveCacheDetails:
    def test_fresh_run_gets_new_id(self, db: ConversationDB):
        details = resolve_cache_details(db)
        assert len(details.write_id) == 40
        assert details.read_id == ""
        assert details.title == ""

    def test_new_ids_are_unique(self):
        assert new_conversation_id() != new_conversation_id()

    def test_title_for_new_conversation(self, db: ConversationDB):
        details = resolve_cache_details(db, title="shopping")
        assert details.title == "shopping"
        assert len(details.write_id) == 40

    def test_title_reuses_existing_conversation(self, db: ConversationDB):
        db.save(ID_A, "shopping")
        assert resolve_cache_details(db, title="shopping").write_id == ID_A

    def test_continue_writes_back_to_same_conversation(self, db: ConversationDB):
        db.save(ID_A, "shopping", "ollama", "qwen3:8b")
        details = resolve_cache_details(db, continue_id="shopping")
        assert details.read_id == ID_A
        assert details.write_id == ID_A
        assert (details.api, details.model) == ("ollama", "qwen3:8b")

    def test_continue_with_title_forks(self, db: ConversationDB):
        db.save(ID_A, "shopping")
        details = resolve_cache_details(db, continue_id="shopping", title="weekend")
        assert details.read_id == ID_A
        assert details.write_id != ID_A
        assert details.title == "weekend"

    def test_continue_last(self, db: ConversationDB):
        db.save(ID_A, "older")
        time.sleep(0.01)
        db.save(ID_C, "newest")
        details = resolve_cache_details(db, continue_last=True)
        assert details.read_id == ID_C
        assert details.write_id == ID_C

    def test_unknown_continue_falls_back_to_latest(self, db: ConversationDB):
        db.save(ID_C, "only")
        assert resolve_cache_details(db, continue_id="nothing-like-it").read_id == ID_C

    def test_show_does_not_write(self, db: ConversationDB):
        db.save(ID_A, "shopping")
        details = resolve_cache_details(db, show="shopping")
        assert details.read_id == ID_A
        assert details.write_id == ""
        assert details.title == ""

    def test_show_unknown_is_an_error(self, db: ConversationDB):
        db.save(ID_A, "shopping")
        with pytest.raises(NoMatchesError):
            resolve_cache_details(db, show="missing")

    def test_continue_with_empty_index(self, db: ConversationDB):
        with pytest.raises(NoMatchesError):
            resolve_cache_details(db, continue_last=True)


def test_format_conversation():
    text = format_conversation(_history())
    assert text.startswith("**user**: list files")
    assert "> Called: `list_dir`" in text
    assert "> **list_dir**" in text
    assert text.endswith("**assistant**: There is one file.\n")
