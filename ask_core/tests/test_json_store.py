import tempfile
from pathlib import Path

from ask_core.domain.models import ConversationMessage
from ask_core.infrastructure.storage.json_store import JsonHistoryStore


def test_json_store_save_and_load():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonHistoryStore(root=root)
        timeline = [
            ConversationMessage(id="u1", role="user", content="hi"),
            ConversationMessage(id="a1", role="assistant", content="Hello", response_time_ms=120),
            ConversationMessage(id="a2", role="assistant", content="boom", is_error=True),
            ConversationMessage(id="a3", role="assistant", is_thinking=True),
        ]
        assert store.save(timeline)
        assert store.path.exists()
        loaded = JsonHistoryStore(root=root).load()
        assert [m.id for m in loaded] == ["u1", "a1"]
        assert loaded[1].response_time_ms == 120
        assert not list(root.glob("*.tmp"))


def test_json_store_keeps_previous_file_when_nothing_to_save():
    with tempfile.TemporaryDirectory() as d:
        store = JsonHistoryStore(root=d)
        store.save([ConversationMessage(id="u1", role="user", content="hi")])
        assert not store.save([ConversationMessage(id="a1", role="assistant", is_thinking=True)])
        assert [m.id for m in store.load()] == ["u1"]


def test_json_store_corrupt_or_missing_file():
    with tempfile.TemporaryDirectory() as d:
        store = JsonHistoryStore(root=d)
        assert store.load() == []
        store.path.write_text("{not json", encoding="utf-8")
        assert store.load() == []
        store.clear()
        assert not store.path.exists()
        store.clear()
