import pytest

from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import ChatMessage
from chat_core.infrastructure.storage.json_store import JsonPersistenceAdapter
from chat_core.infrastructure.storage.kv_store import MemoryKeyValueStore
from chat_core.state.conversations import DEFAULT_TITLE, ConversationStore, derive_title


class FailingRepo:
    def __init__(self):
        self.calls = 0

    def save_conversations(self, conversations):
        self.calls += 1
        return False

    def load_conversations(self):
        return []


def make_store(debounce=0.0):
    adapter = JsonPersistenceAdapter(MemoryKeyValueStore(), max_conversations=50, max_messages=100)
    return ConversationStore(adapter, debounce_seconds=debounce), adapter


def test_create_prepends_and_activates():
    store, adapter = make_store()
    a = store.create("llama3")
    b = store.create("mistral")
    assert [c.id for c in store.list()] == [b.id, a.id]
    assert store.active_id == b.id
    assert b.title == DEFAULT_TITLE
    assert b.messages == []
    assert b.created_at == b.updated_at
    assert [c.id for c in adapter.load_conversations()] == [b.id, a.id]


def test_55_conversations_persist_50_most_recent_first():
    store, adapter = make_store()
    created = [store.create("llama3") for _ in range(55)]
    persisted = adapter.load_conversations()
    assert [c.id for c in persisted] == [c.id for c in reversed(created)][:50]
    assert len(store.list()) == 55


def test_delete_moves_active_to_most_recently_updated():
    store, _ = make_store()
    a = store.create("m")
    b = store.create("m")
    c = store.create("m")
    store.rename(a.id, "touched last")
    store.select(c.id)
    assert store.delete(c.id)
    assert store.active_id == a.id
    store.delete(a.id)
    assert store.active_id == b.id
    store.delete(b.id)
    assert store.active_id is None
    assert store.delete("nope") is False


def test_update_unknown_id_is_noop():
    store, _ = make_store()
    store.create("m")
    before = store.list()
    assert store.update("missing", title="x") is None
    assert store.list() == before


def test_update_rejects_unknown_fields():
    store, _ = make_store()
    conv = store.create("m")
    with pytest.raises(ValidationError):
        store.update(conv.id, id="other")


def test_update_refreshes_updated_at_monotonically():
    store, _ = make_store()
    conv = store.create("m")
    stamps = [conv.updated_at]
    for i in range(20):
        stamps.append(store.rename(conv.id, f"t{i}").updated_at)
    assert all(b > a for a, b in zip(stamps, stamps[1:]))
    assert store.get(conv.id).created_at == conv.created_at


def test_title_derived_from_first_user_message_only():
    store, _ = make_store()
    conv = store.create("m")
    long_text = "Explain the difference between threads and processes please"
    conv = store.append_message(conv.id, ChatMessage(role="user", content=long_text))
    assert conv.title == "Explain the difference between..."
    conv = store.append_message(conv.id, ChatMessage(role="user", content="second"))
    assert conv.title == "Explain the difference between..."

    short = store.create("m")
    assert store.append_message(short.id, ChatMessage(role="user", content="hi")).title == "hi"

    sys_first = store.create("m")
    assert store.append_message(sys_first.id, ChatMessage(role="system", content="be brief")).title == DEFAULT_TITLE


def test_derive_title_edge_cases():
    assert derive_title("x" * 30) == "x" * 30
    assert derive_title("x" * 31) == "x" * 30 + "..."
    assert derive_title("   ") == DEFAULT_TITLE
    assert derive_title("  hi") == "  hi"
    assert derive_title(" " + "y" * 30) == " " + "y" * 29 + "..."


def test_coalesced_updates_flush_final_state():
    store, adapter = make_store(debounce=60.0)
    conv = store.create("m")
    for i in range(1, 6):
        store.update(conv.id, coalesce=True, messages=[ChatMessage(role="assistant", content="x" * i)])
    assert adapter.load_conversations()[0].messages == []
    assert store.flush()
    assert adapter.load_conversations()[0].messages[0].content == "xxxxx"


def test_persistence_failure_keeps_memory_state():
    repo = FailingRepo()
    store = ConversationStore(repo, debounce_seconds=0)
    conv = store.create("m")
    store.append_message(conv.id, ChatMessage(role="user", content="hello"))
    assert store.get(conv.id).messages[0].content == "hello"
    assert store.last_save_ok is False
    assert repo.calls == 2
