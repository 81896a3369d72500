import pytest

from talkback import server
from talkback.storage import ConversationStore


@pytest.fixture
def mcp_store(tmp_path, monkeypatch):
    path = tmp_path / "conversations.db"
    store = ConversationStore(path)
    monkeypatch.setattr(server, "SQLITE_PATH", path)
    monkeypatch.setattr(server, "_store", store)
    monkeypatch.setattr(server, "DEFAULT_OWNER_ID", "local")
    yield store
    store.close()


def test_list_conversations(mcp_store):
    conv = mcp_store.create("local", "Recipes for dinner")
    mcp_store.create("someone-else", "Hidden")

    text = server.list_conversations()

    assert "**Recipes for dinner**" in text
    assert conv.id in text
    assert "Hidden" not in text


def test_get_conversation(mcp_store):
    conv = mcp_store.create("local", "Recipes for dinner")

    assert server.get_conversation(conv.id).startswith("# Conversation: Recipes for dinner")
    assert server.get_conversation("missing") == "Conversation not found: missing"


def test_no_data(tmp_path, monkeypatch):
    monkeypatch.setattr(server, "SQLITE_PATH", tmp_path / "missing.db")

    assert "No conversations found" in server.list_conversations()
