import pytest
from click.testing import CliRunner

from talkback import cli as cli_module
from talkback.models import Message
from talkback.storage import ConversationStore


@pytest.fixture
def db(tmp_path, monkeypatch):
    path = tmp_path / "conversations.db"
    monkeypatch.setattr(cli_module, "SQLITE_PATH", path)
    monkeypatch.setattr(cli_module, "DATA_DIR", tmp_path)

    store = ConversationStore(path)
    conv = store.create("local", "Plan a trip to Lisbon")
    store.append_exchange(
        conv.id, "local", None, Message(role="assistant", content="Start at Alfama."),
        is_first_exchange=True,
    )
    store.close()
    return conv.id


def test_list(db):
    result = CliRunner().invoke(cli_module.cli, ["list"])

    assert result.exit_code == 0
    assert db in result.output
    assert "Plan a trip to Lisbon" in result.output
    assert "2 msgs" in result.output


def test_export_to_file(db, tmp_path):
    out = tmp_path / "trip.md"
    result = CliRunner().invoke(cli_module.cli, ["export", db, "-o", str(out)])

    assert result.exit_code == 0
    text = out.read_text(encoding="utf-8")
    assert text.startswith("# Conversation: Plan a trip to Lisbon")
    assert "Start at Alfama." in text


def test_export_other_owner_not_found(db):
    result = CliRunner().invoke(cli_module.cli, ["export", db, "--owner", "someone"])

    assert result.exit_code == 1
    assert "Conversation not found" in result.output


def test_delete(db):
    runner = CliRunner()
    result = runner.invoke(cli_module.cli, ["delete", db, "--yes"])

    assert result.exit_code == 0
    assert "No conversations found." in runner.invoke(cli_module.cli, ["list"]).output


def test_no_database(tmp_path, monkeypatch):
    monkeypatch.setattr(cli_module, "SQLITE_PATH", tmp_path / "missing.db")

    result = CliRunner().invoke(cli_module.cli, ["list"])

    assert result.exit_code == 1
    assert "talkback serve" in result.output
