import asyncio

import pytest

from talkback.errors import AuthorizationError, PersistenceError
from talkback.models import ExchangeRecord, Message
from talkback.persistence import ConversationPersistenceSink


def _record(conv, text, first=False, owner="alice", question="q"):
    user = conv.messages[0] if first else Message(role="user", content=question)
    return ExchangeRecord(
        conversation_id=conv.id,
        owner_id=owner,
        user_message=user,
        assistant_text=text,
        is_first_exchange=first,
    )


@pytest.mark.asyncio
async def test_first_exchange_only_appends_assistant(store):
    conv = store.create("alice", "opening line")
    sink = ConversationPersistenceSink(store)

    stored = await sink.persist(_record(conv, "reply", first=True))

    loaded = store.get(conv.id, "alice")
    assert [m.content for m in loaded.messages] == ["opening line", "reply"]
    assert loaded.messages[-1].id == stored.id


@pytest.mark.asyncio
async def test_concurrent_writes_stay_paired(store):
    conv = store.create("alice", "start")
    sink = ConversationPersistenceSink(store)
    await sink.persist(_record(conv, "a0", first=True))

    await asyncio.gather(
        *(sink.persist(_record(conv, f"a{i}", question=f"q{i}")) for i in range(1, 4))
    )

    messages = store.get(conv.id, "alice").messages
    assert len(messages) == 8
    assert [m.role for m in messages] == ["user", "assistant"] * 4
    for question, answer in zip(messages[2::2], messages[3::2]):
        assert question.content[1:] == answer.content[1:]


@pytest.mark.asyncio
async def test_wrong_owner_is_rejected_before_writing(store):
    conv = store.create("alice", "start")
    sink = ConversationPersistenceSink(store)

    with pytest.raises(AuthorizationError):
        await sink.persist(_record(conv, "x", first=True, owner="mallory"))
    assert await sink.persist_or_log(_record(conv, "x", first=True, owner="mallory")) is False
    assert store.get(conv.id, "alice").message_count == 1


@pytest.mark.asyncio
async def test_store_failure_becomes_persistence_error(store, monkeypatch):
    conv = store.create("alice", "start")
    sink = ConversationPersistenceSink(store)

    def broken(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(store, "append_exchange", broken)

    with pytest.raises(PersistenceError):
        await sink.persist(_record(conv, "lost", first=True))
