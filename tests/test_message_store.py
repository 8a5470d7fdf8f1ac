import asyncio

import pytest
from pymongo.errors import DuplicateKeyError

from relaychat.errors import ConversationNotFound, NotAParticipant, Transient
from relaychat.repositories.message_repository import MessageRepository
from relaychat.schemas.message import MessagePayload


pytestmark = pytest.mark.anyio


async def test_append_assigns_increasing_seq(services, users):
    conversations, chat = services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])

    first = await chat.send_message(convo.id, users["alice"], MessagePayload(text="hi"))
    second = await chat.send_message(convo.id, users["bob"], MessagePayload(text="hey"))
    third = await chat.send_message(convo.id, users["alice"], MessagePayload(image_ref="https://cdn.example.com/cat.png"))

    assert [first.seq, second.seq, third.seq] == [1, 2, 3]
    assert first.created_at <= second.created_at <= third.created_at


async def test_concurrent_appends_get_distinct_positions(services, users):
    conversations, chat = services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])

    sent = await asyncio.gather(
        *[chat.send_message(convo.id, users["alice"] if i % 2 else users["bob"], MessagePayload(text=f"m{i}")) for i in range(10)]
    )

    assert sorted(m.seq for m in sent) == list(range(1, 11))
    page = await chat.list_messages(convo.id, users["alice"])
    assert [m.seq for m in page.items] == list(range(1, 11))


async def test_append_to_unknown_conversation(services, users):
    _, chat = services
    with pytest.raises(ConversationNotFound):
        await chat.send_message("64b7f0c2a1b2c3d4e5f60718", users["alice"], MessagePayload(text="hello?"))
    with pytest.raises(ConversationNotFound):
        await chat.send_message("not-an-id", users["alice"], MessagePayload(text="hello?"))


async def test_append_by_non_participant_is_rejected(services, users):
    conversations, chat = services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])

    with pytest.raises(NotAParticipant):
        await chat.send_message(convo.id, users["carol"], MessagePayload(text="let me in"))

    page = await chat.list_messages(convo.id, users["alice"])
    assert page.items == []


async def test_send_racing_group_delete_leaves_no_message(services, users, db, monkeypatch):
    conversations, chat = services
    group = await conversations.create_group(users["alice"], [users["bob"], users["carol"]], "Trip")
    original = MessageRepository.insert_next

    async def deleted_midway(self, *args, **kwargs):
        await conversations.delete(group.id, users["alice"])
        return await original(self, *args, **kwargs)

    monkeypatch.setattr(MessageRepository, "insert_next", deleted_midway)
    with pytest.raises(ConversationNotFound):
        await chat.send_message(group.id, users["bob"], MessagePayload(text="too late"))

    assert await db["messages"].count_documents({}) == 0



async def test_append_moves_last_message_pointer(services, users, db):
    conversations, chat = services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])

    await chat.send_message(convo.id, users["alice"], MessagePayload(text="one"))
    latest = await chat.send_message(convo.id, users["bob"], MessagePayload(text="two"))

    fresh = await conversations.get(convo.id, users["alice"])
    assert fresh.last_message_id == latest.id


async def test_client_token_makes_retries_idempotent(services, users):
    conversations, chat = services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])

    first = await chat.send_message(convo.id, users["alice"], MessagePayload(text="once"), client_message_id="tok-1")
    retry = await chat.send_message(convo.id, users["alice"], MessagePayload(text="once"), client_message_id="tok-1")

    assert retry.id == first.id
    page = await chat.list_messages(convo.id, users["bob"])
    assert [m.text for m in page.items] == ["once"]


async def test_seq_contention_is_retried(services, users, monkeypatch):
    conversations, chat = services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])
    original = MessageRepository.insert_next
    calls = {"n": 0}

    async def flaky(self, *args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise DuplicateKeyError("E11000 duplicate key error")
        return await original(self, *args, **kwargs)

    monkeypatch.setattr(MessageRepository, "insert_next", flaky)
    message = await chat.send_message(convo.id, users["alice"], MessagePayload(text="eventually"))

    assert calls["n"] == 2
    assert message.seq == 1


async def test_seq_contention_exhaustion_leaves_no_message(services, users, monkeypatch):
    conversations, chat = services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])
    original = MessageRepository.insert_next

    async def always_taken(self, *args, **kwargs):
        raise DuplicateKeyError("E11000 duplicate key error")

    monkeypatch.setattr(MessageRepository, "insert_next", always_taken)
    with pytest.raises(Transient):
        await chat.send_message(convo.id, users["alice"], MessagePayload(text="never"))

    monkeypatch.setattr(MessageRepository, "insert_next", original)
    page = await chat.list_messages(convo.id, users["alice"])
    assert page.items == []


async def test_list_since_is_stable(services, users):
    conversations, chat = services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])
    for i in range(5):
        await chat.send_message(convo.id, users["alice"], MessagePayload(text=f"m{i}"))

    first = await chat.list_messages(convo.id, users["bob"], since=2)
    await chat.send_message(convo.id, users["bob"], MessagePayload(text="late"))
    second = await chat.list_messages(convo.id, users["bob"], since=2)

    assert [m.id for m in second.items[: len(first.items)]] == [m.id for m in first.items]
    assert [m.seq for m in second.items] == [3, 4, 5, 6]
    assert second.next_cursor == 6


async def test_list_before_pages_history(services, users):
    conversations, chat = services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])
    for i in range(7):
        await chat.send_message(convo.id, users["alice"], MessagePayload(text=f"m{i}"))

    page = await chat.list_messages(convo.id, users["alice"], before=8, limit=3)
    assert [m.seq for m in page.items] == [5, 6, 7]
    assert page.next_cursor == 5

    older = await chat.list_messages(convo.id, users["alice"], before=page.next_cursor, limit=3)
    assert [m.seq for m in older.items] == [2, 3, 4]
