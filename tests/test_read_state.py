import pytest

from relaychat.errors import Unauthorized
from relaychat.repositories.read_state_repository import CursorReadState, ReadBySetState
from relaychat.schemas.message import MessagePayload
from relaychat.services.delivery import DeliveryBus
from relaychat.utils.dependencies import build_services
from relaychat.utils.ids import to_object_id


pytestmark = pytest.mark.anyio


@pytest.fixture(params=["cursor", "read_by"])
def backend_services(request, db, bus, settings):
    """(ConversationService, ChatService) for each read-state backend."""
    tuned = settings.model_copy(update={"read_state_backend": request.param})
    return build_services(db, DeliveryBus(bus), tuned)


async def test_scenario_send_then_read(backend_services, users):
    conversations, chat = backend_services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])

    await chat.send_message(convo.id, users["alice"], MessagePayload(text="hi"))

    assert await chat.unread_count(convo.id, users["bob"]) == 1
    assert await chat.unread_count(convo.id, users["alice"]) == 0

    assert await chat.mark_read(convo.id, users["bob"]) == 0
    assert await chat.unread_count(convo.id, users["bob"]) == 0
    assert await chat.unread_count(convo.id, users["alice"]) == 0


async def test_mark_read_is_idempotent(backend_services, users):
    conversations, chat = backend_services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])
    await chat.send_message(convo.id, users["alice"], MessagePayload(text="one"))
    await chat.send_message(convo.id, users["alice"], MessagePayload(text="two"))

    await chat.mark_read(convo.id, users["bob"])
    first = await chat.list_messages(convo.id, users["alice"])
    await chat.mark_read(convo.id, users["bob"])
    second = await chat.list_messages(convo.id, users["alice"])

    assert [m.read_by for m in first.items] == [[users["bob"]], [users["bob"]]]
    assert [m.read_by for m in second.items] == [m.read_by for m in first.items]


async def test_messages_after_mark_read_stay_unread(backend_services, users):
    conversations, chat = backend_services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])
    await chat.send_message(convo.id, users["alice"], MessagePayload(text="old"))
    await chat.mark_read(convo.id, users["bob"])

    await chat.send_message(convo.id, users["alice"], MessagePayload(text="new"))
    await chat.send_message(convo.id, users["bob"], MessagePayload(text="mine"))

    assert await chat.unread_count(convo.id, users["bob"]) == 1
    assert await chat.unread_count(convo.id, users["alice"]) == 1


async def test_unread_count_matches_stored_messages(backend_services, users, db):
    conversations, chat = backend_services
    group = await conversations.create_group(users["alice"], [users["bob"], users["carol"]], "Trip")
    senders = [users["alice"], users["bob"], users["carol"], users["bob"], users["alice"]]
    for i, sender in enumerate(senders):
        await chat.send_message(group.id, sender, MessagePayload(text=f"m{i}"))
        if i == 2:
            await chat.mark_read(group.id, users["carol"])

    page = await chat.list_messages(group.id, users["carol"])
    expected = sum(1 for m in page.items if m.sender_id != users["carol"] and users["carol"] not in m.read_by)
    assert await chat.unread_count(group.id, users["carol"]) == expected == 2


async def test_unread_totals_skip_read_conversations(backend_services, users):
    conversations, chat = backend_services
    with_bob = await conversations.create_or_get_direct(users["alice"], users["bob"])
    with_carol = await conversations.create_or_get_direct(users["alice"], users["carol"])
    await chat.send_message(with_bob.id, users["bob"], MessagePayload(text="ping"))
    await chat.send_message(with_carol.id, users["carol"], MessagePayload(text="one"))
    await chat.send_message(with_carol.id, users["carol"], MessagePayload(text="two"))
    await chat.mark_read(with_bob.id, users["alice"])

    assert await chat.unread_totals(users["alice"]) == {with_carol.id: 2}


async def test_mark_read_by_non_participant(backend_services, users):
    conversations, chat = backend_services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])
    with pytest.raises(Unauthorized):
        await chat.mark_read(convo.id, users["carol"])


async def test_snapshot_reports_unread_and_latest(backend_services, users):
    conversations, chat = backend_services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])
    await chat.send_message(convo.id, users["alice"], MessagePayload(text="hi"))
    latest = await chat.send_message(convo.id, users["alice"], MessagePayload(file_ref="s3://bucket/report.pdf"))

    snapshot = await chat.snapshot(users["bob"])

    assert len(snapshot.items) == 1
    item = snapshot.items[0]
    assert item.unread_count == 2
    assert item.conversation.last_message_id == latest.id
    assert item.last_message.text == "File"
    assert snapshot.next_cursor is None


async def test_backend_selection(db, settings):
    _, chat = build_services(db, DeliveryBus(None), settings)
    assert isinstance(chat._read_state, CursorReadState)
    _, chat = build_services(db, DeliveryBus(None), settings.model_copy(update={"read_state_backend": "read_by"}))
    assert isinstance(chat._read_state, ReadBySetState)


async def test_cursor_never_moves_back(db, users, services, monkeypatch):
    conversations, chat = services
    convo = await conversations.create_or_get_direct(users["alice"], users["bob"])
    await chat.send_message(convo.id, users["alice"], MessagePayload(text="a"))
    await chat.send_message(convo.id, users["alice"], MessagePayload(text="b"))
    tracker = CursorReadState(db)
    oid = to_object_id(convo.id)

    assert await tracker.mark_read(oid, users["bob"]) == 2

    # a slower request that observed an older latest seq
    async def stale_latest(self, conversation_id):
        return 1

    monkeypatch.setattr(CursorReadState, "_latest_seq", stale_latest)
    assert await tracker.mark_read(oid, users["bob"]) == 2
    assert await tracker.last_read_seq(oid, users["bob"]) == 2
