"""Tests for the write-then-publish chat service."""

import pytest

from parley.auth import Identity, JWTAuthenticator
from parley.config import HubConfig
from parley.connection import Connection
from parley.errors import (
    NotFoundError,
    NotParticipantError,
    PermissionDenied,
    ProtocolError,
    StorageError,
)
from parley.events import (
    ChatCleared,
    ChatDeleted,
    GlobalBroadcast,
    MessageDeleted,
    MessagesRead,
    MessageUpdated,
    NewMessage,
    ReceiveMessage,
)
from parley.hub import RealtimeHub
from parley.store import InMemoryChatDirectory, InMemoryMessageStore

from conftest import drain

pytestmark = pytest.mark.anyio

ALICE = Identity("alice", name="Alice")
BOB = Identity("bob", name="Bob")
DAVE = Identity("dave", name="Dave")
MANAGER = Identity("boss", role="manager", name="Boss")


class FailingStore(InMemoryMessageStore):
    async def create_message(self, *args, **kwargs):
        msg = "database unavailable"
        raise StorageError(msg)


class FailingReactionStore(InMemoryMessageStore):
    async def toggle_reaction(self, *args, **kwargs):
        msg = "reactions unavailable"
        raise StorageError(msg)


@pytest.fixture
async def room(hub: RealtimeHub, connect):
    """Alice and Bob subscribed to c1, status events already drained."""
    alice = await connect("alice")
    bob = await connect("bob")
    await hub.rooms.join(alice, "c1")
    await hub.rooms.join(bob, "c1")
    drain(alice)
    drain(bob)
    return alice, bob


class TestSendMessage:
    async def test_persists_then_publishes(self, hub: RealtimeHub, room, store) -> None:
        alice, bob = room

        message = await hub.service.send_message(ALICE, "c1", "hello", exclude=alice)

        assert (await store.get_message("c1", message.id)).content == "hello"
        assert drain(alice) == []
        [event] = drain(bob)
        assert isinstance(event, ReceiveMessage)
        assert event.as_message() == message
        assert message.is_read_by("alice")

    async def test_store_failure_publishes_nothing(
        self, authenticator: JWTAuthenticator, directory: InMemoryChatDirectory, issue
    ) -> None:
        hub = RealtimeHub(authenticator, FailingStore(), directory, HubConfig())

        bob = Connection()
        await hub.connect(bob, issue("bob"))
        await hub.rooms.join(bob, "c1")
        drain(bob)

        with pytest.raises(StorageError, match="unavailable"):
            await hub.service.send_message(ALICE, "c1", "hello")

        assert drain(bob) == []

    async def test_empty_content_publishes_nothing(self, hub: RealtimeHub, room) -> None:
        _, bob = room

        with pytest.raises(StorageError, match="required"):
            await hub.service.send_message(ALICE, "c1", "   ")

        assert drain(bob) == []

    async def test_non_participant_is_rejected(self, hub: RealtimeHub, room) -> None:
        _, bob = room

        with pytest.raises(NotParticipantError):
            await hub.service.send_message(DAVE, "c1", "let me in")

        assert drain(bob) == []

    async def test_participant_notifications(
        self,
        authenticator: JWTAuthenticator,
        store: InMemoryMessageStore,
        directory: InMemoryChatDirectory,
        issue,
    ) -> None:
        hub = RealtimeHub(
            authenticator,
            store,
            directory,
            HubConfig(presence_grace_s=0, participant_notifications=True),
        )
        in_room, elsewhere, outsider = Connection(), Connection(), Connection()
        await hub.connect(in_room, issue("bob"))
        await hub.connect(elsewhere, issue("carol"))
        await hub.connect(outsider, issue("dave"))
        await hub.rooms.join(in_room, "c1")
        for connection in (in_room, elsewhere, outsider):
            drain(connection)

        await hub.service.send_message(ALICE, "c1", "hello")

        assert [type(e) for e in drain(in_room)] == [ReceiveMessage]
        assert [type(e) for e in drain(elsewhere)] == [NewMessage]
        assert drain(outsider) == []


class TestUpdateMessage:
    async def test_edit_publishes_update(self, hub: RealtimeHub, room) -> None:
        _, bob = room
        message = await hub.service.send_message(ALICE, "c1", "helo")
        drain(bob)

        edited = await hub.service.update_message(ALICE, "c1", message.id, content="hello")

        assert edited.edited_at is not None
        [event] = drain(bob)
        assert isinstance(event, MessageUpdated)
        assert event.content == "hello"

    async def test_only_sender_may_edit(self, hub: RealtimeHub, room) -> None:
        _, bob = room
        message = await hub.service.send_message(ALICE, "c1", "hello")
        drain(bob)

        with pytest.raises(PermissionDenied):
            await hub.service.update_message(BOB, "c1", message.id, content="mine now")

        assert drain(bob) == []

    async def test_reaction_toggles(self, hub: RealtimeHub, room) -> None:
        message = await hub.service.send_message(ALICE, "c1", "hello")

        added = await hub.service.update_message(BOB, "c1", message.id, emoji="+1")
        removed = await hub.service.update_message(BOB, "c1", message.id, emoji="+1")

        assert [(r.emoji, r.user_id) for r in added.reactions] == [("+1", "bob")]
        assert removed.reactions == []

    async def test_removed_participant_changes_nothing(
        self, hub: RealtimeHub, room, store, directory: InMemoryChatDirectory
    ) -> None:
        _, bob = room
        message = await hub.service.send_message(ALICE, "c1", "original")
        drain(bob)
        directory.add_chat("c1", {"bob", "carol"})

        with pytest.raises(NotParticipantError):
            await hub.service.update_message(
                ALICE, "c1", message.id, content="edited", emoji="+1"
            )

        assert (await store.get_message("c1", message.id)).content == "original"
        assert drain(bob) == []

    async def test_edit_is_published_when_reaction_fails(
        self, authenticator: JWTAuthenticator, directory: InMemoryChatDirectory, issue
    ) -> None:
        hub = RealtimeHub(
            authenticator, FailingReactionStore(), directory, HubConfig(presence_grace_s=0)
        )
        bob = Connection()
        await hub.connect(bob, issue("bob"))
        await hub.rooms.join(bob, "c1")
        message = await hub.service.send_message(ALICE, "c1", "helo")
        drain(bob)

        with pytest.raises(StorageError, match="reactions"):
            await hub.service.update_message(
                ALICE, "c1", message.id, content="hello", emoji="+1"
            )

        [event] = drain(bob)
        assert isinstance(event, MessageUpdated)
        assert event.content == "hello"

    async def test_requires_an_action(self, hub: RealtimeHub, room) -> None:
        with pytest.raises(ProtocolError, match="No update action"):
            await hub.service.update_message(ALICE, "c1", "m1")

    async def test_unknown_message(self, hub: RealtimeHub, room) -> None:
        with pytest.raises(NotFoundError):
            await hub.service.update_message(ALICE, "c1", "missing", content="x")


class TestDeleteAndRead:
    async def test_soft_delete_publishes(self, hub: RealtimeHub, room) -> None:
        _, bob = room
        message = await hub.service.send_message(ALICE, "c1", "oops")
        drain(bob)

        deleted = await hub.service.delete_message(ALICE, "c1", message.id)

        assert deleted.is_deleted
        assert drain(bob) == [MessageDeleted(chat_id="c1", message_id=message.id)]

    async def test_mark_read_publishes_known_ids(self, hub: RealtimeHub, room) -> None:
        alice, _ = room
        message = await hub.service.send_message(BOB, "c1", "read me")
        drain(alice)

        marked = await hub.service.mark_read(ALICE, "c1", [message.id, "unknown"])

        assert marked == [message.id]
        assert drain(alice) == [
            MessagesRead(chat_id="c1", reader_id="alice", message_ids=[message.id])
        ]

    async def test_mark_read_is_idempotent_in_store(
        self, hub: RealtimeHub, room, store: InMemoryMessageStore
    ) -> None:
        message = await hub.service.send_message(BOB, "c1", "read me")

        await hub.service.mark_read(ALICE, "c1", [message.id])
        await hub.service.mark_read(ALICE, "c1", [message.id])

        stored = await store.get_message("c1", message.id)
        assert [entry.user_id for entry in stored.read_by] == ["bob", "alice"]

    async def test_mark_read_requires_ids(self, hub: RealtimeHub, room) -> None:
        with pytest.raises(ProtocolError):
            await hub.service.mark_read(ALICE, "c1", [])

    async def test_mark_read_with_only_unknown_ids(self, hub: RealtimeHub, room) -> None:
        alice, bob = room

        assert await hub.service.mark_read(ALICE, "c1", ["unknown"]) == []
        assert drain(bob) == []


class TestManagerActions:
    async def test_broadcast_requires_manager(self, hub: RealtimeHub, room) -> None:
        with pytest.raises(PermissionDenied):
            await hub.service.broadcast(ALICE, "hi all")

    async def test_broadcast_rejects_empty_text(self, hub: RealtimeHub) -> None:
        with pytest.raises(ProtocolError):
            await hub.service.broadcast(MANAGER, "  ")

    async def test_broadcast_reaches_everyone(
        self, hub: RealtimeHub, room, connect
    ) -> None:
        alice, bob = room
        loner = await connect("erin")
        drain(alice)
        drain(bob)

        event = await hub.service.broadcast(MANAGER, "hi all")

        assert event.sender_name == "Boss"
        for connection in (alice, bob, loner):
            assert drain(connection, GlobalBroadcast) == [event]

    async def test_clear_chat(self, hub: RealtimeHub, room, store) -> None:
        _, bob = room
        await hub.service.send_message(ALICE, "c1", "one")
        await hub.service.send_message(ALICE, "c1", "two")
        drain(bob)

        assert await hub.service.clear_chat(MANAGER, "c1") == 2

        [event] = drain(bob)
        assert isinstance(event, ChatCleared)
        assert event.cleared_by == "boss"
        assert await store.messages_since("c1") == []

    async def test_delete_chat_reaches_participants_outside_room(
        self, hub: RealtimeHub, room, connect, directory: InMemoryChatDirectory
    ) -> None:
        _, bob = room
        carol = await connect("carol")
        drain(bob)

        await hub.service.delete_chat(MANAGER, "c1")

        expected = ChatDeleted(chat_id="c1", deleted_by="boss")
        assert drain(bob) == [expected]
        assert drain(carol, ChatDeleted) == [expected]
        assert not await directory.is_participant("c1", "bob")
        assert hub.rooms.members("c1") == []
        assert hub.rooms.rooms_of(bob) == set()

    async def test_deleted_chat_gets_no_further_events(
        self, hub: RealtimeHub, room, directory: InMemoryChatDirectory
    ) -> None:
        _, bob = room
        await hub.service.delete_chat(MANAGER, "c1")
        drain(bob)
        directory.add_chat("c1", {"alice", "bob"})

        await hub.service.send_message(ALICE, "c1", "chat id reused")

        assert drain(bob, ReceiveMessage) == []

    async def test_delete_unknown_chat(self, hub: RealtimeHub) -> None:
        with pytest.raises(NotFoundError):
            await hub.service.delete_chat(MANAGER, "missing")

    async def test_employee_cannot_clear(self, hub: RealtimeHub) -> None:
        with pytest.raises(PermissionDenied):
            await hub.service.clear_chat(ALICE, "c1")
