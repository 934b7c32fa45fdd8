"""Tests for room-scoped fan-out, broadcasts and dead-connection pruning."""

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from parley.auth import JWTAuthenticator
from parley.connection import Connection
from parley.dispatcher import EventDispatcher
from parley.events import GlobalBroadcast, MessageDeleted, UserTyping
from parley.rooms import RoomMembership
from parley.sessions import SessionRegistry

pytestmark = pytest.mark.anyio

EVENT_COUNT = 20
BROADCAST_USERS = {"alice": "c1", "bob": "c1", "carol": "c2", "dave": "c2", "erin": "c3"}


@pytest.fixture
def rooms() -> RoomMembership:
    return RoomMembership()


@pytest.fixture
def sessions(authenticator: JWTAuthenticator) -> SessionRegistry:
    return SessionRegistry(authenticator)


@pytest.fixture
def dead_reports() -> list[Connection]:
    return []


@pytest.fixture
def dispatcher(
    rooms: RoomMembership, sessions: SessionRegistry, dead_reports: list[Connection]
) -> EventDispatcher:
    return EventDispatcher(rooms, sessions, on_dead=dead_reports.append)


def typing_in(chat_id: str) -> UserTyping:
    return UserTyping(chat_id=chat_id, user_id="alice", user_name="Alice")


class TestPublish:
    async def test_room_isolation(
        self, dispatcher: EventDispatcher, rooms: RoomMembership
    ) -> None:
        in_a, in_b = Connection(), Connection()
        await rooms.join(in_a, "a")
        await rooms.join(in_b, "b")

        delivered = await dispatcher.publish("a", typing_in("a"))

        assert delivered == 1
        assert in_a.pending() == [typing_in("a")]
        assert in_b.pending() == []

    async def test_exclude_skips_sender(
        self, dispatcher: EventDispatcher, rooms: RoomMembership
    ) -> None:
        sender, receiver = Connection(), Connection()
        await rooms.join(sender, "c1")
        await rooms.join(receiver, "c1")

        await dispatcher.publish("c1", typing_in("c1"), exclude=sender)

        assert sender.pending() == []
        assert receiver.pending() == [typing_in("c1")]

    async def test_empty_room(self, dispatcher: EventDispatcher) -> None:
        assert await dispatcher.publish("nobody", typing_in("nobody")) == 0

    async def test_per_room_order(
        self, dispatcher: EventDispatcher, rooms: RoomMembership
    ) -> None:
        first, second = Connection(), Connection()
        await rooms.join(first, "c1")
        await rooms.join(second, "c1")

        for n in range(EVENT_COUNT):
            await dispatcher.publish("c1", MessageDeleted(chat_id="c1", message_id=f"m{n}"))

        expected = [f"m{n}" for n in range(EVENT_COUNT)]
        assert [e.message_id for e in first.pending()] == expected
        assert [e.message_id for e in second.pending()] == expected


class TestDeliveryFailure:
    async def test_dead_connection_is_pruned(
        self,
        dispatcher: EventDispatcher,
        rooms: RoomMembership,
        dead_reports: list[Connection],
    ) -> None:
        healthy, dead = Connection(), Connection()
        await rooms.join(healthy, "c1")
        await rooms.join(dead, "c1")
        await rooms.join(dead, "c2")
        dead.mark_dead()

        delivered = await dispatcher.publish("c1", typing_in("c1"))

        assert delivered == 1
        assert healthy.pending() == [typing_in("c1")]
        assert rooms.rooms_of(dead) == set()
        assert dead_reports == [dead]

    async def test_full_outbox_does_not_affect_others(
        self,
        dispatcher: EventDispatcher,
        rooms: RoomMembership,
        dead_reports: list[Connection],
    ) -> None:
        healthy, slow = Connection(), Connection(buffer_size=1)
        await rooms.join(healthy, "c1")
        await rooms.join(slow, "c1")

        first = MessageDeleted(chat_id="c1", message_id="m1")
        second = MessageDeleted(chat_id="c1", message_id="m2")
        assert await dispatcher.publish("c1", first) == 2
        assert await dispatcher.publish("c1", second) == 1

        assert healthy.pending() == [first, second]
        assert slow.pending() == [first]
        assert not slow.alive
        assert not rooms.is_member(slow, "c1")
        assert dead_reports == [slow]

    async def test_send_to_connection_reports_failure(
        self, dispatcher: EventDispatcher
    ) -> None:
        connection = Connection()
        connection.mark_dead()

        assert not await dispatcher.send_to_connection(connection, typing_in("c1"))


class TestBroadcast:
    async def test_reaches_every_session_regardless_of_rooms(
        self,
        dispatcher: EventDispatcher,
        rooms: RoomMembership,
        sessions: SessionRegistry,
        issue,
    ) -> None:
        connections: dict[str, Connection] = {}
        for user_id, chat_id in BROADCAST_USERS.items():
            connection = Connection()
            await sessions.authenticate(connection, issue(user_id))
            await rooms.join(connection, chat_id)
            connections[user_id] = connection

        event = GlobalBroadcast(sender_name="Manager", message="All hands at 3")
        delivered = await dispatcher.broadcast(event)

        assert delivered == len(BROADCAST_USERS)
        for connection in connections.values():
            assert connection.pending() == [event]

    async def test_reaches_sessions_without_rooms(
        self, dispatcher: EventDispatcher, sessions: SessionRegistry, issue
    ) -> None:
        connection = Connection()
        await sessions.authenticate(connection, issue("alice"))

        await dispatcher.broadcast(GlobalBroadcast(sender_name="M", message="hi"))

        assert len(connection.pending()) == 1

    async def test_send_to_user_covers_all_devices(
        self, dispatcher: EventDispatcher, sessions: SessionRegistry, issue
    ) -> None:
        phone, laptop, other = Connection(), Connection(), Connection()
        await sessions.authenticate(phone, issue("alice"))
        await sessions.authenticate(laptop, issue("alice"))
        await sessions.authenticate(other, issue("bob"))

        assert await dispatcher.send_to_user("alice", typing_in("c1")) == 2
        assert other.pending() == []


class TestDispatcherMetrics:
    async def test_counts_deliveries_and_failures(
        self, rooms: RoomMembership, sessions: SessionRegistry
    ) -> None:
        reader = InMemoryMetricReader()
        dispatcher = EventDispatcher(
            rooms, sessions, meter_provider=MeterProvider(metric_readers=[reader])
        )
        healthy, dead = Connection(), Connection()
        await rooms.join(healthy, "c1")
        await rooms.join(dead, "c1")
        dead.mark_dead()

        await dispatcher.publish("c1", typing_in("c1"))

        totals: dict[str, int] = {}
        data = reader.get_metrics_data()
        assert data is not None
        for resource_metric in data.resource_metrics:
            for scope_metric in resource_metric.scope_metrics:
                for metric in scope_metric.metrics:
                    for point in metric.data.data_points:
                        assert point.attributes["parley.event"] == "user-typing"
                        totals[metric.name] = point.value
        assert totals == {"parley.events.delivered": 1, "parley.delivery.failures": 1}
