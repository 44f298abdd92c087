import asyncio

import pytest

from app.events.bus import EventBus
from app.events.schemas import ActivityPing, Channels, Event, Notification, TodoChange

from conftest import make_todo


class TestDelivery:

    @pytest.mark.asyncio
    async def test_subscribers_receive_published_events(self, bus):
        received = []
        await bus.subscribe(Channels.todo_updated("user-1"), received.append)

        delivered = await bus.publish_todo_event("updated", make_todo("t1"), "user-1")

        assert delivered == 1
        assert len(received) == 1
        event = received[0]
        assert isinstance(event, Event)
        assert event.channel == "todo:updated:user-1"
        assert isinstance(event.payload, TodoChange)
        assert event.payload.todo_id == "t1"

    @pytest.mark.asyncio
    async def test_async_handlers_run_in_background(self, bus):
        received = []

        async def handler(event):
            received.append(event.payload.kind)

        await bus.subscribe(Channels.todo_created("user-1"), handler)
        delivered = await bus.publish_todo_event("created", make_todo("t1"), "user-1")
        assert delivered == 1

        await bus.drain()
        assert received == ["created"]

    @pytest.mark.asyncio
    async def test_publish_does_not_wait_for_slow_handlers(self, bus):
        finished = []

        async def slow(event):
            await asyncio.sleep(1.0)
            finished.append(event.channel)

        await bus.subscribe(Channels.todo_created("user-1"), slow)

        loop = asyncio.get_running_loop()
        started = loop.time()
        delivered = await bus.publish_todo_event("created", make_todo("t1"), "user-1")

        assert delivered == 1
        assert loop.time() - started < 0.2
        assert finished == []

    @pytest.mark.asyncio
    async def test_failing_async_handler_is_logged(self, bus, caplog):
        async def broken(event):
            raise RuntimeError("async boom")

        await bus.subscribe(Channels.GLOBAL_NOTIFICATIONS, broken)
        await bus.publish_notification("hello")
        await bus.drain()

        assert "async boom" in caplog.text

    @pytest.mark.asyncio
    async def test_pattern_subscription_fans_in_all_kinds(self, bus):
        kinds = []
        await bus.subscribe_pattern(
            Channels.todo_pattern("user-1"), lambda e: kinds.append(e.payload.kind)
        )

        for kind in ("created", "updated", "deleted"):
            await bus.publish_todo_event(kind, make_todo("t1"), "user-1")
        await bus.publish_todo_event("created", make_todo("t2"), "user-2")
        await bus.publish_user_activity("user-1", "login")

        assert kinds == ["created", "updated", "deleted"]

    @pytest.mark.asyncio
    async def test_late_subscriber_misses_earlier_events(self, bus):
        await bus.publish_notification("maintenance at noon")

        received = []
        await bus.subscribe(Channels.GLOBAL_NOTIFICATIONS, received.append)
        assert received == []

        await bus.publish_notification("done", level="success")
        assert len(received) == 1
        assert received[0].payload == Notification(message="done", level="success")

    @pytest.mark.asyncio
    async def test_activity_payload(self, bus):
        received = []
        await bus.subscribe(Channels.user_activity("user-1"), received.append)

        await bus.publish_user_activity("user-1", "todo_created", {"todo_id": "t1"})

        payload = received[0].payload
        assert isinstance(payload, ActivityPing)
        assert payload.metadata == {"todo_id": "t1"}


class TestIsolation:

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self, bus, caplog):
        received = []

        def broken(event):
            raise RuntimeError("boom")

        channel = Channels.todo_deleted("user-1")
        await bus.subscribe(channel, broken)
        await bus.subscribe(channel, received.append)

        delivered = await bus.publish_todo_event("deleted", make_todo("t1"), "user-1")

        assert delivered == 1
        assert len(received) == 1
        assert "boom" in caplog.text

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, bus):
        received = []
        subscription = await bus.subscribe(Channels.GLOBAL_NOTIFICATIONS, received.append)

        await bus.unsubscribe(subscription)
        delivered = await bus.publish_notification("hello")

        assert delivered == 0
        assert received == []

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self):
        bus = EventBus()
        assert await bus.publish_notification("nobody listens") == 0
        assert not bus.is_distributed
        await bus.close()


def test_event_round_trips_through_json():
    event = Event(
        channel="todo:created:user-1",
        payload={"kind": "created", "owner_id": "user-1", "todo": make_todo("t1")},
    )
    decoded = Event.model_validate_json(event.model_dump_json())
    assert decoded == event
