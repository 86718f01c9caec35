import asyncio

import pytest

from conftest import FakeConnection
from mediajobs.reporter.bridge import NotificationBridge, redact


@pytest.mark.asyncio
async def test_events_reach_only_the_target_user(bridge):
    alice, bob = FakeConnection(), FakeConnection()
    bridge.register("alice", alice)
    bridge.register("bob", bob)

    delivered = await bridge.publish("alice", "thumbnail-updated", {"jobId": "j1"})

    assert delivered == 1
    assert alice.messages == [{"jobId": "j1", "eventType": "thumbnail-updated"}]
    assert bob.messages == []


@pytest.mark.asyncio
async def test_all_connections_of_a_user_receive_the_event(bridge):
    tabs = [FakeConnection() for _ in range(3)]
    for tab in tabs:
        bridge.register("alice", tab)

    assert await bridge.publish("alice", "duration-updated", {"jobId": "j1"}) == 3
    assert all(len(tab.messages) == 1 for tab in tabs)
    assert bridge.connection_count("alice") == 3


@pytest.mark.asyncio
async def test_event_for_disconnected_user_is_dropped(bridge):
    assert await bridge.publish("nobody", "duration-updated", {"jobId": "j1"}) == 0


@pytest.mark.asyncio
async def test_stale_connection_is_removed_and_others_still_served(bridge):
    healthy, broken = FakeConnection(), FakeConnection(fail=True)
    bridge.register("alice", healthy)
    bridge.register("alice", broken)

    delivered = await bridge.publish("alice", "job-progress", {"progress": 10})

    assert delivered == 1
    assert len(healthy.messages) == 1
    assert bridge.connection_count("alice") == 1
    assert bridge.connection_count() == 1


@pytest.mark.asyncio
async def test_secrets_are_never_pushed(bridge):
    connection = FakeConnection()
    bridge.register("alice", connection)

    await bridge.publish(
        "alice",
        "thumbnail-updated",
        {
            "jobId": "j1",
            "result": {"thumbnailUrl": "private:/m1_thumbnail.jpg", "signedUrl": "https://cdn/x?token=abc"},
            "token": "abc",
            "secret": "s3cr3t",
        },
    )

    [message] = connection.messages
    assert message == {
        "jobId": "j1",
        "result": {"thumbnailUrl": "private:/m1_thumbnail.jpg"},
        "eventType": "thumbnail-updated",
    }


def test_redact_walks_nested_lists():
    payload = {"items": [{"token": "t", "name": "a"}], "authorization": "Bearer x"}

    assert redact(payload) == {"items": [{"name": "a"}]}


@pytest.mark.asyncio
async def test_unregister_stops_delivery(bridge):
    connection = FakeConnection()
    bridge.register("alice", connection)
    bridge.unregister(connection)
    bridge.unregister(connection)

    assert await bridge.publish("alice", "duration-updated", {}) == 0
    assert bridge.connection_count() == 0


@pytest.mark.asyncio
async def test_reregistering_moves_connection_to_new_user(bridge):
    connection = FakeConnection()
    bridge.register("alice", connection)
    bridge.register("bob", connection)

    assert await bridge.publish("alice", "duration-updated", {}) == 0
    assert await bridge.publish("bob", "duration-updated", {}) == 1


@pytest.mark.asyncio
async def test_reply_targets_a_single_connection(bridge):
    first, second = FakeConnection(), FakeConnection()
    bridge.register("alice", first)
    bridge.register("alice", second)

    assert await bridge.reply(first, "job-status", {"jobId": "j1", "status": "queued"})
    assert first.messages == [{"jobId": "j1", "status": "queued", "eventType": "job-status"}]
    assert second.messages == []


@pytest.mark.asyncio
async def test_reply_to_unregistered_connection_is_not_sent(bridge):
    connection = FakeConnection()

    assert not await bridge.reply(connection, "job-status", {})
    assert connection.messages == []


@pytest.mark.asyncio
async def test_concurrent_publishes_do_not_interleave_frames():
    class SlowConnection(FakeConnection):
        def __init__(self):
            super().__init__()
            self.active = 0
            self.max_active = 0

        async def send_text(self, data):
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            await asyncio.sleep(0.001)
            await super().send_text(data)
            self.active -= 1

    bridge = NotificationBridge()
    connection = SlowConnection()
    bridge.register("alice", connection)

    await asyncio.gather(
        *(bridge.publish("alice", "job-progress", {"progress": n}) for n in range(10))
    )

    assert connection.max_active == 1
    assert len(connection.messages) == 10
