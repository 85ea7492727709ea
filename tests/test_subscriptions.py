import asyncio

import pytest

from conftest import FakeFeed, insert_event, message, settle
from services.messages import subscriptions
from services.messages.feed import FeedEvent, FeedEventType, FeedUnavailable
from services.messages.subscriptions import SubscriptionManager, SubscriptionState
from shared.chat.errors import NotFoundError, TransientError
from shared.chat.messages import Channel, SyncStatus
from shared.config.sync import NotificationConfig

GENERAL = Channel(channel_id="c1", name="general")


@pytest.fixture
def changes():
    return []


@pytest.fixture
async def manager(api, feed, viewer, presenter, failures, changes):
    manager = SubscriptionManager(
        api,
        feed,
        user=viewer,
        presenter=presenter,
        ready_timeout=0.5,
        on_change=lambda channel_id, snapshot: changes.append((channel_id, snapshot)),
        on_failure=failures.append,
    )
    yield manager
    await manager.close()


def contents(manager):
    return [e.message.content for e in manager.store.snapshot()]


async def wait_until(predicate, rounds=200):
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition never met")


# ----------------------------------------------------------------------
# Open
# ----------------------------------------------------------------------

async def test_open_loads_snapshot(manager, server, feed, changes):
    server.add("m1", "first", created=1)
    server.add("m2", "second", created=2)

    store = await manager.open(GENERAL)

    assert manager.state == SubscriptionState.OPEN
    assert store is manager.store
    assert contents(manager) == ["first", "second"]
    assert feed.latest.channel_id == "c1"
    assert changes[-1][0] == "c1"


async def test_events_during_open_are_replayed(manager, server, feed):
    server.add("m1", "first", created=1)
    server.add("m2", "doomed", created=2)
    server.hold("GET")

    opening = asyncio.ensure_future(manager.open(GENERAL))
    await server.wait_held("GET")
    assert manager.state == SubscriptionState.OPENING

    # Changes made after the pull was answered, delivered before it resolved.
    feed.latest.push(insert_event("m3", "third", created=3))
    feed.latest.push(FeedEvent(type=FeedEventType.DELETE, message_id="m2"))
    feed.latest.push(
        FeedEvent(
            type=FeedEventType.UPDATE,
            message_id="m1",
            message=message("m1", "first (edited)", created=1, updated=50),
        )
    )
    await settle()
    assert manager.store.snapshot() == ()

    server.release("GET")
    await opening

    assert manager.state == SubscriptionState.OPEN
    assert contents(manager) == ["first (edited)", "third"]


async def test_open_proceeds_when_feed_is_slow(api, viewer, server):
    feed = FakeFeed(ready=False)
    manager = SubscriptionManager(api, feed, user=viewer, ready_timeout=0.05)
    server.add("m1", "first")

    await manager.open(GENERAL)

    assert manager.state == SubscriptionState.OPEN
    assert contents(manager) == ["first"]
    await manager.close()


async def test_failed_pull_closes_channel(manager, server, feed):
    server.fail_next("GET", 500)

    with pytest.raises(TransientError):
        await manager.open(GENERAL)

    assert manager.state == SubscriptionState.CLOSED
    assert manager.store is None
    assert feed.latest.closed


async def test_feed_failure_while_opening_raises(manager, feed):
    feed.initial_events.append(FeedUnavailable("forbidden", status_code=403))

    with pytest.raises(TransientError):
        await manager.open(GENERAL)

    assert manager.state == SubscriptionState.CLOSED


# ----------------------------------------------------------------------
# Live events
# ----------------------------------------------------------------------

async def test_remote_changes_are_applied(manager, server, feed):
    server.add("m1", "first", created=1)
    await manager.open(GENERAL)

    feed.latest.push(insert_event("m2", "second", created=2))
    feed.latest.push(insert_event("m2", "second", created=2))
    await settle()
    assert contents(manager) == ["first", "second"]

    feed.latest.push(FeedEvent(type=FeedEventType.DELETE, message_id="m1"))
    await settle()
    assert contents(manager) == ["second"]

    # Redelivered insert of a removed message stays gone.
    feed.latest.push(insert_event("m1", "first", created=1))
    await settle()
    assert contents(manager) == ["second"]


async def test_insert_notifies_with_channel_title(manager, feed, presenter):
    await manager.open(GENERAL)

    feed.latest.push(insert_event("m7", "ping", sender_name="Bob"))
    feed.latest.push(insert_event("m7", "ping", sender_name="Bob"))
    feed.latest.push(insert_event("m8", "mine", sender="u1"))
    await settle()
    await manager.dispatcher.drain()

    assert presenter.shown == [("#general - Bob", "ping", "msg-m7")]


async def test_notifications_can_be_disabled(api, feed, viewer, presenter):
    manager = SubscriptionManager(
        api,
        feed,
        user=viewer,
        presenter=presenter,
        notifications=NotificationConfig(enabled=False),
    )
    await manager.open(GENERAL)

    feed.latest.push(insert_event("m7"))
    await settle()

    assert manager.dispatcher is None
    assert presenter.shown == []
    await manager.close()


async def test_resync_reconciles_with_server(manager, server, feed):
    server.add("m1", "first", created=1)
    await manager.open(GENERAL)

    server.add("m2", "missed while offline", created=2)
    server.edit_directly("c1", "m1", "first (edited)")
    feed.latest.push(FeedEvent.resync())

    await wait_until(lambda: len(manager.store.snapshot()) == 2)
    assert contents(manager) == ["first (edited)", "missed while offline"]


async def test_resync_crash_is_logged(manager, feed, monkeypatch):
    logged = []
    monkeypatch.setattr(subscriptions.log, "error", logged.append)
    await manager.open(GENERAL)

    async def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(manager.coordinator, "reconcile", broken)
    feed.latest.push(FeedEvent.resync())

    await wait_until(lambda: logged)
    assert "boom" in logged[0]
    assert manager.state == SubscriptionState.OPEN


async def test_feed_failure_reports_and_closes(manager, feed, failures):
    await manager.open(GENERAL)

    feed.latest.fail(FeedUnavailable("gone", status_code=404))
    await wait_until(lambda: manager.state == SubscriptionState.CLOSED and manager.store is None)

    assert failures[0].action == "subscribe"
    assert failures[0].user_message == "Could not save"


# ----------------------------------------------------------------------
# Close
# ----------------------------------------------------------------------

async def test_close_discards_late_results(manager, server, feed, failures):
    await manager.open(GENERAL)
    store = manager.store
    coordinator = manager.coordinator
    subscription = feed.latest

    server.hold("POST")
    pending = asyncio.ensure_future(coordinator.create("hello"))
    await server.wait_held("POST")

    await manager.close()
    server.release("POST")
    created = await pending

    assert created.content == "hello"
    assert store.snapshot() == ()
    assert subscription.closed
    assert not coordinator.active
    assert manager.state == SubscriptionState.CLOSED
    assert failures == []


async def test_reopening_switches_channel(manager, server, feed):
    server.add("m1", "in c1", channel="c1")
    server.add("x1", "in c2", channel="c2")

    await manager.open(GENERAL)
    first = feed.latest
    await manager.open(Channel(channel_id="c2", name="random"))

    assert first.closed
    assert manager.channel.channel_id == "c2"
    assert contents(manager) == ["in c2"]


async def test_remote_delete_during_pending_edit_wins(manager, server, feed, failures):
    server.add("m1", "mine", sender="u1", created=1)
    await manager.open(GENERAL)
    server.hold("PATCH")

    editing = asyncio.ensure_future(manager.coordinator.edit("m1", "changed"))
    await server.wait_held("PATCH")
    assert manager.store.get("m1").status == SyncStatus.PENDING_EDIT

    del server.channels["c1"]["m1"]
    feed.latest.push(FeedEvent(type=FeedEventType.DELETE, message_id="m1"))
    await settle()
    assert manager.store.snapshot() == ()

    server.release("PATCH")
    with pytest.raises(NotFoundError):
        await editing

    assert manager.store.snapshot() == ()
    assert failures[0].user_message == "Not found"
