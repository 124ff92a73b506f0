import asyncio

import pytest

from chat_sync.backend.in_memory import InMemoryChangeFeed, InMemoryMessageDatabase
from chat_sync.data_models.change_event import ChangeEvent
from chat_sync.data_models.message import MessageStatus
from chat_sync.errors import NetworkError
from chat_sync.sync.channel import ChannelState
from chat_sync.sync.message_store import MessageStore
from chat_sync.sync.reconciler import RealtimeReconciler

from conftest import make_message


@pytest.fixture
def store() -> MessageStore:
    return MessageStore("c1")


@pytest.fixture
def inserted() -> list:
    return []


@pytest.fixture
async def reconciler(store, feed, message_db, user_db, settings, inserted):
    async def on_remote_insert(message):
        inserted.append(message)

    reconciler = RealtimeReconciler("c1", "alice", store, feed, message_db, user_db, settings, on_remote_insert)
    await reconciler.start()
    yield reconciler
    await reconciler.stop()


def insert_event(message) -> ChangeEvent:
    return ChangeEvent(event_type="INSERT", table="messages", row=message.to_row())


async def test_start_subscribes_to_the_conversation(reconciler, feed):
    assert reconciler.state == ChannelState.SUBSCRIBED
    [subscription] = feed.active_subscriptions("messages")
    assert subscription.change_filter.values == ["c1"]


async def test_insert_resolves_sender_name_and_notifies_once(reconciler, store, feed, inserted):
    event = insert_event(make_message("1", sender_id="bob"))

    await feed.dispatch(event)
    await feed.dispatch(event)

    [message] = store.snapshot()
    assert message.sender_name == "Bob"
    assert [m.id for m in inserted] == ["1"]


async def test_own_inserts_do_not_trigger_remote_insert_hook(reconciler, feed, inserted):
    await feed.dispatch(insert_event(make_message("1", sender_id="alice")))

    assert inserted == []


async def test_sender_names_are_cached_and_batched(reconciler, user_db):
    messages = [make_message(str(i), sender_id=sender) for i, sender in enumerate(["bob", "alice", "bob", "ghost"])]

    named = await reconciler.resolve_sender_names(messages)
    await reconciler.resolve_sender_names(messages)

    assert [m.sender_name for m in named] == ["Bob", "Alice", "Bob", "Unknown"]
    assert user_db.lookups == [["alice", "bob", "ghost"]]


async def test_out_of_order_duplicated_events_converge(store, feed, message_db, user_db, settings):
    reconciler = RealtimeReconciler("c1", "alice", store, feed, message_db, user_db, settings)
    await reconciler.start()
    first = make_message("1", sender_id="bob", seconds=0)
    second = make_message("2", sender_id="bob", seconds=1)
    read = ChangeEvent(event_type="UPDATE", table="messages", row={"id": "1", "conversation_id": "c1", "status": "read"})

    for event in [insert_event(second), read, insert_event(first), read, insert_event(first), insert_event(second)]:
        await feed.dispatch(event)
    await reconciler.stop()

    assert [(m.id, m.status) for m in store.snapshot()] == [("1", MessageStatus.READ), ("2", MessageStatus.SENT)]


async def test_partial_update_advances_status(reconciler, store, feed):
    await feed.dispatch(insert_event(make_message("1", sender_id="bob")))

    row = {"id": 1, "conversation_id": "c1", "status": "delivered"}
    await feed.dispatch(ChangeEvent(event_type="update", table="messages", row=row))

    assert store.get("1").status == MessageStatus.DELIVERED


async def test_delete_event_with_only_primary_key_removes_message(reconciler, store, feed):
    await feed.dispatch(insert_event(make_message("1", sender_id="bob")))

    await feed.dispatch(ChangeEvent(event_type="DELETE", table="messages", old_row={"id": "1"}))
    await feed.dispatch(ChangeEvent(event_type="DELETE", table="messages", old_row={"id": "1"}))

    assert store.snapshot() == ()


async def test_events_for_other_conversations_are_ignored(reconciler, store):
    await reconciler.handle_event(insert_event(make_message("1", conversation_id="c2")))

    assert store.snapshot() == ()


@pytest.mark.parametrize(
    "row",
    [
        {"id": "1", "conversation_id": "c1"},
        {"id": "1", "conversation_id": "c1", "sender_id": "bob", "created_at": "not a date", "text": "x"},
        {"id": "1", "conversation_id": "c1", "sender_id": "bob", "created_at": "2024-03-05T12:00:00Z"},
    ],
)
async def test_malformed_rows_are_dropped(reconciler, store, row):
    await reconciler.handle_event(ChangeEvent(event_type="INSERT", table="messages", row=row))

    assert store.snapshot() == ()


async def test_refetch_merges_history_with_names(reconciler, store, message_db):
    message_db.feed = None
    await message_db.create_message(make_message(None, sender_id="bob", text="missed while offline"))

    assert await reconciler.refetch() == 1
    [message] = store.snapshot()
    assert message.sender_name == "Bob"


async def test_refetch_retries_transient_read_failures(reconciler, message_db):
    message_db.fail_reads.extend([NetworkError("timeout"), NetworkError("timeout")])

    assert await reconciler.refetch() == 0


async def test_refetch_gives_up_after_max_attempts(reconciler, message_db):
    message_db.fail_reads.extend([NetworkError("timeout")] * 3)

    with pytest.raises(NetworkError):
        await reconciler.refetch()


async def test_channel_error_resubscribes_and_catches_up(reconciler, store, feed, message_db):
    await feed.break_channels()
    assert reconciler.state in (ChannelState.ERROR, ChannelState.SUBSCRIBED)
    message_db.feed = None
    await message_db.create_message(make_message(None, sender_id="bob", text="sent during the outage"))
    message_db.feed = feed

    await reconciler.channel.join()

    assert reconciler.state == ChannelState.SUBSCRIBED
    assert len(feed.active_subscriptions("messages")) == 1
    assert [m.text for m in store.snapshot()] == ["sent during the outage"]


async def test_resubscribe_gives_up_after_bounded_attempts(reconciler, feed, settings):
    feed.fail_subscribe.extend([NetworkError("down")] * settings.resubscribe_attempts)

    await feed.break_channels()
    await reconciler.channel.join()

    assert reconciler.state == ChannelState.ERROR
    assert feed.active_subscriptions() == []


async def test_stop_swallows_unsubscribe_failures(store, feed, message_db, user_db, settings):
    reconciler = RealtimeReconciler("c1", "alice", store, feed, message_db, user_db, settings)
    await reconciler.start()
    feed.fail_unsubscribe.append(NetworkError("socket closed"))

    await reconciler.stop()

    assert reconciler.state == ChannelState.UNSUBSCRIBED


async def test_events_after_stop_are_dropped(store, user_db, settings):
    feed = InMemoryChangeFeed()
    reconciler = RealtimeReconciler("c1", "alice", store, feed, InMemoryMessageDatabase(), user_db, settings)
    await reconciler.start()
    [subscription] = feed.active_subscriptions()
    await reconciler.stop()

    await subscription.on_event(insert_event(make_message("1", sender_id="bob")))

    assert store.snapshot() == ()


async def wait_until(condition, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        assert loop.time() < deadline, "condition not reached in time"
        await asyncio.sleep(0.005)


async def test_replayed_insert_after_delete_stays_deleted(reconciler, store, feed, inserted):
    event = insert_event(make_message("1", sender_id="bob"))

    await feed.dispatch(event)
    await feed.dispatch(ChangeEvent(event_type="DELETE", table="messages", old_row={"id": "1"}))
    await feed.dispatch(event)

    assert store.snapshot() == ()
    assert [m.id for m in inserted] == ["1"]


async def test_status_update_before_insert_is_kept(reconciler, store, feed):
    read = ChangeEvent(event_type="UPDATE", table="messages", row={"id": "1", "conversation_id": "c1", "status": "read"})

    await feed.dispatch(read)
    await feed.dispatch(insert_event(make_message("1", sender_id="bob")))

    assert store.get("1").status == MessageStatus.READ


async def test_resubscribe_drops_messages_deleted_during_the_outage(reconciler, store, feed, message_db):
    kept = await message_db.create_message(make_message(None, sender_id="bob", text="kept"))
    gone = await message_db.create_message(make_message(None, sender_id="bob", text="deleted offline", seconds=1))
    assert len(store) == 2

    await feed.break_channels()
    message_db.feed = None
    await message_db.delete_message(gone.id)
    message_db.feed = feed

    await reconciler.channel.join()

    assert [m.id for m in store.snapshot()] == [kept.id]


async def test_channel_error_releases_the_dead_subscription(reconciler, feed):
    feed.fail_unsubscribe.append(NetworkError("socket already gone"))

    await feed.break_channels()
    await reconciler.channel.join()

    assert feed.unsubscribe_calls == 1
    assert reconciler.state == ChannelState.SUBSCRIBED


async def test_periodic_refetch_merges_rows_the_feed_missed(store, feed, message_db, user_db, settings):
    settings = settings.model_copy(update={"refetch_interval": 0.01, "refetch_interval_max": 0.04})
    reconciler = RealtimeReconciler("c1", "alice", store, feed, message_db, user_db, settings)
    await reconciler.start()
    message_db.feed = None
    await message_db.create_message(make_message(None, sender_id="bob", text="never pushed"))

    await wait_until(lambda: len(store) == 1)
    await reconciler.stop()

    [message] = store.snapshot()
    assert (message.text, message.sender_name) == ("never pushed", "Bob")
    assert reconciler.refetch_delay == 0.01


async def test_refetch_interval_backs_off_while_the_channel_is_down(store, feed, message_db, user_db, settings):
    settings = settings.model_copy(update={"refetch_interval": 0.01, "refetch_interval_max": 0.04})
    reconciler = RealtimeReconciler("c1", "alice", store, feed, message_db, user_db, settings)
    await reconciler.start()
    assert reconciler.refetch_delay == 0.01
    feed.fail_subscribe.extend([NetworkError("down")] * settings.resubscribe_attempts)

    await feed.break_channels()
    await reconciler.channel.join()
    assert reconciler.state == ChannelState.ERROR

    await wait_until(lambda: reconciler.refetch_delay == 0.04)
    await asyncio.sleep(0.05)
    await reconciler.stop()

    assert reconciler.refetch_delay == 0.04
