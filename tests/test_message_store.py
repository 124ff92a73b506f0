import itertools

import pytest

from chat_sync.data_models.message import MessageStatus
from chat_sync.errors import ChatValidationError
from chat_sync.sync.message_store import MessageStore

from conftest import make_message


@pytest.fixture
def store() -> MessageStore:
    return MessageStore("c1")


def test_append_optimistic_is_visible_as_pending(store):
    key = store.append_optimistic(make_message(None, text="draft"))

    [entry] = store.snapshot()
    assert entry.status == MessageStatus.PENDING
    assert entry.id is None
    assert entry.correlation_key == key
    assert store.echo(key) is not None


def test_history_converges_regardless_of_arrival_order():
    history = [make_message(str(i), seconds=i % 3, sender_id="alice" if i % 2 else "bob") for i in range(1, 6)]
    expected = None
    for permutation in itertools.permutations(history):
        store = MessageStore("c1")
        for message in permutation:
            store.reconcile_remote(message)
        ids = [m.id for m in store.snapshot()]
        expected = expected or ids
        assert ids == expected
    assert expected == ["3", "1", "4", "2", "5"]


def test_reconcile_is_idempotent_and_publishes_once(store):
    published = []
    store.subscribe(published.append)
    message = make_message("1")

    store.reconcile_remote(message)
    store.reconcile_remote(message)
    store.load([message])

    assert len(store) == 1
    assert len(published) == 1


def test_server_echo_replaces_local_echo_by_correlation_key(store):
    store.reconcile_remote(make_message("1", sender_id="bob", seconds=-5))
    key = store.append_optimistic(make_message(None, text="hi"))
    store.reconcile_remote(make_message("9", sender_id="bob", seconds=10))

    store.reconcile_remote(make_message("2", text="hi", correlation_key=key))

    snapshot = store.snapshot()
    assert [m.id for m in snapshot] == ["1", "2", "9"]
    assert store.echo(key) is None
    assert snapshot[1].status == MessageStatus.SENT


def test_server_echo_without_key_matches_by_content_within_window(store):
    store.append_optimistic(make_message(None, text="same words"))

    store.reconcile_remote(make_message("5", text="same words", seconds=3))

    assert [m.id for m in store.snapshot()] == ["5"]
    assert store.pending_echoes == []


def test_content_match_outside_window_creates_a_separate_entry(store):
    store.append_optimistic(make_message(None, text="same words"))

    store.reconcile_remote(make_message("5", text="same words", seconds=120))

    assert len(store) == 2


def test_foreign_correlation_key_never_replaces_own_echo(store):
    key = store.append_optimistic(make_message(None, text="hi", correlation_key="k1"))

    store.reconcile_remote(make_message("3", sender_id="bob", text="hi", correlation_key=key))

    assert len(store) == 2
    assert store.echo(key) is not None


def test_status_never_regresses(store):
    store.reconcile_remote(make_message("1", status=MessageStatus.READ))

    assert not store.apply_status_update("1", MessageStatus.DELIVERED)
    store.reconcile_remote(make_message("1", status=MessageStatus.SENT))

    assert store.get("1").status == MessageStatus.READ


def test_status_updates_in_any_order_end_at_the_highest(store):
    store.reconcile_remote(make_message("1"))

    store.apply_status_update("1", MessageStatus.READ)
    store.apply_status_update("1", MessageStatus.DELIVERED)

    assert store.get("1").status == MessageStatus.READ


def test_status_batch_publishes_one_snapshot(store):
    store.load([make_message(str(i), seconds=i) for i in range(1, 4)])
    published = []
    store.subscribe(published.append)

    changed = store.apply_status_batch(["1", "2", "3", "404"], MessageStatus.DELIVERED)

    assert changed == ["1", "2", "3"]
    assert len(published) == 1
    assert all(m.status == MessageStatus.DELIVERED for m in published[0])


def test_remove_is_idempotent(store):
    store.reconcile_remote(make_message("1"))

    assert store.remove("1").id == "1"
    assert store.remove("1") is None
    assert store.snapshot() == ()


def test_removed_messages_are_not_revived_by_replays(store):
    store.reconcile_remote(make_message("1"))
    store.remove("1")

    store.reconcile_remote(make_message("1"))
    assert not store.apply_status_update("1", MessageStatus.READ)
    assert store.load([make_message("1")]) == 0

    assert store.snapshot() == ()
    assert store.is_deleted("1")


def test_status_seen_before_its_row_is_applied_on_arrival(store):
    assert not store.apply_status_update("1", MessageStatus.READ)
    store.apply_status_update("1", MessageStatus.DELIVERED)

    store.reconcile_remote(make_message("1", status=MessageStatus.SENT))

    assert store.get("1").status == MessageStatus.READ


def test_retain_drops_confirmed_messages_missing_on_the_server(store):
    store.load([make_message("1"), make_message("2", seconds=1)])
    key = store.append_optimistic(make_message(None, text="draft", seconds=2))

    assert store.retain(["2"], candidates=["1", "2"]) == ["1"]

    assert [m.id for m in store.snapshot()] == ["2", None]
    assert store.echo(key) is not None
    store.reconcile_remote(make_message("1"))
    assert store.get("1") is None


def test_mark_failed_and_discard_echo(store):
    key = store.append_optimistic(make_message(None, text="offline"))
    [echo_message] = store.snapshot()

    store.mark_failed(key)
    assert store.is_failed(echo_message)

    assert store.discard_echo(key)
    assert store.snapshot() == ()
    assert not store.discard_echo(key)


def test_rejects_messages_for_another_conversation(store):
    with pytest.raises(ChatValidationError):
        store.reconcile_remote(make_message("1", conversation_id="other"))


async def test_watch_yields_current_then_new_snapshots(store):
    stream = store.watch()
    assert await anext(stream) == ()

    store.reconcile_remote(make_message("1"))

    [message] = await anext(stream)
    assert message.id == "1"
    await stream.aclose()
