import pytest

from chat_sync.backend.in_memory import StaticIdentityProvider
from chat_sync.controller import ChatSyncController
from chat_sync.data_models.conversation import Conversation
from chat_sync.errors import AuthError, ChatValidationError, NetworkError, NotFoundError
from chat_sync.sync.session import AttachmentDraft

from conftest import BASE_TIME


async def test_start_conversation_is_get_or_create_for_the_pair(alice, bob, conversation_db):
    created = await alice.start_conversation("bob")

    assert await alice.start_conversation("bob") == created
    assert await bob.start_conversation("alice") == created
    assert len(conversation_db.conversations) == 1


async def test_start_conversation_matches_the_exact_pair_only(alice, conversation_db):
    with_bob = await alice.start_conversation("bob")
    with_carol = await alice.start_conversation("carol")

    assert with_carol.id != with_bob.id
    assert with_carol.participants == {"alice", "carol"}


async def test_start_conversation_rejects_self_and_unknown_users(alice):
    with pytest.raises(ChatValidationError):
        await alice.start_conversation("alice")
    with pytest.raises(NotFoundError):
        await alice.start_conversation("nobody")


async def test_start_conversation_reuses_a_row_created_concurrently(alice, conversation_db, monkeypatch):
    lookup = conversation_db.get_conversation_by_participants
    calls = []

    async def racing_lookup(user_id, other_user_id):
        calls.append(user_id)
        if len(calls) == 1:
            await conversation_db.create_conversation(
                Conversation(id="theirs", participant_a=other_user_id, participant_b=user_id, updated_at=BASE_TIME)
            )
            return None
        return await lookup(user_id, other_user_id)

    monkeypatch.setattr(conversation_db, "get_conversation_by_participants", racing_lookup)

    conversation = await alice.start_conversation("bob")

    assert conversation.id == "theirs"
    assert list(conversation_db.conversations) == ["theirs"]


async def test_opening_a_conversation_closes_the_previous_one(alice, feed):
    first = await alice.open_conversation((await alice.start_conversation("bob")).id)
    second = await alice.open_conversation((await alice.start_conversation("carol")).id)

    assert not first.is_open
    assert second.is_open
    assert alice.active_session is second
    [subscription] = feed.active_subscriptions("messages")
    assert subscription.change_filter.values == [second.conversation_id]
    assert await alice.open_conversation(second.conversation_id) is second


async def test_open_conversation_checks_membership(alice, bob, conversation_db, feed):
    carol_and_bob = await bob.start_conversation("carol")

    with pytest.raises(AuthError):
        await alice.open_conversation(carol_and_bob.id)
    with pytest.raises(NotFoundError):
        await alice.open_conversation("missing")
    assert feed.active_subscriptions("messages") == []


async def test_signed_out_user_gets_auth_error(feed, conversation_db, message_db, user_db, push_token_db, storage):
    controller = ChatSyncController(
        StaticIdentityProvider(), conversation_db, message_db, user_db, push_token_db, feed, storage
    )

    with pytest.raises(AuthError):
        await controller.start_conversation("bob")


async def test_delete_conversation_cascades_to_messages_and_blobs(alice, conversation_db, message_db, storage):
    conversation = await alice.start_conversation("bob")
    session = await alice.open_conversation(conversation.id)
    await session.send("hello")
    await session.send(attachments=[AttachmentDraft(data=b"a", content_type="image/png")])
    await session.send(attachments=[AttachmentDraft(data=b"b", content_type="video/mp4")])

    assert await alice.delete_conversation(conversation.id)

    assert alice.active_session is None
    assert not session.is_open
    assert message_db.messages == {}
    assert storage.objects == {}
    assert len(storage.delete_calls) == 2
    assert conversation.id not in conversation_db.conversations
    assert not await alice.delete_conversation(conversation.id)


async def test_delete_conversation_retries_transient_write_failures(alice, conversation_db, message_db):
    conversation = await alice.start_conversation("bob")
    session = await alice.open_conversation(conversation.id)
    await session.send("one")
    await session.send("two")
    message_db.fail_writes.extend([NetworkError("reset"), NetworkError("reset")])

    assert await alice.delete_conversation(conversation.id)

    assert message_db.messages == {}
    assert conversation.id not in conversation_db.conversations


async def test_only_participants_can_delete_a_conversation(alice, bob):
    carol_and_bob = await bob.start_conversation("carol")

    with pytest.raises(AuthError):
        await alice.delete_conversation(carol_and_bob.id)


async def test_search_users_excludes_self_and_ignores_blank_queries(alice):
    assert [u.username for u in await alice.search_users("BO")] == ["Bob", "Bobby Tables"]
    assert [u.username for u in await alice.search_users("bo", limit=1)] == ["Bob"]
    assert await alice.search_users("ALI") == []
    assert await alice.search_users("   ") == []


async def test_conversation_list_is_started_once(alice, feed):
    await alice.start_conversation("bob")

    first = await alice.conversation_list()
    second = await alice.conversation_list()

    assert first is second
    assert [p.other_username for p in first.previews] == ["Bob"]
    assert len(feed.active_subscriptions("conversations")) == 1


async def test_register_push_token_replaces_previous_token(alice, push_token_db):
    await alice.register_push_token("ExponentPushToken[old]")
    await alice.register_push_token("ExponentPushToken[new]")

    assert (await push_token_db.get_push_token("alice")).push_token == "ExponentPushToken[new]"


async def test_shutdown_releases_every_channel(alice, feed):
    await alice.open_conversation((await alice.start_conversation("bob")).id)
    await alice.conversation_list()

    await alice.shutdown()

    assert feed.active_subscriptions() == []
