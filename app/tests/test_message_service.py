"""
Unit tests for MessageService.
Covers participant checks on send, sender ownership and fan-out payloads.
"""
import pytest

from core.exceptions import ForbiddenError, NotFoundOrForbiddenError, ValidationError
from db.models import Message


@pytest.fixture
def conversation(conversation_service, seed_test_users):
    """Conversation between a@x.com (author) and b@x.com."""
    alice, _, _ = seed_test_users
    return conversation_service.create_conversation(alice.id, ["b@x.com"])


class TestSendMessage:
    """Tests for sending messages."""

    def test_participant_can_send(self, message_service, broadcaster, conversation, seed_test_users):
        _, bob, _ = seed_test_users

        message = message_service.send_message(bob.id, conversation.id, "hi there")

        assert message.sender.id == bob.id
        assert message.conversation_id == conversation.id
        assert len(broadcaster.events) == 1
        group, event, payload = broadcaster.events[0]
        assert (group, event) == (f"conversation:{conversation.id}", "message.created")
        assert payload["id"] == message.id
        assert payload["content"] == "hi there"
        assert payload["sender"] == {"id": bob.id, "email": "b@x.com", "name": "User B"}

    def test_non_participant_is_forbidden(self, message_service, broadcaster, conversation, test_db, seed_test_users):
        _, _, carol = seed_test_users

        with pytest.raises(ForbiddenError):
            message_service.send_message(carol.id, conversation.id, "let me in")

        assert test_db.query(Message).count() == 0
        assert broadcaster.events == []

    def test_missing_conversation_is_forbidden(self, message_service, seed_test_users):
        with pytest.raises(ForbiddenError):
            message_service.send_message(seed_test_users[0].id, "does-not-exist", "hello?")

    @pytest.mark.parametrize("content", ["", "   "])
    def test_empty_content_is_rejected(self, message_service, conversation, test_db, seed_test_users, content):
        with pytest.raises(ValidationError):
            message_service.send_message(seed_test_users[0].id, conversation.id, content)
        assert test_db.query(Message).count() == 0


class TestReadMessages:
    """Tests for reading own messages."""

    def test_list_only_own_messages(self, message_service, conversation, seed_test_users):
        alice, bob, _ = seed_test_users
        message_service.send_message(alice.id, conversation.id, "from alice")
        message_service.send_message(bob.id, conversation.id, "from bob")

        assert [m.content for m in message_service.list_messages(alice.id)] == ["from alice"]

    def test_sender_can_get_message(self, message_service, conversation, seed_test_users):
        alice, _, _ = seed_test_users
        sent = message_service.send_message(alice.id, conversation.id, "mine")

        assert message_service.get_message(alice.id, sent.id).content == "mine"

    def test_other_users_and_missing_ids_look_the_same(self, message_service, conversation, seed_test_users):
        alice, bob, _ = seed_test_users
        sent = message_service.send_message(alice.id, conversation.id, "mine")

        with pytest.raises(NotFoundOrForbiddenError) as not_owned:
            message_service.get_message(bob.id, sent.id)
        with pytest.raises(NotFoundOrForbiddenError) as missing:
            message_service.get_message(bob.id, "does-not-exist")

        assert not_owned.value.message == missing.value.message


class TestUpdateMessage:
    """Tests for editing messages."""

    def test_sender_can_edit(self, message_service, broadcaster, conversation, seed_test_users):
        alice, _, _ = seed_test_users
        sent = message_service.send_message(alice.id, conversation.id, "draft")

        updated = message_service.update_message(alice.id, conversation.id, sent.id, "final")

        assert updated.content == "final"
        group, event, payload = broadcaster.events[-1]
        assert (group, event) == (f"conversation:{conversation.id}", "message.updated")
        assert payload["content"] == "final"

    def test_non_sender_cannot_edit(self, message_service, broadcaster, conversation, test_db, seed_test_users):
        alice, bob, _ = seed_test_users
        sent = message_service.send_message(alice.id, conversation.id, "original")
        events_before = len(broadcaster.events)

        with pytest.raises(NotFoundOrForbiddenError):
            message_service.update_message(bob.id, conversation.id, sent.id, "hacked")

        test_db.expire_all()
        assert test_db.query(Message).filter(Message.id == sent.id).one().content == "original"
        assert len(broadcaster.events) == events_before

    def test_wrong_conversation_is_rejected(self, message_service, conversation_service, conversation, seed_test_users):
        alice, _, _ = seed_test_users
        other = conversation_service.create_conversation(alice.id, [])
        sent = message_service.send_message(alice.id, conversation.id, "original")

        with pytest.raises(NotFoundOrForbiddenError):
            message_service.update_message(alice.id, other.id, sent.id, "moved?")

    def test_empty_content_is_rejected(self, message_service, conversation, seed_test_users):
        alice, _, _ = seed_test_users
        sent = message_service.send_message(alice.id, conversation.id, "original")

        with pytest.raises(ValidationError):
            message_service.update_message(alice.id, conversation.id, sent.id, " ")


class TestDeleteMessage:
    """Tests for deleting messages."""

    def test_delete_emits_id_only_then_second_delete_fails(self, message_service, broadcaster, conversation, test_db, seed_test_users):
        alice, _, _ = seed_test_users
        sent = message_service.send_message(alice.id, conversation.id, "oops")
        message_id = sent.id

        message_service.delete_message(alice.id, conversation.id, message_id)

        group, event, payload = broadcaster.events[-1]
        assert (group, event, payload) == (f"conversation:{conversation.id}", "message.deleted", {"id": message_id})
        assert test_db.query(Message).filter(Message.id == message_id).count() == 0

        with pytest.raises(NotFoundOrForbiddenError):
            message_service.delete_message(alice.id, conversation.id, message_id)

    def test_non_sender_cannot_delete(self, message_service, conversation, test_db, seed_test_users):
        alice, bob, _ = seed_test_users
        sent = message_service.send_message(alice.id, conversation.id, "keep me")

        with pytest.raises(NotFoundOrForbiddenError):
            message_service.delete_message(bob.id, conversation.id, sent.id)

        assert test_db.query(Message).filter(Message.id == sent.id).count() == 1
