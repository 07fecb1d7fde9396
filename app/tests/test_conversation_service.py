"""
Unit tests for ConversationService.
Covers participant/author rules, atomic creation, updates and fan-out.
"""
import pytest
from datetime import timedelta
from sqlalchemy import event, func, select
from sqlalchemy.exc import OperationalError

from api.schemas import ConversationUpdate
from core.exceptions import BroadcasterNotReadyError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from db.database import SessionLocal, engine
from db.models import Conversation, Message, conversation_participants
from db.repository import Repository
from services import ConversationService


def participant_ids(conversation):
    return {participant.id for participant in conversation.participants}


class TestCreateConversation:
    """Tests for conversation creation."""

    def test_author_and_resolved_participants(self, conversation_service, seed_test_users):
        alice, bob, _ = seed_test_users

        conversation = conversation_service.create_conversation(alice.id, ["b@x.com"])

        assert conversation.author_id == alice.id
        assert participant_ids(conversation) == {alice.id, bob.id}

    def test_unknown_emails_are_dropped_and_author_added(self, conversation_service, seed_test_users):
        alice, _, carol = seed_test_users

        conversation = conversation_service.create_conversation(
            alice.id, ["ghost@x.com", "c@x.com", "c@x.com"], title="Plans"
        )

        assert participant_ids(conversation) == {alice.id, carol.id}
        assert conversation.title == "Plans"

    def test_author_listed_by_email_is_not_duplicated(self, conversation_service, seed_test_users):
        alice, _, _ = seed_test_users

        conversation = conversation_service.create_conversation(alice.id, ["a@x.com"])

        assert [p.id for p in conversation.participants] == [alice.id]

    def test_plain_create_emits_nothing(self, conversation_service, broadcaster, seed_test_users):
        conversation_service.create_conversation(seed_test_users[0].id, ["b@x.com"])
        assert broadcaster.events == []

    def test_unknown_author_is_rejected(self, conversation_service, test_db):
        with pytest.raises(NotFoundError):
            conversation_service.create_conversation("missing-user", [])
        assert test_db.query(Conversation).count() == 0

    def test_commit_failure_creates_nothing(self, test_db, conversation_service, seed_test_users, monkeypatch):
        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("disk full"))

        monkeypatch.setattr(test_db, "commit", failing_commit)

        with pytest.raises(ConflictError):
            conversation_service.create_conversation(seed_test_users[0].id, ["b@x.com", "c@x.com"], title="Plans")

        monkeypatch.undo()
        assert test_db.query(Conversation).count() == 0
        links = test_db.execute(select(func.count()).select_from(conversation_participants)).scalar()
        assert links == 0


class TestCreateConversationWithMessage:
    """Tests for atomic creation with an initial message."""

    def test_creates_both_and_fans_out(self, conversation_service, broadcaster, seed_test_users):
        alice, bob, _ = seed_test_users

        conversation, message = conversation_service.create_conversation_with_message(
            alice.id, ["b@x.com"], "hello"
        )

        assert message.conversation_id == conversation.id
        assert message.sender_id == alice.id

        new_messages = broadcaster.of_type("message.created")
        assert len(new_messages) == 1
        group, _, payload = new_messages[0]
        assert group == f"conversation:{conversation.id}"
        assert payload["content"] == "hello"
        assert payload["sender"]["id"] == alice.id

        new_conversations = broadcaster.of_type("conversation.created")
        assert {group for group, _, _ in new_conversations} == {f"user:{alice.id}", f"user:{bob.id}"}
        assert all(payload["last_message"] == "hello" for _, _, payload in new_conversations)

    def test_events_follow_commit(self, test_db, seed_test_users):
        alice, _, _ = seed_test_users
        seen = []

        class CommitCheckingBroadcaster:
            def emit(self, group, event, payload):
                # A separate session only sees committed rows
                with SessionLocal() as other:
                    seen.append(other.query(Message).count())
                return 0

        service = ConversationService(test_db, CommitCheckingBroadcaster())
        service.create_conversation_with_message(alice.id, ["b@x.com"], "hello")

        assert seen and all(count == 1 for count in seen)

    def test_empty_initial_message_creates_nothing(self, conversation_service, broadcaster, test_db, seed_test_users):
        with pytest.raises(ValidationError):
            conversation_service.create_conversation_with_message(seed_test_users[0].id, ["b@x.com"], "   ")

        assert test_db.query(Conversation).count() == 0
        assert broadcaster.events == []

    def test_commit_failure_rolls_back_and_conflicts(self, test_db, conversation_service, broadcaster, seed_test_users, monkeypatch):
        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("disk full"))

        monkeypatch.setattr(test_db, "commit", failing_commit)

        with pytest.raises(ConflictError):
            conversation_service.create_conversation_with_message(seed_test_users[0].id, ["b@x.com"], "hello")

        monkeypatch.undo()
        assert test_db.query(Conversation).count() == 0
        assert test_db.query(Message).count() == 0
        assert broadcaster.events == []

    def test_fanout_failure_does_not_fail_operation(self, test_db, seed_test_users):
        class BrokenBroadcaster:
            def emit(self, group, event, payload):
                raise ConnectionError("socket gone")

        service = ConversationService(test_db, BrokenBroadcaster())
        conversation, _ = service.create_conversation_with_message(seed_test_users[0].id, [], "hello")

        assert test_db.query(Conversation).filter(Conversation.id == conversation.id).count() == 1

    def test_unstarted_broadcaster_is_not_swallowed(self, test_db, seed_test_users):
        class UnstartedBroadcaster:
            def emit(self, group, event, payload):
                raise BroadcasterNotReadyError("not started")

        service = ConversationService(test_db, UnstartedBroadcaster())
        with pytest.raises(BroadcasterNotReadyError):
            service.create_conversation_with_message(seed_test_users[0].id, [], "hello")


class TestReadConversations:
    """Tests for listing and reading conversations."""

    def test_participant_can_read_outsider_cannot(self, conversation_service, seed_test_users):
        alice, bob, carol = seed_test_users
        created = conversation_service.create_conversation(alice.id, ["b@x.com"])

        conversation = conversation_service.get_conversation(bob.id, created.id)
        assert participant_ids(conversation) == {alice.id, bob.id}

        with pytest.raises(ForbiddenError):
            conversation_service.get_conversation(carol.id, created.id)

    def test_missing_conversation(self, conversation_service, seed_test_users):
        with pytest.raises(NotFoundError):
            conversation_service.get_conversation(seed_test_users[0].id, "does-not-exist")

    def test_list_only_shows_own_conversations(self, conversation_service, seed_test_users):
        alice, bob, carol = seed_test_users
        created = conversation_service.create_conversation(alice.id, ["b@x.com"])

        assert [s.id for s in conversation_service.list_conversations(bob.id)] == [created.id]
        assert conversation_service.list_conversations(carol.id) == []

    def test_list_summaries_sorted_by_activity(self, conversation_service, test_db, seed_test_users):
        alice, _, _ = seed_test_users
        quiet = conversation_service.create_conversation(alice.id, [], title="quiet")
        busy, message = conversation_service.create_conversation_with_message(alice.id, [], "latest news")

        # Make the ordering independent of clock resolution
        quiet.created_at = message.created_at - timedelta(minutes=5)
        test_db.commit()

        summaries = conversation_service.list_conversations(alice.id)

        assert [s.id for s in summaries] == [busy.id, quiet.id]
        assert summaries[0].last_message == "latest news"
        assert summaries[0].updated_at == message.created_at
        assert summaries[1].last_message == ""
        assert summaries[1].updated_at == quiet.created_at

    def test_list_ties_broken_by_id(self, conversation_service, test_db, seed_test_users):
        alice, _, _ = seed_test_users
        first = conversation_service.create_conversation(alice.id, [])
        second = conversation_service.create_conversation(alice.id, [])
        second.created_at = first.created_at
        test_db.commit()

        summaries = conversation_service.list_conversations(alice.id)

        assert [s.id for s in summaries] == sorted([first.id, second.id], reverse=True)

    def test_list_queries_do_not_grow_with_conversations(self, conversation_service, test_db, seed_test_users):
        alice, _, _ = seed_test_users
        for index in range(5):
            conversation_service.create_conversation_with_message(alice.id, [], f"message {index}")
        conversation_service.create_conversation(alice.id, [])

        statements = []

        def count_statement(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        alice_id = alice.id
        test_db.expire_all()
        event.listen(engine, "before_cursor_execute", count_statement)
        try:
            summaries = conversation_service.list_conversations(alice_id)
        finally:
            event.remove(engine, "before_cursor_execute", count_statement)

        assert len(summaries) == 6
        assert sorted(s.last_message for s in summaries) == ["", *(f"message {i}" for i in range(5))]
        assert len(statements) == 2


class TestUpdateConversation:
    """Tests for author-only updates."""

    def test_add_and_remove_participants(self, conversation_service, seed_test_users):
        alice, bob, carol = seed_test_users
        created = conversation_service.create_conversation(alice.id, ["b@x.com"])

        updated = conversation_service.update_conversation(
            alice.id, created.id,
            ConversationUpdate(add_participant_emails=["c@x.com"], remove_participant_emails=["b@x.com"])
        )

        assert participant_ids(updated) == {alice.id, carol.id}

    def test_removal_wins_over_addition(self, conversation_service, seed_test_users):
        alice, _, carol = seed_test_users
        created = conversation_service.create_conversation(alice.id, [])

        updated = conversation_service.update_conversation(
            alice.id, created.id,
            ConversationUpdate(add_participant_emails=["c@x.com"], remove_participant_emails=["c@x.com"])
        )

        assert carol.id not in participant_ids(updated)

    def test_author_cannot_be_removed(self, conversation_service, seed_test_users):
        alice, _, _ = seed_test_users
        created = conversation_service.create_conversation(alice.id, ["b@x.com"])

        updated = conversation_service.update_conversation(
            alice.id, created.id, ConversationUpdate(remove_participant_emails=["a@x.com"])
        )

        assert alice.id in participant_ids(updated)

    def test_title_set_and_cleared(self, conversation_service, seed_test_users):
        alice, _, _ = seed_test_users
        created = conversation_service.create_conversation(alice.id, [], title="old")

        renamed = conversation_service.update_conversation(alice.id, created.id, ConversationUpdate(title="new"))
        assert renamed.title == "new"

        untouched = conversation_service.update_conversation(alice.id, created.id, ConversationUpdate())
        assert untouched.title == "new"

        cleared = conversation_service.update_conversation(alice.id, created.id, ConversationUpdate(title=""))
        assert cleared.title is None

    def test_non_author_is_forbidden(self, conversation_service, seed_test_users):
        alice, bob, _ = seed_test_users
        created = conversation_service.create_conversation(alice.id, ["b@x.com"])

        with pytest.raises(ForbiddenError):
            conversation_service.update_conversation(bob.id, created.id, ConversationUpdate(title="mine"))

    def test_missing_conversation(self, conversation_service, seed_test_users):
        with pytest.raises(NotFoundError):
            conversation_service.update_conversation(seed_test_users[0].id, "nope", ConversationUpdate(title="x"))

    def test_commit_failure_keeps_previous_state(self, test_db, conversation_service, broadcaster, seed_test_users, monkeypatch):
        alice, bob, _ = seed_test_users
        created = conversation_service.create_conversation(alice.id, ["b@x.com"], title="old")
        conversation_id = created.id

        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("disk full"))

        monkeypatch.setattr(test_db, "commit", failing_commit)

        with pytest.raises(ConflictError):
            conversation_service.update_conversation(
                alice.id, conversation_id,
                ConversationUpdate(
                    title="new", add_participant_emails=["c@x.com"], remove_participant_emails=["b@x.com"]
                )
            )

        monkeypatch.undo()
        test_db.expire_all()
        stored = Repository(test_db).get_conversation_by_id(conversation_id)
        assert stored.title == "old"
        assert participant_ids(stored) == {alice.id, bob.id}
        assert broadcaster.evictions == []

    def test_removed_participants_are_evicted(self, conversation_service, broadcaster, seed_test_users):
        alice, bob, _ = seed_test_users
        created = conversation_service.create_conversation(alice.id, ["b@x.com"])

        conversation_service.update_conversation(
            alice.id, created.id,
            ConversationUpdate(remove_participant_emails=["b@x.com", "c@x.com", "a@x.com"])
        )

        assert broadcaster.evictions == [(created.id, {bob.id})]

    def test_no_eviction_without_removals(self, conversation_service, broadcaster, seed_test_users):
        alice, _, _ = seed_test_users
        created = conversation_service.create_conversation(alice.id, ["b@x.com"])

        conversation_service.update_conversation(
            alice.id, created.id,
            ConversationUpdate(title="renamed", add_participant_emails=["c@x.com"], remove_participant_emails=["a@x.com"])
        )

        assert broadcaster.evictions == []


class TestDeleteConversation:
    """Tests for author-only deletion."""

    def test_delete_cascades_messages(self, conversation_service, test_db, seed_test_users):
        alice, _, _ = seed_test_users
        conversation, message = conversation_service.create_conversation_with_message(alice.id, ["b@x.com"], "hi")
        conversation_id, message_id = conversation.id, message.id

        conversation_service.delete_conversation(alice.id, conversation_id)

        repository = Repository(test_db)
        assert repository.get_conversation_by_id(conversation_id) is None
        assert repository.get_message_by_id(message_id) is None
        assert test_db.query(Message).filter(Message.conversation_id == conversation_id).count() == 0

    def test_non_author_is_forbidden(self, conversation_service, seed_test_users):
        alice, bob, _ = seed_test_users
        created = conversation_service.create_conversation(alice.id, ["b@x.com"])

        with pytest.raises(ForbiddenError):
            conversation_service.delete_conversation(bob.id, created.id)

    def test_missing_conversation(self, conversation_service, seed_test_users):
        with pytest.raises(NotFoundError):
            conversation_service.delete_conversation(seed_test_users[0].id, "nope")

    def test_delete_evicts_conversation_group(self, conversation_service, broadcaster, seed_test_users):
        alice, _, _ = seed_test_users
        created = conversation_service.create_conversation(alice.id, ["b@x.com"])

        conversation_service.delete_conversation(alice.id, created.id)

        assert broadcaster.evictions == [(created.id, None)]

    def test_forbidden_delete_evicts_nothing(self, conversation_service, broadcaster, seed_test_users):
        alice, bob, _ = seed_test_users
        created = conversation_service.create_conversation(alice.id, ["b@x.com"])

        with pytest.raises(ForbiddenError):
            conversation_service.delete_conversation(bob.id, created.id)

        assert broadcaster.evictions == []
