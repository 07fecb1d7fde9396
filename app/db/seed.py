"""
Sample data for local development.

Creates four users (Alex, Blake, Casey, Dana; password 'password123') and,
for each of them as author, two one-on-one and three group conversations with
a few messages each. Also provides a command to clear every conversation.

Usage:
    python -m db.seed            # create tables, users and conversations
    python -m db.seed --clear    # delete every conversation (and message)
"""
import argparse
from typing import Dict, List
from sqlalchemy.orm import Session

from core.security import hash_password
from db.database import SessionLocal, init_db
from db.models import Conversation, User
from db.repository import Repository

SEED_PASSWORD = "password123"

SEED_USERS: Dict[str, str] = {
    "4200ff7b-b6f4-4a20-849c-8435788f63fe": "Alex",
    "5622c196-83d1-458f-b577-cc9ee2d56715": "Blake",
    "9e4c9c3a-1036-4e51-87f6-cdbf1edec28f": "Casey",
    "a4e35c50-6733-4c0a-8a15-aec4aea2fa0b": "Dana",
}


def seed_users(db: Session) -> List[User]:
    """Create the sample users that do not exist yet."""
    repository = Repository(db)
    users = []
    for user_id, name in SEED_USERS.items():
        user = repository.get_user_by_id(user_id)
        if user is None:
            user = repository.create_user(
                email=f"{name.lower()}@example.com",
                name=name,
                password_hash=hash_password(SEED_PASSWORD),
                user_id=user_id
            )
        users.append(user)
    return users


def _add_messages(repository: Repository, conversation: Conversation, lines: List[tuple]) -> None:
    for sender, content in lines:
        repository.add_message(conversation_id=conversation.id, sender_id=sender.id, content=content)


def seed_conversations(db: Session, users: List[User]) -> int:
    """
    Create one-on-one and group conversations for every author.

    Returns:
        Number of conversations created
    """
    repository = Repository(db)
    created = 0

    for author in users:
        others = [user for user in users if user.id != author.id]

        for other in others[:2]:
            conversation = repository.add_conversation(
                author=author,
                participants=[author, other],
                title=f"{author.name} & {other.name}"
            )
            _add_messages(repository, conversation, [
                (author, f"Hey {other.name}, did you hear about that new dating app everyone's using?"),
                (other, "Not really, I've seen people on Insta talking about it. You tried it yet?"),
                (author, "Yeah, signed up last night. Already swiped right on someone interesting!"),
            ])
            created += 1

        for first, second in [(others[0], others[1]), (others[0], others[2]), (others[1], others[2])]:
            conversation = repository.add_conversation(
                author=author,
                participants=[author, first, second],
                title=f"Gossip: {author.name}, {first.name}, {second.name}"
            )
            _add_messages(repository, conversation, [
                (author, f"Did you guys hear about {first.name}'s date last night?"),
                (first, "No way! What happened? Tell me everything."),
                (second, f"{first.name} got stood up and ended up crying into their latte!"),
            ])
            created += 1

    return created


def seed_db() -> None:
    """Create tables and load the sample users and conversations."""
    init_db()
    db = SessionLocal()
    try:
        users = seed_users(db)
        created = seed_conversations(db, users)
        db.commit()
        print(f"Seed data created successfully ({len(users)} users, {created} conversations)")
    except Exception as e:
        db.rollback()
        print(f"Error seeding data: {e}")
        raise
    finally:
        db.close()


def clear_conversations() -> int:
    """Delete every conversation; messages and participant links go with them."""
    db = SessionLocal()
    try:
        conversations = db.query(Conversation).all()
        for conversation in conversations:
            db.delete(conversation)
        db.commit()
        print(f"All conversations cleared successfully ({len(conversations)} removed)")
        return len(conversations)
    except Exception as e:
        db.rollback()
        print(f"Error clearing conversations: {e}")
        raise
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed or clear the chat database")
    parser.add_argument("--clear", action="store_true", help="delete every conversation instead of seeding")
    args = parser.parse_args()

    if args.clear:
        clear_conversations()
    else:
        seed_db()


if __name__ == "__main__":
    main()
