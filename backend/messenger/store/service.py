"""DuckDB-backed storage for users, conversations and messages.

This module is the persistent store behind both the REST endpoints and the
real-time channel. The service implements the singleton pattern so that one
database connection is shared by the whole process.

Database Schema:
    users:                     id, first_name, last_name, avatar_url, created_at
    conversations:             id, is_group, name, photo_url, created_at, direct_key
    conversation_participants: (conversation_id, user_id), nickname, is_admin,
                               is_muted, joined_at
    messages:                  id, seq, conversation_id, sender_id, content, created_at
    message_reactions:         (message_id, user_id), reaction, created_at
    message_deletions:         (message_id, user_id), deleted_for_everyone

Direct conversations carry a ``direct_key`` (the two user ids, sorted, joined
with ``:``) under a UNIQUE constraint, so two direct conversations between
the same pair cannot exist even when creation requests race.

Thread Safety:
    The DuckDB connection is NOT thread-safe. The service is used from the
    event loop thread only; every call is synchronous and short.

Usage:
    store = MessagingStore.get_instance()
    message = store.create_message(conversation_id, sender_id, "hi")
    history = store.get_history(conversation_id, viewer_id)
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

import duckdb

from messenger.errors import PersistenceError

from .schemas import (
    Conversation,
    ConversationInfo,
    ConversationMember,
    ConversationSummary,
    LastMessage,
    Message,
    MessageView,
    Participant,
    ReactionEntry,
    UserPublic,
)

logger = logging.getLogger(__name__)

DEFAULT_DELETED_PLACEHOLDER = "[Message deleted]"

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id          VARCHAR PRIMARY KEY,
        first_name  VARCHAR NOT NULL,
        last_name   VARCHAR NOT NULL,
        avatar_url  VARCHAR,
        created_at  TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id          VARCHAR PRIMARY KEY,
        is_group    BOOLEAN NOT NULL DEFAULT FALSE,
        name        VARCHAR,
        photo_url   VARCHAR,
        created_at  TIMESTAMP NOT NULL,
        direct_key  VARCHAR UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_participants (
        conversation_id VARCHAR NOT NULL,
        user_id         VARCHAR NOT NULL,
        nickname        VARCHAR,
        is_admin        BOOLEAN NOT NULL DEFAULT FALSE,
        is_muted        BOOLEAN NOT NULL DEFAULT FALSE,
        joined_at       TIMESTAMP NOT NULL,
        PRIMARY KEY (conversation_id, user_id)
    )
    """,
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              VARCHAR PRIMARY KEY,
        seq             BIGINT DEFAULT nextval('messages_seq'),
        conversation_id VARCHAR NOT NULL,
        sender_id       VARCHAR NOT NULL,
        content         VARCHAR NOT NULL,
        created_at      TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id)",
    """
    CREATE TABLE IF NOT EXISTS message_reactions (
        message_id  VARCHAR NOT NULL,
        user_id     VARCHAR NOT NULL,
        reaction    VARCHAR NOT NULL,
        created_at  TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_deletions (
        message_id           VARCHAR NOT NULL,
        user_id              VARCHAR NOT NULL,
        deleted_for_everyone BOOLEAN NOT NULL DEFAULT FALSE,
        PRIMARY KEY (message_id, user_id)
    )
    """,
]

_MEMBER_COLUMNS = "u.id, u.first_name, u.last_name, u.avatar_url, p.nickname, p.is_admin, p.joined_at"


def direct_key_for(user_a: str, user_b: str) -> str:
    """Canonical uniqueness key for the direct conversation between two users."""
    first, second = sorted((user_a, user_b))
    return f"{first}:{second}"


class MessagingStore:
    """Singleton service for conversations, messages, reactions and deletions.

    Every public method wraps ``duckdb.Error`` in ``PersistenceError`` so that
    callers deal with a single failure type.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessagingStore"] = None
    _db_path: str = "messenger.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[Store] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessagingStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and drop the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        for statement in _SCHEMA:
            conn.execute(statement)

    @contextmanager
    def _guard(self, operation: str) -> Iterator[duckdb.DuckDBPyConnection]:
        try:
            yield self._get_connection()
        except duckdb.Error as exc:
            raise PersistenceError(str(exc), operation=operation) from exc

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    # =========================================================================
    # Users
    # =========================================================================

    def upsert_user(
        self,
        first_name: str,
        last_name: str,
        avatar_url: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> UserPublic:
        """Insert a user or refresh the profile fields of an existing one."""
        user_id = user_id or str(uuid.uuid4())
        with self._guard("upsert_user") as conn:
            conn.execute(
                """
                INSERT INTO users (id, first_name, last_name, avatar_url, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    avatar_url = excluded.avatar_url
                """,
                [user_id, first_name, last_name, avatar_url, datetime.utcnow()],
            )
        return UserPublic(id=user_id, first_name=first_name, last_name=last_name, avatar_url=avatar_url)

    def get_user_public(self, user_id: str) -> Optional[UserPublic]:
        with self._guard("get_user_public") as conn:
            row = conn.execute(
                "SELECT id, first_name, last_name, avatar_url FROM users WHERE id = ?",
                [user_id],
            ).fetchone()
        if row is None:
            return None
        return UserPublic(id=row[0], first_name=row[1], last_name=row[2], avatar_url=row[3])

    # =========================================================================
    # Conversations and participants
    # =========================================================================

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._guard("get_conversation") as conn:
            row = conn.execute(
                """
                SELECT id, is_group, name, photo_url, created_at, direct_key
                FROM conversations WHERE id = ?
                """,
                [conversation_id],
            ).fetchone()
        if row is None:
            return None
        return Conversation(
            id=row[0], is_group=row[1], name=row[2], photo_url=row[3],
            created_at=row[4], direct_key=row[5],
        )

    def find_direct_conversation(self, user_a: str, user_b: str) -> Optional[str]:
        """Return the id of the direct conversation between two users, if any."""
        with self._guard("find_direct_conversation") as conn:
            row = conn.execute(
                "SELECT id FROM conversations WHERE direct_key = ?",
                [direct_key_for(user_a, user_b)],
            ).fetchone()
        return row[0] if row else None

    def get_or_create_direct_conversation(self, user_a: str, user_b: str) -> Tuple[str, bool]:
        """Find or create the direct conversation between two users.

        Returns:
            Tuple of (conversation_id, created).
        """
        existing = self.find_direct_conversation(user_a, user_b)
        if existing:
            return existing, False

        conversation_id = str(uuid.uuid4())
        now = datetime.utcnow()
        with self._guard("create_direct_conversation") as conn:
            conn.begin()
            try:
                conn.execute(
                    """
                    INSERT INTO conversations (id, is_group, name, photo_url, created_at, direct_key)
                    VALUES (?, FALSE, NULL, NULL, ?, ?)
                    """,
                    [conversation_id, now, direct_key_for(user_a, user_b)],
                )
                for user_id in (user_a, user_b):
                    conn.execute(
                        """
                        INSERT INTO conversation_participants
                            (conversation_id, user_id, nickname, is_admin, is_muted, joined_at)
                        VALUES (?, ?, NULL, FALSE, FALSE, ?)
                        """,
                        [conversation_id, user_id, now],
                    )
                conn.commit()
            except duckdb.ConstraintException:
                # Lost the race against another creator of the same pair.
                conn.rollback()
                existing = self.find_direct_conversation(user_a, user_b)
                if existing is None:
                    raise
                return existing, False
            except duckdb.Error:
                conn.rollback()
                raise
        logger.info("[Store] Created direct conversation %s for %s/%s", conversation_id, user_a, user_b)
        return conversation_id, True

    def create_group_conversation(self, creator_id: str, name: Optional[str], user_ids: List[str]) -> str:
        """Create a group with the creator as its only admin."""
        conversation_id = str(uuid.uuid4())
        now = datetime.utcnow()
        members = [uid for uid in dict.fromkeys(user_ids) if uid != creator_id]
        with self._guard("create_group_conversation") as conn:
            conn.begin()
            try:
                conn.execute(
                    """
                    INSERT INTO conversations (id, is_group, name, photo_url, created_at, direct_key)
                    VALUES (?, TRUE, ?, NULL, ?, NULL)
                    """,
                    [conversation_id, name or "Group Chat", now],
                )
                conn.execute(
                    """
                    INSERT INTO conversation_participants
                        (conversation_id, user_id, nickname, is_admin, is_muted, joined_at)
                    VALUES (?, ?, NULL, TRUE, FALSE, ?)
                    """,
                    [conversation_id, creator_id, now],
                )
                for user_id in members:
                    conn.execute(
                        """
                        INSERT INTO conversation_participants
                            (conversation_id, user_id, nickname, is_admin, is_muted, joined_at)
                        VALUES (?, ?, NULL, FALSE, FALSE, ?)
                        """,
                        [conversation_id, user_id, now],
                    )
                conn.commit()
            except duckdb.Error:
                conn.rollback()
                raise
        logger.info("[Store] Created group %s with %d members", conversation_id, len(members) + 1)
        return conversation_id

    def update_conversation(
        self,
        conversation_id: str,
        name: Optional[str] = None,
        photo_url: Optional[str] = None,
    ) -> None:
        fields = {k: v for k, v in (("name", name), ("photo_url", photo_url)) if v is not None}
        if not fields:
            return
        set_clause = ", ".join(f"{k} = ?" for k in fields)
        with self._guard("update_conversation") as conn:
            conn.execute(
                f"UPDATE conversations SET {set_clause} WHERE id = ?",
                list(fields.values()) + [conversation_id],
            )

    def is_participant(self, conversation_id: str, user_id: str) -> bool:
        """Check standing membership. Always hits the database."""
        with self._guard("is_participant") as conn:
            row = conn.execute(
                """
                SELECT 1 FROM conversation_participants
                WHERE conversation_id = ? AND user_id = ?
                """,
                [conversation_id, user_id],
            ).fetchone()
        return row is not None

    def get_participant(self, conversation_id: str, user_id: str) -> Optional[Participant]:
        with self._guard("get_participant") as conn:
            row = conn.execute(
                """
                SELECT conversation_id, user_id, nickname, is_admin, is_muted, joined_at
                FROM conversation_participants
                WHERE conversation_id = ? AND user_id = ?
                """,
                [conversation_id, user_id],
            ).fetchone()
        if row is None:
            return None
        return Participant(
            conversation_id=row[0], user_id=row[1], nickname=row[2],
            is_admin=row[3], is_muted=row[4], joined_at=row[5],
        )

    def add_participant(self, conversation_id: str, user_id: str, is_admin: bool = False) -> bool:
        """Add a member. Existing memberships are left untouched.

        Returns:
            True if a new membership was created.
        """
        if self.is_participant(conversation_id, user_id):
            return False
        with self._guard("add_participant") as conn:
            conn.execute(
                """
                INSERT INTO conversation_participants
                    (conversation_id, user_id, nickname, is_admin, is_muted, joined_at)
                VALUES (?, ?, NULL, ?, FALSE, ?)
                """,
                [conversation_id, user_id, is_admin, datetime.utcnow()],
            )
        return True

    def remove_participant(self, conversation_id: str, user_id: str) -> bool:
        with self._guard("remove_participant") as conn:
            rows = conn.execute(
                """
                DELETE FROM conversation_participants
                WHERE conversation_id = ? AND user_id = ?
                RETURNING user_id
                """,
                [conversation_id, user_id],
            ).fetchall()
        return len(rows) > 0

    def set_muted(self, conversation_id: str, user_id: str, muted: bool) -> None:
        with self._guard("set_muted") as conn:
            conn.execute(
                """
                UPDATE conversation_participants SET is_muted = ?
                WHERE conversation_id = ? AND user_id = ?
                """,
                [muted, conversation_id, user_id],
            )

    def set_nickname(self, conversation_id: str, user_id: str, nickname: Optional[str]) -> None:
        with self._guard("set_nickname") as conn:
            conn.execute(
                """
                UPDATE conversation_participants SET nickname = ?
                WHERE conversation_id = ? AND user_id = ?
                """,
                [nickname, conversation_id, user_id],
            )

    def list_members(self, conversation_id: str, exclude_user_id: Optional[str] = None) -> List[ConversationMember]:
        """Participants joined with their profiles, oldest membership first."""
        query = (
            f"SELECT {_MEMBER_COLUMNS} FROM conversation_participants p "
            "JOIN users u ON u.id = p.user_id WHERE p.conversation_id = ?"
        )
        params = [conversation_id]
        if exclude_user_id is not None:
            query += " AND p.user_id <> ?"
            params.append(exclude_user_id)
        query += " ORDER BY p.joined_at ASC, u.id ASC"
        with self._guard("list_members") as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ConversationMember(
                id=r[0], first_name=r[1], last_name=r[2], avatar_url=r[3],
                nickname=r[4], is_admin=r[5], joined_at=r[6],
            )
            for r in rows
        ]

    def count_participants(self, conversation_id: str) -> int:
        with self._guard("count_participants") as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM conversation_participants WHERE conversation_id = ?",
                [conversation_id],
            ).fetchone()
        return int(row[0])

    def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        """The user's conversations, most recently active first."""
        with self._guard("list_conversations") as conn:
            rows = conn.execute(
                """
                SELECT c.id, c.is_group, c.name, c.photo_url, c.created_at, p.is_muted
                FROM conversation_participants p
                JOIN conversations c ON c.id = p.conversation_id
                WHERE p.user_id = ?
                """,
                [user_id],
            ).fetchall()

        summaries = []
        for row in rows:
            conversation_id = row[0]
            summaries.append(ConversationSummary(
                id=conversation_id,
                is_group=row[1],
                name=row[2],
                photo_url=row[3],
                created_at=row[4],
                participants=self.list_members(conversation_id, exclude_user_id=user_id),
                last_message=self.last_message(conversation_id),
                is_muted=row[5],
                member_count=self.count_participants(conversation_id),
            ))

        summaries.sort(
            key=lambda s: s.last_message.created_at if s.last_message else s.created_at,
            reverse=True,
        )
        return summaries

    def get_conversation_info(self, conversation_id: str, viewer_id: str) -> Optional[ConversationInfo]:
        """Metadata for a conversation as seen by ``viewer_id``.

        Returns None if either the conversation or the viewer's membership is
        missing; callers check membership first to tell the two apart.
        """
        conversation = self.get_conversation(conversation_id)
        participant = self.get_participant(conversation_id, viewer_id)
        if conversation is None or participant is None:
            return None
        return ConversationInfo(
            id=conversation.id,
            is_group=conversation.is_group,
            name=conversation.name,
            photo_url=conversation.photo_url,
            created_at=conversation.created_at,
            members=self.list_members(conversation_id),
            is_muted=participant.is_muted,
            my_nickname=participant.nickname,
            is_admin=participant.is_admin,
        )

    # =========================================================================
    # Messages
    # =========================================================================

    def create_message(self, conversation_id: str, sender_id: str, content: str) -> Message:
        """Persist a message. ``created_at`` is assigned here, at write time."""
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            created_at=datetime.utcnow(),
        )
        with self._guard("create_message") as conn:
            conn.execute(
                """
                INSERT INTO messages (id, conversation_id, sender_id, content, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [message.id, conversation_id, sender_id, content, message.created_at],
            )
        return message

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._guard("get_message") as conn:
            row = conn.execute(
                """
                SELECT id, conversation_id, sender_id, content, created_at
                FROM messages WHERE id = ?
                """,
                [message_id],
            ).fetchone()
        if row is None:
            return None
        return Message(id=row[0], conversation_id=row[1], sender_id=row[2], content=row[3], created_at=row[4])

    def last_message(self, conversation_id: str) -> Optional[LastMessage]:
        with self._guard("last_message") as conn:
            row = conn.execute(
                """
                SELECT content, created_at, sender_id FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at DESC, seq DESC
                LIMIT 1
                """,
                [conversation_id],
            ).fetchone()
        if row is None:
            return None
        return LastMessage(content=row[0], created_at=row[1], sender_id=row[2])

    def materialize(self, message: Message) -> MessageView:
        """Attach the sender profile and current reactions to a message."""
        return MessageView(
            **message.model_dump(),
            sender=self.get_user_public(message.sender_id),
            reactions=self.list_reactions(message.id),
        )

    # =========================================================================
    # Reactions
    # =========================================================================

    def set_reaction(self, message_id: str, user_id: str, reaction: str) -> None:
        """Upsert the user's reaction on a message (last write wins)."""
        with self._guard("set_reaction") as conn:
            conn.execute(
                """
                INSERT INTO message_reactions (message_id, user_id, reaction, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (message_id, user_id) DO UPDATE SET
                    reaction = excluded.reaction,
                    created_at = excluded.created_at
                """,
                [message_id, user_id, reaction, datetime.utcnow()],
            )

    def remove_reaction(self, message_id: str, user_id: str) -> bool:
        with self._guard("remove_reaction") as conn:
            rows = conn.execute(
                """
                DELETE FROM message_reactions
                WHERE message_id = ? AND user_id = ?
                RETURNING user_id
                """,
                [message_id, user_id],
            ).fetchall()
        return len(rows) > 0

    def list_reactions(self, message_id: str) -> List[ReactionEntry]:
        with self._guard("list_reactions") as conn:
            rows = conn.execute(
                """
                SELECT user_id, reaction FROM message_reactions
                WHERE message_id = ?
                ORDER BY created_at ASC, user_id ASC
                """,
                [message_id],
            ).fetchall()
        return [ReactionEntry(user_id=r[0], reaction=r[1]) for r in rows]

    # =========================================================================
    # Deletions
    # =========================================================================

    def mark_deleted(self, message_id: str, user_id: str, for_everyone: bool) -> None:
        """Upsert the (message, user) deletion marker."""
        with self._guard("mark_deleted") as conn:
            conn.execute(
                """
                INSERT INTO message_deletions (message_id, user_id, deleted_for_everyone)
                VALUES (?, ?, ?)
                ON CONFLICT (message_id, user_id) DO UPDATE SET
                    deleted_for_everyone = message_deletions.deleted_for_everyone
                        OR excluded.deleted_for_everyone
                """,
                [message_id, user_id, for_everyone],
            )

    def get_deletion(self, message_id: str, user_id: str) -> Optional[bool]:
        """Return the marker's ``deleted_for_everyone`` flag, or None if unmarked."""
        with self._guard("get_deletion") as conn:
            row = conn.execute(
                """
                SELECT deleted_for_everyone FROM message_deletions
                WHERE message_id = ? AND user_id = ?
                """,
                [message_id, user_id],
            ).fetchone()
        return None if row is None else bool(row[0])

    # =========================================================================
    # History
    # =========================================================================

    def get_history(
        self,
        conversation_id: str,
        viewer_id: str,
        placeholder: str = DEFAULT_DELETED_PLACEHOLDER,
    ) -> List[MessageView]:
        """Ordered message history reconciled against deletion markers.

        A message the viewer deleted for themselves is left out. A message
        deleted for everyone is kept with its content replaced by
        ``placeholder``, whoever the viewer is.
        """
        with self._guard("get_history") as conn:
            message_rows = conn.execute(
                """
                SELECT m.id, m.conversation_id, m.sender_id, m.content, m.created_at,
                       u.id, u.first_name, u.last_name, u.avatar_url
                FROM messages m
                LEFT JOIN users u ON u.id = m.sender_id
                WHERE m.conversation_id = ?
                ORDER BY m.created_at ASC, m.seq ASC
                """,
                [conversation_id],
            ).fetchall()
            reaction_rows = conn.execute(
                """
                SELECT r.message_id, r.user_id, r.reaction
                FROM message_reactions r
                JOIN messages m ON m.id = r.message_id
                WHERE m.conversation_id = ?
                ORDER BY r.created_at ASC, r.user_id ASC
                """,
                [conversation_id],
            ).fetchall()
            deletion_rows = conn.execute(
                """
                SELECT d.message_id, d.user_id, d.deleted_for_everyone
                FROM message_deletions d
                JOIN messages m ON m.id = d.message_id
                WHERE m.conversation_id = ?
                """,
                [conversation_id],
            ).fetchall()

        reactions: Dict[str, List[ReactionEntry]] = {}
        for message_id, user_id, reaction in reaction_rows:
            reactions.setdefault(message_id, []).append(ReactionEntry(user_id=user_id, reaction=reaction))

        hidden_for_viewer = set()
        deleted_for_everyone = set()
        for message_id, user_id, for_everyone in deletion_rows:
            if for_everyone:
                deleted_for_everyone.add(message_id)
            elif user_id == viewer_id:
                hidden_for_viewer.add(message_id)

        history = []
        for row in message_rows:
            message_id = row[0]
            if message_id in hidden_for_viewer:
                continue
            gone = message_id in deleted_for_everyone
            sender = None
            if row[5] is not None:
                sender = UserPublic(id=row[5], first_name=row[6], last_name=row[7], avatar_url=row[8])
            history.append(MessageView(
                id=message_id,
                conversation_id=row[1],
                sender_id=row[2],
                content=placeholder if gone else row[3],
                created_at=row[4],
                sender=sender,
                reactions=reactions.get(message_id, []),
                deleted_for_everyone=gone,
            ))
        return history
