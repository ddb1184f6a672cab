from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from formfind.content_parts import normalize_attachments, normalize_parts
from formfind.logging import get_logger
from formfind.storage.errors import ConstraintViolation, DuplicateIdError
from formfind.storage.models import (
    ROLES,
    Chat,
    LegacyMessage,
    Message,
    Session,
    User,
    Vote,
)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


class PostgresStore:
    """Postgres-backed chat store covering both message and vote generations."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        required_tables = [
            "app_user",
            "auth_session",
            "chat",
            "message",
            "message_v2",
            "vote",
            "vote_v2",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )
        # chat and message ids are caller-assigned strings, not necessarily UUIDs
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name, column_name FROM information_schema.columns "
                "WHERE table_schema = 'public' AND table_name = ANY(%s) "
                "AND column_name IN ('id', 'chat_id', 'message_id') AND data_type <> 'text'",
                (["chat", "message", "message_v2", "vote", "vote_v2"],),
            ).fetchall()
        if rows:
            raise RuntimeError(
                "Chat and message id columns must be TEXT: {}. Migrate them before starting.".format(
                    ", ".join(sorted(f"{r['table_name']}.{r['column_name']}" for r in rows))
                )
            )

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(self, email: str) -> User:
        user = User(id=str(uuid.uuid4()), email=email)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO app_user (id, email, created_at) VALUES (%s, %s, %s)",
                    (user.id, user.email, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return User(
            id=str(row["id"]),
            email=row["email"],
            created_at=row.get("created_at", datetime.utcnow()),
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return User(
            id=str(row["id"]),
            email=row["email"],
            created_at=row.get("created_at", datetime.utcnow()),
        )

    # sessions
    def create_session(self, user_id: str, ttl_minutes: int = 60 * 24) -> Session:
        sess = Session.new(user_id=user_id, ttl_minutes=ttl_minutes)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, meta)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        json.dumps(sess.meta) if sess.meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row.get("created_at", datetime.utcnow()),
            expires_at=row.get("expires_at", datetime.utcnow()),
            meta=_load_json(row.get("meta")),
        )

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    # chats
    @staticmethod
    def _chat_from_row(row: dict) -> Chat:
        return Chat(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row.get("title") or "",
            created_at=row.get("created_at", datetime.utcnow()),
            visibility=row.get("visibility") or "private",
        )

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM chat WHERE id = %s", (chat_id,)).fetchone()
        return self._chat_from_row(row) if row else None

    def save_chat(self, chat_id: str, user_id: str, title: str) -> Chat:
        chat = Chat(id=chat_id, user_id=user_id, title=title)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO chat (id, user_id, title, created_at, visibility) VALUES (%s, %s, %s, %s, %s)",
                    (chat.id, chat.user_id, chat.title, chat.created_at, chat.visibility),
                )
        except errors.UniqueViolation:
            raise DuplicateIdError("chat already exists", {"chat_id": chat_id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("chat owner missing", {"user_id": user_id})
        return chat

    def list_chats(self, user_id: str, limit: int = 20) -> List[Chat]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [self._chat_from_row(row) for row in rows]

    def delete_chat(self, chat_id: str) -> bool:
        """Remove a chat with its messages and votes of both generations."""
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("DELETE FROM vote_v2 WHERE chat_id = %s", (chat_id,))
                conn.execute("DELETE FROM vote WHERE chat_id = %s", (chat_id,))
                conn.execute("DELETE FROM message_v2 WHERE chat_id = %s", (chat_id,))
                conn.execute("DELETE FROM message WHERE chat_id = %s", (chat_id,))
                result = conn.execute("DELETE FROM chat WHERE id = %s", (chat_id,))
                deleted = result.rowcount > 0
        if deleted:
            self.logger.info("chat_deleted", chat_id=chat_id)
        return deleted

    # messages
    def _message_generation(self, conn, message_id: str) -> Optional[tuple[str, str]]:
        row = conn.execute(
            """
            SELECT 'current' AS generation, chat_id FROM message_v2 WHERE id = %s
            UNION ALL
            SELECT 'legacy' AS generation, chat_id FROM message WHERE id = %s
            LIMIT 1
            """,
            (message_id, message_id),
        ).fetchone()
        if not row:
            return None
        return row["generation"], str(row["chat_id"])

    def save_messages(self, messages: Sequence[Message]) -> List[Message]:
        """Insert current-generation messages in one transaction."""
        stored: List[Message] = []
        for msg in messages:
            if msg.role not in ROLES:
                raise ConstraintViolation("invalid role", {"role": msg.role})
            stored.append(
                Message(
                    id=msg.id,
                    chat_id=msg.chat_id,
                    role=msg.role,
                    parts=normalize_parts(msg.parts),
                    attachments=normalize_attachments(msg.attachments),
                    created_at=msg.created_at,
                )
            )
        try:
            with self._connect() as conn:
                with conn.transaction():
                    for msg in stored:
                        # ids are unique across both generations
                        if self._message_generation(conn, msg.id):
                            raise DuplicateIdError(
                                "message id already exists", {"message_id": msg.id}
                            )
                        conn.execute(
                            """
                            INSERT INTO message_v2 (id, chat_id, role, parts, attachments, created_at)
                            VALUES (%s, %s, %s, %s, %s, %s)
                            """,
                            (
                                msg.id,
                                msg.chat_id,
                                msg.role,
                                json.dumps(msg.parts),
                                json.dumps(msg.attachments),
                                msg.created_at,
                            ),
                        )
        except errors.UniqueViolation:
            raise DuplicateIdError(
                "message id already exists", {"message_ids": [m.id for m in stored]}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "chat not found", {"chat_ids": sorted({m.chat_id for m in stored})}
            )
        return stored

    def get_messages_by_chat_id(self, chat_id: str) -> List[Message]:
        with self._connect() as conn:
            current_rows = conn.execute(
                "SELECT * FROM message_v2 WHERE chat_id = %s ORDER BY created_at ASC",
                (chat_id,),
            ).fetchall()
            legacy_rows = conn.execute(
                "SELECT * FROM message WHERE chat_id = %s ORDER BY created_at ASC",
                (chat_id,),
            ).fetchall()
        merged: List[Message] = []
        for row in legacy_rows:
            merged.append(
                LegacyMessage(
                    id=str(row["id"]),
                    chat_id=str(row["chat_id"]),
                    role=row["role"],
                    content=row.get("content") or "",
                    created_at=row.get("created_at", datetime.utcnow()),
                ).to_message()
            )
        for row in current_rows:
            merged.append(
                Message(
                    id=str(row["id"]),
                    chat_id=str(row["chat_id"]),
                    role=row["role"],
                    parts=normalize_parts(_load_json(row.get("parts"))),
                    attachments=normalize_attachments(_load_json(row.get("attachments"))),
                    created_at=row.get("created_at", datetime.utcnow()),
                )
            )
        merged.sort(key=lambda m: m.created_at)
        return merged

    # votes
    def vote_message(self, chat_id: str, message_id: str, is_upvote: bool) -> Vote:
        with self._connect() as conn:
            with conn.transaction():
                located = self._message_generation(conn, message_id)
                if not located or located[1] != chat_id:
                    raise ConstraintViolation(
                        "message not found",
                        {"chat_id": chat_id, "message_id": message_id},
                    )
                generation = located[0]
                table = "vote_v2" if generation == "current" else "vote"
                conn.execute(
                    f"""
                    INSERT INTO {table} (chat_id, message_id, is_upvote)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (chat_id, message_id) DO UPDATE SET is_upvote = EXCLUDED.is_upvote
                    """,
                    (chat_id, message_id, is_upvote),
                )
        return Vote(
            chat_id=chat_id,
            message_id=message_id,
            is_upvote=is_upvote,
            generation=generation,
        )

    def get_votes_by_chat_id(self, chat_id: str) -> List[Vote]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT chat_id, message_id, is_upvote, 'legacy' AS generation FROM vote WHERE chat_id = %s
                UNION ALL
                SELECT chat_id, message_id, is_upvote, 'current' AS generation FROM vote_v2 WHERE chat_id = %s
                """,
                (chat_id, chat_id),
            ).fetchall()
        return [
            Vote(
                chat_id=str(row["chat_id"]),
                message_id=str(row["message_id"]),
                is_upvote=bool(row["is_upvote"]),
                generation=row["generation"],
            )
            for row in rows
        ]
