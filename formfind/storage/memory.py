from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

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


class MemoryStore:
    """In-memory message store persisted to a JSON snapshot under ``fs_root``.

    Holds both message generations and both vote generations. Every mutation
    happens under one re-entrant lock and is followed by a snapshot write, so
    a restart reloads exactly what was committed.
    """

    def __init__(self, fs_root: str = "/tmp/formfind") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.chats: Dict[str, Chat] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.legacy_messages: Dict[str, List[LegacyMessage]] = {}
        self.votes: Dict[Tuple[str, str], Vote] = {}
        self.legacy_votes: Dict[Tuple[str, str], Vote] = {}
        # RLock so helpers can be called while a mutation already holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # users and sessions
    def create_user(self, email: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email)
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def create_session(self, user_id: str, ttl_minutes: int = 60 * 24) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(user_id=user_id, ttl_minutes=ttl_minutes)
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)
            self._persist_state()

    # chats
    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._data_lock:
            return self.chats.get(chat_id)

    def save_chat(self, chat_id: str, user_id: str, title: str) -> Chat:
        with self._data_lock:
            if chat_id in self.chats:
                raise DuplicateIdError("chat already exists", {"chat_id": chat_id})
            if user_id not in self.users:
                raise ConstraintViolation("chat owner missing", {"user_id": user_id})
            chat = Chat(id=chat_id, user_id=user_id, title=title)
            self.chats[chat_id] = chat
            self.messages[chat_id] = []
            self._persist_state()
            return chat

    def list_chats(self, user_id: str, limit: int = 20) -> List[Chat]:
        with self._data_lock:
            chats = [c for c in self.chats.values() if c.user_id == user_id]
        chats.sort(key=lambda c: c.created_at, reverse=True)
        return chats[:limit]

    def delete_chat(self, chat_id: str) -> bool:
        """Remove a chat with its messages and votes of both generations."""
        with self._data_lock:
            if chat_id not in self.chats:
                return False
            for votes in (self.votes, self.legacy_votes):
                for key in [k for k in votes if k[0] == chat_id]:
                    votes.pop(key, None)
            self.messages.pop(chat_id, None)
            self.legacy_messages.pop(chat_id, None)
            self.chats.pop(chat_id, None)
            self._persist_state()
            return True

    # messages
    def _message_generation(self, message_id: str) -> Optional[Tuple[str, str]]:
        """Return ``(generation, chat_id)`` for a stored message id."""
        for chat_id, msgs in self.messages.items():
            if any(m.id == message_id for m in msgs):
                return ("current", chat_id)
        for chat_id, legacy in self.legacy_messages.items():
            if any(m.id == message_id for m in legacy):
                return ("legacy", chat_id)
        return None

    def save_messages(self, messages: Sequence[Message]) -> List[Message]:
        """Insert current-generation messages; all or nothing."""
        with self._data_lock:
            seen: set[str] = set()
            for msg in messages:
                if msg.chat_id not in self.chats:
                    raise ConstraintViolation("chat not found", {"chat_id": msg.chat_id})
                if msg.role not in ROLES:
                    raise ConstraintViolation("invalid role", {"role": msg.role})
                if msg.id in seen or self._message_generation(msg.id):
                    raise DuplicateIdError("message id already exists", {"message_id": msg.id})
                seen.add(msg.id)
            stored: List[Message] = []
            for msg in messages:
                record = Message(
                    id=msg.id,
                    chat_id=msg.chat_id,
                    role=msg.role,
                    parts=normalize_parts(msg.parts),
                    attachments=normalize_attachments(msg.attachments),
                    created_at=msg.created_at,
                )
                self.messages.setdefault(msg.chat_id, []).append(record)
                stored.append(record)
            self._persist_state()
            return stored

    def get_messages_by_chat_id(self, chat_id: str) -> List[Message]:
        """Both generations merged in creation order, legacy rows normalized."""
        with self._data_lock:
            current = list(self.messages.get(chat_id, []))
            legacy = [m.to_message() for m in self.legacy_messages.get(chat_id, [])]
        merged = legacy + current
        merged.sort(key=lambda m: m.created_at)
        return merged

    # votes
    def vote_message(self, chat_id: str, message_id: str, is_upvote: bool) -> Vote:
        with self._data_lock:
            located = self._message_generation(message_id)
            if not located or located[1] != chat_id:
                raise ConstraintViolation(
                    "message not found", {"chat_id": chat_id, "message_id": message_id}
                )
            generation = located[0]
            vote = Vote(
                chat_id=chat_id,
                message_id=message_id,
                is_upvote=is_upvote,
                generation=generation,
            )
            target = self.votes if generation == "current" else self.legacy_votes
            target[(chat_id, message_id)] = vote
            self._persist_state()
            return vote

    def get_votes_by_chat_id(self, chat_id: str) -> List[Vote]:
        with self._data_lock:
            return [
                vote
                for votes in (self.legacy_votes, self.votes)
                for key, vote in votes.items()
                if key[0] == chat_id
            ]

    # snapshot
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "chats": [self._serialize_chat(c) for c in self.chats.values()],
            "messages": [
                self._serialize_message(m)
                for msgs in self.messages.values()
                for m in msgs
            ],
            "legacy_messages": [
                self._serialize_legacy_message(m)
                for msgs in self.legacy_messages.values()
                for m in msgs
            ],
            "votes": [self._serialize_vote(v) for v in self.votes.values()],
            "legacy_votes": [self._serialize_vote(v) for v in self.legacy_votes.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.chats = {c["id"]: self._deserialize_chat(c) for c in data.get("chats", [])}
        self.messages = {}
        for msg_data in data.get("messages", []):
            msg = self._deserialize_message(msg_data)
            self.messages.setdefault(msg.chat_id, []).append(msg)
        self.legacy_messages = {}
        for msg_data in data.get("legacy_messages", []):
            legacy = self._deserialize_legacy_message(msg_data)
            self.legacy_messages.setdefault(legacy.chat_id, []).append(legacy)
        for convo in (*self.messages.values(), *self.legacy_messages.values()):
            convo.sort(key=lambda m: m.created_at)
        self.votes = {}
        for vote_data in data.get("votes", []):
            vote = self._deserialize_vote(vote_data, "current")
            self.votes[(vote.chat_id, vote.message_id)] = vote
        self.legacy_votes = {}
        for vote_data in data.get("legacy_votes", []):
            vote = self._deserialize_vote(vote_data, "legacy")
            self.legacy_votes[(vote.chat_id, vote.message_id)] = vote
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            meta=data.get("meta"),
        )

    def _serialize_chat(self, chat: Chat) -> dict:
        return {
            "id": chat.id,
            "user_id": chat.user_id,
            "title": chat.title,
            "created_at": self._serialize_datetime(chat.created_at),
            "visibility": chat.visibility,
        }

    def _deserialize_chat(self, data: dict) -> Chat:
        return Chat(
            id=data["id"],
            user_id=data["user_id"],
            title=data.get("title") or "",
            created_at=self._deserialize_datetime(data["created_at"]),
            visibility=data.get("visibility", "private"),
        )

    def _serialize_message(self, message: Message) -> dict:
        return {
            "id": message.id,
            "chat_id": message.chat_id,
            "role": message.role,
            "parts": message.parts,
            "attachments": message.attachments,
            "created_at": self._serialize_datetime(message.created_at),
        }

    def _deserialize_message(self, data: dict) -> Message:
        return Message(
            id=data["id"],
            chat_id=data["chat_id"],
            role=data["role"],
            parts=normalize_parts(data.get("parts")),
            attachments=normalize_attachments(data.get("attachments")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_legacy_message(self, message: LegacyMessage) -> dict:
        return {
            "id": message.id,
            "chat_id": message.chat_id,
            "role": message.role,
            "content": message.content,
            "created_at": self._serialize_datetime(message.created_at),
        }

    def _deserialize_legacy_message(self, data: dict) -> LegacyMessage:
        return LegacyMessage(
            id=data["id"],
            chat_id=data["chat_id"],
            role=data["role"],
            content=data.get("content") or "",
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    @staticmethod
    def _serialize_vote(vote: Vote) -> dict:
        return {
            "chat_id": vote.chat_id,
            "message_id": vote.message_id,
            "is_upvote": vote.is_upvote,
        }

    @staticmethod
    def _deserialize_vote(data: dict, generation: str) -> Vote:
        return Vote(
            chat_id=data["chat_id"],
            message_id=data["message_id"],
            is_upvote=bool(data["is_upvote"]),
            generation=generation,
        )
