from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List

from formfind.content_parts import Attachment, MessagePart, normalize_parts

ROLES = ("user", "assistant", "system", "tool")


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            meta=meta,
        )

    @property
    def is_expired(self) -> bool:
        expires_at = self.expires_at
        if expires_at.tzinfo is not None:
            return expires_at <= datetime.now(timezone.utc)
        return expires_at <= datetime.utcnow()


@dataclass
class Chat:
    id: str
    user_id: str
    title: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    visibility: str = "private"


@dataclass
class Message:
    """Current-generation message: typed parts plus attachments."""

    id: str
    chat_id: str
    role: str
    parts: List[MessagePart]
    attachments: List[Attachment] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class LegacyMessage:
    """Legacy-generation message with flat text content."""

    id: str
    chat_id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_message(self) -> Message:
        return Message(
            id=self.id,
            chat_id=self.chat_id,
            role=self.role,
            parts=normalize_parts(None, self.content),
            attachments=[],
            created_at=self.created_at,
        )


@dataclass
class Vote:
    chat_id: str
    message_id: str
    is_upvote: bool
    # "current" or "legacy", following the generation of the voted message
    generation: str = "current"
