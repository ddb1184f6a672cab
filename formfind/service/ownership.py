"""Single authority on whether an identity may act on a chat.

Ownership is rooted at the chat: messages and votes inherit it. Every route
that reads or mutates chat-scoped data goes through :class:`OwnershipGuard`
instead of comparing user ids itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from formfind.logging import get_logger
from formfind.service.auth import AuthContext
from formfind.service.errors import AuthenticationError
from formfind.storage.models import Chat

logger = get_logger(__name__)


class ChatLookup(Protocol):
    def get_chat(self, chat_id: str) -> Optional[Chat]: ...


@dataclass(frozen=True)
class Authorization:
    authorized: bool
    # only ever set when the identity owns the chat
    chat: Optional[Chat] = None


class OwnershipGuard:
    def __init__(self, store: ChatLookup) -> None:
        self.store = store

    def check(self, identity: Optional[AuthContext], chat: Optional[Chat]) -> Authorization:
        """Decide against an already loaded chat (or its absence)."""
        if identity is None:
            return Authorization(authorized=False)
        if chat is None:
            # free to create; only the creation path acts on this
            return Authorization(authorized=True)
        if chat.user_id == identity.user_id:
            return Authorization(authorized=True, chat=chat)
        logger.warning(
            "ownership_denied", chat_id=chat.id, user_id=identity.user_id
        )
        return Authorization(authorized=False)

    def authorize(self, identity: Optional[AuthContext], chat_id: str) -> Authorization:
        if identity is None:
            return Authorization(authorized=False)
        return self.check(identity, self.store.get_chat(chat_id))

    def require_owned(self, identity: Optional[AuthContext], chat_id: str) -> Chat:
        """Return the chat for its owner; anything else is the same 401.

        A missing chat and a chat owned by someone else are indistinguishable
        to the caller so chat ids cannot be probed.
        """
        if identity is None:
            raise AuthenticationError("Unauthorized")
        result = self.authorize(identity, chat_id)
        if not result.authorized or result.chat is None:
            raise AuthenticationError("Unauthorized")
        return result.chat
