from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Optional

from formfind.logging import get_logger
from formfind.service.auth import AuthContext
from formfind.service.ownership import OwnershipGuard

logger = get_logger(__name__)


class DeletionResult(str, Enum):
    DELETED = "deleted"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"


class ChatDeletionFlow:
    """Owner-only removal of a chat and everything hanging off it.

    Unlike the read paths, a missing chat is reported as ``NOT_FOUND`` so a
    repeated delete is distinguishable from a foreign one.
    """

    def __init__(self, store: Any, guard: OwnershipGuard) -> None:
        self.store = store
        self.guard = guard

    async def delete(self, identity: Optional[AuthContext], chat_id: str) -> DeletionResult:
        if identity is None:
            return DeletionResult.UNAUTHORIZED
        chat = await asyncio.to_thread(self.store.get_chat, chat_id)
        if chat is None:
            return DeletionResult.NOT_FOUND
        if not self.guard.check(identity, chat).authorized:
            return DeletionResult.UNAUTHORIZED
        deleted = await asyncio.to_thread(self.store.delete_chat, chat_id)
        if not deleted:
            # lost a race with another delete
            return DeletionResult.NOT_FOUND
        logger.info("chat_deleted", chat_id=chat_id, user_id=identity.user_id)
        return DeletionResult.DELETED
