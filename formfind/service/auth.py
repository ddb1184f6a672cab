from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

from formfind.config import Settings
from formfind.logging import get_logger
from formfind.storage.models import Session, User
from formfind.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(self, email: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(self, user_id: str, ttl_minutes: int = 60 * 24) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...


@dataclass
class AuthContext:
    """The identity a request acts as. ``None`` in its place means anonymous."""

    user_id: str
    session_id: Optional[str] = None


class AuthService:
    """Resolve session ids into identities; never raises for a bad session."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.logger = logger

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def create_session(self, user_id: str) -> Session:
        sess = self.store.create_session(
            user_id, ttl_minutes=self.settings.session_ttl_minutes
        )
        if self.cache:
            await self.cache.cache_session(sess.id, sess.user_id, sess.expires_at)
        self.logger.info("session_created", user_id=user_id, session_id=sess.id)
        return sess

    async def resolve_session(self, session_id: Optional[str]) -> Optional[AuthContext]:
        if not session_id:
            return None
        if self.cache:
            # revocation deletes the key and the TTL tracks session expiry
            cached_user = await self.cache.get_session_user(session_id)
            if cached_user:
                user = await asyncio.to_thread(self.store.get_user, cached_user)
                if user:
                    return AuthContext(user_id=user.id, session_id=session_id)
        sess = await asyncio.to_thread(self.store.get_session, session_id)
        if not sess:
            return None
        if sess.is_expired:
            self.logger.info("session_expired", session_id=session_id)
            return None
        user = await asyncio.to_thread(self.store.get_user, sess.user_id)
        if not user:
            return None
        if self.cache:
            await self.cache.cache_session(sess.id, sess.user_id, sess.expires_at)
        return AuthContext(user_id=user.id, session_id=sess.id)

    async def authenticate(
        self,
        authorization: Optional[str],
        session_id: Optional[str],
    ) -> Optional[AuthContext]:
        """Bearer token first, then the explicit session id (header or cookie)."""
        token = self._extract_bearer(authorization)
        if token:
            ctx = await self.resolve_session(token)
            if ctx:
                return ctx
        return await self.resolve_session(session_id)

    async def revoke(self, session_id: str) -> None:
        self.store.revoke_session(session_id)
        if self.cache:
            await self.cache.revoke_session(session_id)
