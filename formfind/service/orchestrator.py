"""Chat turn orchestration.

A turn is split in two halves so the HTTP layer can still answer with a
plain status code when setup fails:

* :meth:`TurnOrchestrator.begin` runs everything up to and including the
  durable write of the user message and raises service errors.
* :meth:`TurnOrchestrator.stream` is the async generator behind the streaming
  response. It never raises into the client: generation failures become a
  single terminal error line and the assistant message is written only after
  the model stream completed normally.

The turn gate taken in ``begin`` is released when ``stream`` finishes, or by
:meth:`TurnOrchestrator.abandon` if the response is never streamed.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from formfind.config import Settings
from formfind.content_parts import (
    normalize_attachments,
    normalize_parts,
    prepend_to_first_text,
)
from formfind.logging import get_logger
from formfind.service.auth import AuthContext
from formfind.service.errors import (
    AuthenticationError,
    BadRequestError,
    ServiceError,
    TurnSetupError,
)
from formfind.service.gateway import GenerationStream, ModelGateway
from formfind.service.ownership import OwnershipGuard
from formfind.service.stream_protocol import encode_error, encode_segment, smooth_words
from formfind.service.titles import TitleGenerator
from formfind.service.turn_gate import TurnGate
from formfind.storage.errors import DuplicateIdError
from formfind.storage.models import Chat, Message

logger = get_logger(__name__)


class TurnState(str, Enum):
    RECEIVED = "Received"
    AUTHORIZED = "Authorized"
    CHAT_ENSURED = "ChatEnsured"
    USER_MESSAGE_PERSISTED = "UserMessagePersisted"
    GENERATING = "Generating"
    FINALIZING = "Finalizing"
    PERSISTED = "Persisted"
    FAILED = "Failed"


class TurnTimeoutError(Exception):
    pass


@dataclass
class TurnRequest:
    chat_id: str
    messages: List[Dict[str, Any]]
    selected_chat_model: str


@dataclass
class Turn:
    request: TurnRequest
    identity: AuthContext
    selector: str
    user_message: Optional[Message] = None
    chat: Optional[Chat] = None
    created_chat: bool = False
    history: List[dict] = field(default_factory=list)
    state: TurnState = TurnState.RECEIVED
    assistant_message_id: Optional[str] = None
    gate_held: bool = False
    deadline: Optional[float] = None

    @property
    def chat_id(self) -> str:
        return self.request.chat_id


def most_recent_user_message(messages: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for message in reversed(messages):
        if message.get("role") == "user":
            return message
    return None


def _attachments_of(message: Dict[str, Any]) -> List[dict]:
    raw = message.get("experimental_attachments")
    if raw is None:
        raw = message.get("attachments")
    return normalize_attachments(raw)


def build_history(
    messages: List[Dict[str, Any]],
    directive: str,
    *,
    directive_history_limit: int = 2,
) -> List[dict]:
    """Model-facing history: uniform parts shape, directive on short chats.

    The directive goes in front of the latest user message's first text part
    of a copy; request messages are left untouched.
    """
    history = [
        {
            "id": message.get("id"),
            "role": message.get("role"),
            "parts": normalize_parts(message.get("parts"), message.get("content")),
            "attachments": _attachments_of(message),
        }
        for message in messages
    ]
    if len(history) <= directive_history_limit:
        for entry in reversed(history):
            if entry["role"] == "user":
                entry["parts"] = prepend_to_first_text(
                    entry["parts"], f"{directive}\n\nUser says: "
                )
                break
    return history


class TurnOrchestrator:
    def __init__(
        self,
        store: Any,
        gateway: ModelGateway,
        guard: OwnershipGuard,
        gate: TurnGate,
        titles: TitleGenerator,
        settings: Settings,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.guard = guard
        self.gate = gate
        self.titles = titles
        self.settings = settings

    def _transition(self, turn: Turn, state: TurnState, **extra: Any) -> None:
        turn.state = state
        logger.info(
            "turn_state",
            state=state.value,
            chat_id=turn.chat_id,
            user_id=turn.identity.user_id,
            selector=turn.selector,
            **extra,
        )

    async def begin(self, identity: Optional[AuthContext], request: TurnRequest) -> Turn:
        if identity is None:
            raise AuthenticationError("Unauthorized")
        user_payload = most_recent_user_message(request.messages)
        if user_payload is None:
            raise BadRequestError("No user message found")
        # unknown selectors fail here, before any write
        self.gateway.resolve(request.selected_chat_model)
        turn = Turn(request=request, identity=identity, selector=request.selected_chat_model)
        # one budget for title generation and the model stream together
        turn.deadline = asyncio.get_running_loop().time() + self.settings.turn_timeout_seconds
        self._transition(turn, TurnState.RECEIVED, message_count=len(request.messages))

        try:
            existing = await asyncio.to_thread(self.store.get_chat, request.chat_id)
            authorization = self.guard.check(identity, existing)
            if not authorization.authorized:
                raise AuthenticationError("Unauthorized")
            self._transition(turn, TurnState.AUTHORIZED, chat_exists=existing is not None)

            await self.gate.acquire(request.chat_id)
            turn.gate_held = True

            turn.chat = authorization.chat or await self._create_chat(turn, user_payload)
            self._transition(turn, TurnState.CHAT_ENSURED, created=turn.created_chat)

            turn.user_message = await self._persist_user_message(turn, user_payload)
            self._transition(
                turn, TurnState.USER_MESSAGE_PERSISTED, message_id=turn.user_message.id
            )
        except ServiceError as exc:
            await self._fail_setup(turn, exc)
            raise
        except Exception as exc:
            await self._fail_setup(turn, exc)
            raise TurnSetupError() from exc

        turn.history = build_history(
            request.messages,
            self.settings.directive_text,
            directive_history_limit=self.settings.directive_history_limit,
        )
        return turn

    async def _fail_setup(self, turn: Turn, exc: Exception) -> None:
        level = logger.warning if isinstance(exc, ServiceError) and exc.status_code < 500 else logger.error
        level(
            "turn_setup_failed",
            chat_id=turn.chat_id,
            state=turn.state.value,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        turn.state = TurnState.FAILED
        await self.abandon(turn)

    async def _create_chat(self, turn: Turn, user_payload: Dict[str, Any]) -> Chat:
        title = await self.titles.generate(user_payload, timeout=self._remaining(turn))
        try:
            chat = await asyncio.to_thread(
                self.store.save_chat, turn.chat_id, turn.identity.user_id, title
            )
        except DuplicateIdError:
            # created concurrently elsewhere; the ownership rule decides again
            raced = await asyncio.to_thread(self.store.get_chat, turn.chat_id)
            authorization = self.guard.check(turn.identity, raced)
            if not authorization.authorized or authorization.chat is None:
                raise AuthenticationError("Unauthorized")
            return authorization.chat
        turn.created_chat = True
        return chat

    async def _persist_user_message(self, turn: Turn, user_payload: Dict[str, Any]) -> Message:
        message = Message(
            id=user_payload.get("id") or str(uuid.uuid4()),
            chat_id=turn.chat_id,
            role="user",
            parts=normalize_parts(user_payload.get("parts"), user_payload.get("content")),
            attachments=_attachments_of(user_payload),
            created_at=datetime.utcnow(),
        )
        try:
            stored = await asyncio.to_thread(self.store.save_messages, [message])
        except Exception as exc:
            logger.error(
                "user_message_persist_failed",
                chat_id=turn.chat_id,
                message_id=message.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TurnSetupError() from exc
        return stored[0]

    async def abandon(self, turn: Turn) -> None:
        """Release the turn gate if this turn still holds it."""
        if turn.gate_held:
            turn.gate_held = False
            await self.gate.release(turn.chat_id)

    def _remaining(self, turn: Turn) -> float:
        loop = asyncio.get_running_loop()
        if turn.deadline is None:
            turn.deadline = loop.time() + self.settings.turn_timeout_seconds
        return max(turn.deadline - loop.time(), 0.0)

    async def _bounded(self, turn: Turn, generation: GenerationStream) -> AsyncIterator[dict]:
        timeout = self.settings.turn_timeout_seconds
        while True:
            remaining = self._remaining(turn)
            if remaining <= 0:
                raise TurnTimeoutError(f"turn timed out after {timeout:g}s")
            try:
                segment = await asyncio.wait_for(generation.__anext__(), remaining)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError:
                raise TurnTimeoutError(f"turn timed out after {timeout:g}s")
            yield segment

    async def stream(self, turn: Turn) -> AsyncIterator[str]:
        generation: Optional[GenerationStream] = None
        delay = self.settings.stream_smoothing_delay_ms / 1000.0
        try:
            self._transition(turn, TurnState.GENERATING, history_length=len(turn.history))
            try:
                generation = self.gateway.generate(turn.history, turn.selector)
                async for segment in smooth_words(self._bounded(turn, generation), delay):
                    yield encode_segment(segment)
            except TurnTimeoutError as exc:
                logger.warning(
                    "turn_timed_out",
                    chat_id=turn.chat_id,
                    timeout_seconds=self.settings.turn_timeout_seconds,
                )
                self._transition(turn, TurnState.FAILED, reason="timeout")
                yield encode_error(exc)
                return
            except Exception as exc:
                logger.error(
                    "turn_generation_failed",
                    chat_id=turn.chat_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self._transition(turn, TurnState.FAILED, reason="generation_error")
                yield encode_error(exc)
                return
            await self._finalize(turn, generation)
        except (GeneratorExit, asyncio.CancelledError):
            self._transition(turn, TurnState.FAILED, reason="client_disconnected")
            raise
        finally:
            if generation is not None:
                await generation.aclose()
            await self.abandon(turn)

    async def _finalize(self, turn: Turn, generation: GenerationStream) -> None:
        self._transition(turn, TurnState.FINALIZING)
        response = generation.response
        assistant_entries = [m for m in response.messages if m.get("role") == "assistant"]
        if not assistant_entries:
            logger.error(
                "turn_missing_assistant_message",
                chat_id=turn.chat_id,
                finish_reason=response.finish_reason,
            )
            self._transition(turn, TurnState.FAILED, reason="no_assistant_message")
            return
        trailing = assistant_entries[-1]
        message = Message(
            id=trailing["id"],
            chat_id=turn.chat_id,
            role="assistant",
            parts=trailing.get("parts") or [],
            attachments=trailing.get("attachments") or [],
            created_at=datetime.utcnow(),
        )
        try:
            await asyncio.to_thread(self.store.save_messages, [message])
        except Exception as exc:
            logger.error(
                "assistant_message_persist_failed",
                chat_id=turn.chat_id,
                message_id=message.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._transition(turn, TurnState.FAILED, reason="persist_failed")
            return
        turn.assistant_message_id = message.id
        self._transition(
            turn,
            TurnState.PERSISTED,
            message_id=message.id,
            usage=response.usage,
        )
