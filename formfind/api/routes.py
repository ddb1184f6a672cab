from __future__ import annotations

import asyncio
from typing import Optional, Tuple

from fastapi import APIRouter, Cookie, Depends, Header, Query
from fastapi.responses import FileResponse, PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from formfind.api.schemas import (
    ChatDetailResponse,
    ChatOut,
    ChatRequest,
    HistoryResponse,
    MessageOut,
    SimilarProductsRequest,
    VoteOut,
    VoteRequest,
)
from formfind.logging import get_logger
from formfind.service.auth import AuthContext
from formfind.service.deletion import DeletionResult
from formfind.service.errors import (
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    RateLimitedError,
)
from formfind.service.orchestrator import TurnRequest
from formfind.service.runtime import check_rate_limit, get_runtime
from formfind.service.stream_protocol import STREAM_HEADERS, STREAM_MEDIA_TYPE
from formfind.storage.errors import ConstraintViolation
from formfind.storage.models import Chat, Message

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


async def get_credentials(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias="session_id"),
) -> Tuple[Optional[str], Optional[str]]:
    """Raw caller credentials; nothing is looked up yet."""
    return authorization, session_id or session_cookie


async def get_optional_user(
    credentials: Tuple[Optional[str], Optional[str]] = Depends(get_credentials),
) -> Optional[AuthContext]:
    """Resolve the caller; ``None`` when there is no valid session."""
    runtime = get_runtime()
    return await runtime.auth.authenticate(*credentials)


async def get_user(
    identity: Optional[AuthContext] = Depends(get_optional_user),
) -> AuthContext:
    if identity is None:
        raise AuthenticationError("Unauthorized")
    return identity


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        raise RateLimitedError("Too many requests", detail={"key": key})


def _chat_out(chat: Chat) -> ChatOut:
    return ChatOut(
        id=chat.id,
        title=chat.title,
        user_id=chat.user_id,
        created_at=chat.created_at,
        visibility=chat.visibility,
    )


def _message_out(message: Message) -> MessageOut:
    return MessageOut(
        id=message.id,
        chat_id=message.chat_id,
        role=message.role,
        parts=list(message.parts),
        attachments=list(message.attachments),
        created_at=message.created_at,
    )


@router.post("/chat")
async def chat(
    body: ChatRequest,
    identity: Optional[AuthContext] = Depends(get_optional_user),
):
    runtime = get_runtime()
    if identity is None:
        raise AuthenticationError("Unauthorized")
    await _enforce_rate_limit(
        runtime,
        f"chat:{identity.user_id}",
        runtime.settings.chat_rate_limit_per_minute,
        runtime.settings.chat_rate_limit_window_seconds,
    )
    turn = await runtime.orchestrator.begin(
        identity,
        TurnRequest(
            chat_id=body.id,
            messages=[m.model_dump(exclude_none=True) for m in body.messages],
            selected_chat_model=body.selected_chat_model,
        ),
    )
    return StreamingResponse(
        runtime.orchestrator.stream(turn),
        media_type=STREAM_MEDIA_TYPE,
        headers=STREAM_HEADERS,
        # releases the turn gate if the body was never iterated
        background=BackgroundTask(runtime.orchestrator.abandon, turn),
    )


@router.delete("/chat", response_class=PlainTextResponse)
async def delete_chat(
    id: Optional[str] = Query(None),
    credentials: Tuple[Optional[str], Optional[str]] = Depends(get_credentials),
):
    # checked before the session lookup so a bare DELETE never touches the store
    if not id:
        return PlainTextResponse("Not Found", status_code=404)
    runtime = get_runtime()
    identity = await runtime.auth.authenticate(*credentials)
    result = await runtime.deletion.delete(identity, id)
    if result is DeletionResult.UNAUTHORIZED:
        return PlainTextResponse("Unauthorized", status_code=401)
    if result is DeletionResult.NOT_FOUND:
        return PlainTextResponse("Not Found", status_code=404)
    return PlainTextResponse("Chat deleted", status_code=200)


@router.get("/chat/{chat_id}", response_model=ChatDetailResponse)
async def get_chat(chat_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    chat = await asyncio.to_thread(runtime.guard.require_owned, principal, chat_id)
    messages = await asyncio.to_thread(runtime.store.get_messages_by_chat_id, chat_id)
    return ChatDetailResponse(
        chat=_chat_out(chat), messages=[_message_out(m) for m in messages]
    )


@router.get("/history", response_model=HistoryResponse)
async def history(
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    chats = await asyncio.to_thread(runtime.store.list_chats, principal.user_id, limit)
    return HistoryResponse(chats=[_chat_out(c) for c in chats])


@router.get("/vote")
async def get_votes(
    chat_id: Optional[str] = Query(None, alias="chatId"),
    identity: Optional[AuthContext] = Depends(get_optional_user),
):
    if not chat_id:
        raise BadRequestError("chatId is required")
    runtime = get_runtime()
    await asyncio.to_thread(runtime.guard.require_owned, identity, chat_id)
    votes = await asyncio.to_thread(runtime.store.get_votes_by_chat_id, chat_id)
    return [
        VoteOut(chat_id=v.chat_id, message_id=v.message_id, is_upvote=v.is_upvote).model_dump(
            by_alias=True
        )
        for v in votes
    ]


@router.patch("/vote", response_class=PlainTextResponse)
async def vote(body: VoteRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.guard.require_owned, principal, body.chat_id)
    try:
        await asyncio.to_thread(
            runtime.store.vote_message, body.chat_id, body.message_id, body.type == "up"
        )
    except ConstraintViolation as exc:
        raise NotFoundError("Message not found", detail=exc.detail) from exc
    logger.info(
        "message_voted",
        chat_id=body.chat_id,
        message_id=body.message_id,
        vote=body.type,
    )
    return PlainTextResponse("Message voted", status_code=200)


@router.post("/search/similar-products")
async def similar_products(body: SimilarProductsRequest):
    runtime = get_runtime()
    products = await runtime.visual_search.similar_products(
        image_url=body.image_url, image_base64=body.image_base64
    )
    return {"similarProducts": products}


@router.get("/files/{name}")
async def get_file(name: str):
    runtime = get_runtime()
    path = runtime.blobs.path_for(name)
    if not path.is_file():
        return PlainTextResponse("Not Found", status_code=404)
    return FileResponse(path)
