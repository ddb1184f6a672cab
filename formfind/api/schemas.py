from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Maximum nested JSON depth in message parts
MAX_JSON_DEPTH = 20
# Maximum list items (messages, parts, attachments)
MAX_ARRAY_ITEMS = 1000
# Maximum length of a single text field
MAX_STRING_LENGTH = 65536


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON.

    Raises:
        ValueError: If depth or array length exceeds the limits
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class UIMessage(BaseModel):
    """A chat message as sent by the browser client."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = Field(None, max_length=128)
    role: Literal["user", "assistant", "system", "tool", "data"]
    content: Optional[str] = Field(None, max_length=MAX_STRING_LENGTH)
    parts: Optional[List[Dict[str, Any]]] = None
    experimental_attachments: Optional[List[Dict[str, Any]]] = None

    @field_validator("parts", "experimental_attachments")
    @classmethod
    def _bounded(cls, value: Optional[List[Dict[str, Any]]]) -> Optional[List[Dict[str, Any]]]:
        if value is not None:
            _validate_json_depth(value)
        return value


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, max_length=128)
    messages: List[UIMessage] = Field(..., max_length=MAX_ARRAY_ITEMS)
    selected_chat_model: str = Field(
        "chat-model", alias="selectedChatModel", max_length=128
    )


class VoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., alias="chatId", min_length=1, max_length=128)
    message_id: str = Field(..., alias="messageId", min_length=1, max_length=128)
    type: Literal["up", "down"]


class SimilarProductsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_url: Optional[str] = Field(None, alias="imageUrl", max_length=4096)
    image_base64: Optional[str] = Field(None, alias="imageBase64")


class _CamelOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)


class ChatOut(_CamelOut):
    id: str
    title: str
    user_id: str = Field(alias="userId")
    created_at: datetime = Field(alias="createdAt")
    visibility: str = "private"


class MessageOut(_CamelOut):
    id: str
    chat_id: str = Field(alias="chatId")
    role: str
    parts: List[Dict[str, Any]] = Field(default_factory=list)
    attachments: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(alias="createdAt")


class VoteOut(_CamelOut):
    chat_id: str = Field(alias="chatId")
    message_id: str = Field(alias="messageId")
    is_upvote: bool = Field(alias="isUpvote")


class ChatDetailResponse(BaseModel):
    chat: ChatOut
    messages: List[MessageOut]


class HistoryResponse(BaseModel):
    chats: List[ChatOut]
