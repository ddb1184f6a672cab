from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from formfind.config import Settings
from formfind.content_parts import parts_text
from formfind.logging import get_logger
from formfind.service.errors import ConfigurationError, UpstreamError

logger = get_logger(__name__)

# Segments are plain dicts with a "type" key:
#   text / reasoning       {"text"}
#   tool-call              {"tool_call_id", "tool_name", "args"}
#   tool-result            {"tool_call_id", "result"}
#   file                   {"mime_type", "data"}  (base64 data)
#   finish                 {"finish_reason", "usage": {"prompt_tokens", "completion_tokens"}}
Segment = Dict[str, Any]


class ModelBackend(Protocol):
    """Interface for pluggable streaming generation backends."""

    provider: str

    def stream(self, model_id: str, messages: List[dict]) -> AsyncIterator[Segment]: ...


def _split_data_url(url: str) -> Optional[tuple[str, str]]:
    """Return ``(mime_type, base64_data)`` for a ``data:`` URL."""
    if not url.startswith("data:"):
        return None
    header, sep, data = url[5:].partition(",")
    if not sep or not header.endswith(";base64"):
        return None
    return header[: -len(";base64")] or "application/octet-stream", data


class ReasoningExtractor:
    """Split ``<think>...</think>`` tagged text into reasoning segments.

    Tags may straddle chunk boundaries, so a trailing fragment that could
    still become a tag is held back until the next chunk or :meth:`flush`.
    """

    def __init__(self, tag: str = "think") -> None:
        self._open = f"<{tag}>"
        self._close = f"</{tag}>"
        self._buffer = ""
        self._in_reasoning = False

    @staticmethod
    def _partial_suffix(text: str, tag: str) -> int:
        for size in range(min(len(tag) - 1, len(text)), 0, -1):
            if text.endswith(tag[:size]):
                return size
        return 0

    def _emit(self, out: List[Segment], text: str) -> None:
        if text:
            out.append({"type": "reasoning" if self._in_reasoning else "text", "text": text})

    def feed(self, text: str) -> List[Segment]:
        self._buffer += text
        out: List[Segment] = []
        while True:
            tag = self._close if self._in_reasoning else self._open
            idx = self._buffer.find(tag)
            if idx == -1:
                keep = self._partial_suffix(self._buffer, tag)
                cut = len(self._buffer) - keep
                self._emit(out, self._buffer[:cut])
                self._buffer = self._buffer[cut:]
                return out
            self._emit(out, self._buffer[:idx])
            self._buffer = self._buffer[idx + len(tag):]
            self._in_reasoning = not self._in_reasoning

    def flush(self) -> List[Segment]:
        out: List[Segment] = []
        self._emit(out, self._buffer)
        self._buffer = ""
        return out


class GoogleGenerativeBackend:
    """Gemini ``streamGenerateContent`` over server-sent events.

    Requests both text and image output so design images come back inline.
    """

    provider = "google"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={"x-goog-api-key": self.api_key or ""},
                transport=self._transport,
            )
        return self._client

    @staticmethod
    def _to_contents(messages: List[dict]) -> tuple[List[dict], Optional[dict]]:
        contents: List[dict] = []
        system_texts: List[str] = []
        for msg in messages:
            role = msg.get("role")
            if role == "system":
                system_texts.append(parts_text(msg.get("parts") or []))
                continue
            parts: List[dict] = []
            for part in msg.get("parts") or []:
                if part.get("type") == "text" and part.get("text"):
                    parts.append({"text": part["text"]})
                elif part.get("type") == "file" and part.get("data"):
                    parts.append(
                        {"inlineData": {"mimeType": part.get("mimeType"), "data": part["data"]}}
                    )
            for attachment in msg.get("attachments") or []:
                url = attachment.get("url") or ""
                inline = _split_data_url(url)
                if inline:
                    parts.append({"inlineData": {"mimeType": inline[0], "data": inline[1]}})
                else:
                    parts.append(
                        {
                            "fileData": {
                                "fileUri": url,
                                "mimeType": attachment.get("contentType") or "image/png",
                            }
                        }
                    )
            if not parts:
                continue
            contents.append({"role": "model" if role == "assistant" else "user", "parts": parts})
        system = (
            {"parts": [{"text": "\n\n".join(t for t in system_texts if t)}]}
            if any(system_texts)
            else None
        )
        return contents, system

    async def stream(self, model_id: str, messages: List[dict]) -> AsyncIterator[Segment]:
        if not self.is_configured:
            raise ConfigurationError("GOOGLE_GENERATIVE_AI_API_KEY is not set")
        contents, system = self._to_contents(messages)
        body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"responseModalities": ["TEXT", "IMAGE"]},
        }
        if system:
            body["systemInstruction"] = system
        url = f"{self.base_url}/models/{model_id}:streamGenerateContent"
        client = await self._get_client()
        finish_reason = "stop"
        usage = {"prompt_tokens": 0, "completion_tokens": 0}
        try:
            async with client.stream("POST", url, params={"alt": "sse"}, json=body) as response:
                if response.status_code >= 400:
                    await response.aread()
                    response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    payload = line[5:].strip()
                    if not payload:
                        continue
                    chunk = json.loads(payload)
                    for candidate in chunk.get("candidates") or []:
                        for part in (candidate.get("content") or {}).get("parts") or []:
                            if part.get("text"):
                                seg_type = "reasoning" if part.get("thought") else "text"
                                yield {"type": seg_type, "text": part["text"]}
                            inline = part.get("inlineData")
                            if inline and inline.get("data"):
                                yield {
                                    "type": "file",
                                    "mime_type": inline.get("mimeType") or "image/png",
                                    "data": inline["data"],
                                }
                        if candidate.get("finishReason"):
                            finish_reason = str(candidate["finishReason"]).lower()
                    meta = chunk.get("usageMetadata") or {}
                    if meta:
                        usage = {
                            "prompt_tokens": int(meta.get("promptTokenCount") or 0),
                            "completion_tokens": int(meta.get("candidatesTokenCount") or 0),
                        }
        except httpx.HTTPStatusError as exc:
            logger.error(
                "google_generate_api_error",
                model=model_id,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise UpstreamError(
                f"Model request failed: {exc.response.status_code}",
                detail={"provider": self.provider, "model": model_id},
            ) from exc
        except httpx.TimeoutException as exc:
            logger.error("google_generate_timeout", model=model_id, error=str(exc))
            raise UpstreamError("Model request timed out") from exc
        except httpx.ConnectError as exc:
            logger.error("google_generate_connect_error", api_base=self.base_url, error=str(exc))
            raise UpstreamError("Failed to connect to model service") from exc
        yield {"type": "finish", "finish_reason": finish_reason, "usage": usage}

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


class OpenAIChatBackend:
    """OpenAI-compatible streaming chat completions."""

    provider = "openai"

    def __init__(self, *, api_key: Optional[str], base_url: Optional[str] = None) -> None:
        self.api_key = api_key
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url) if api_key else None

    @staticmethod
    def _to_messages(messages: List[dict]) -> List[dict]:
        converted: List[dict] = []
        for msg in messages:
            text = parts_text(msg.get("parts") or [])
            images = [
                {"type": "image_url", "image_url": {"url": a["url"]}}
                for a in msg.get("attachments") or []
                if a.get("url")
            ]
            if images and msg.get("role") == "user":
                content: Any = [{"type": "text", "text": text}] + images
            else:
                content = text
            converted.append({"role": msg.get("role"), "content": content})
        return converted

    async def stream(self, model_id: str, messages: List[dict]) -> AsyncIterator[Segment]:
        if not self.client:
            raise ConfigurationError("OPENAI_API_KEY is not set")
        tool_calls: Dict[int, Dict[str, Any]] = {}
        finish_reason = "stop"
        usage = {"prompt_tokens": 0, "completion_tokens": 0}
        try:
            completion = await self.client.chat.completions.create(
                model=model_id,
                messages=self._to_messages(messages),
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in completion:
                if chunk.usage:
                    usage = {
                        "prompt_tokens": chunk.usage.prompt_tokens or 0,
                        "completion_tokens": chunk.usage.completion_tokens or 0,
                    }
                choices = chunk.choices or []
                if not choices:
                    continue
                choice = choices[0]
                delta = choice.delta
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield {"type": "reasoning", "text": reasoning}
                if delta.content:
                    yield {"type": "text", "text": delta.content}
                for call in delta.tool_calls or []:
                    pending = tool_calls.setdefault(
                        call.index, {"id": None, "name": None, "arguments": ""}
                    )
                    if call.id:
                        pending["id"] = call.id
                    if call.function and call.function.name:
                        pending["name"] = call.function.name
                    if call.function and call.function.arguments:
                        pending["arguments"] += call.function.arguments
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except openai.APIStatusError as exc:
            logger.error(
                "openai_generate_api_error",
                model=model_id,
                status_code=exc.status_code,
                error=str(exc),
            )
            raise UpstreamError(
                f"Model request failed: {exc.status_code}",
                detail={"provider": self.provider, "model": model_id},
            ) from exc
        except (openai.APITimeoutError, openai.APIConnectionError) as exc:
            logger.error("openai_generate_connect_error", model=model_id, error=str(exc))
            raise UpstreamError("Failed to connect to model service") from exc
        for index in sorted(tool_calls):
            pending = tool_calls[index]
            try:
                args = json.loads(pending["arguments"] or "{}")
            except ValueError:
                args = {"raw": pending["arguments"]}
            yield {
                "type": "tool-call",
                "tool_call_id": pending["id"] or f"call_{index}",
                "tool_name": pending["name"],
                "args": args,
            }
        yield {"type": "finish", "finish_reason": finish_reason, "usage": usage}


_MOCK_RESPONSES: Dict[str, List[str]] = {
    "chat": ["Here is ", "a furniture ", "design idea ", "for you."],
    "reasoning": [
        "<think>The user wants ",
        "a design.</th",
        "ink>Here is ",
        "a furniture design idea.",
    ],
    "title": ["Furniture design request"],
    "artifact": ["A simple oak side table."],
}


class MockBackend:
    """Deterministic backend used by tests and ``TEST_MODE`` runs.

    ``scripts`` maps a model id to the exact segments to emit; unknown ids
    fall back to canned text. ``delay`` sleeps between segments so timeouts
    and disconnects can be exercised.
    """

    provider = "mock"

    def __init__(
        self,
        scripts: Optional[Dict[str, List[Segment]]] = None,
        *,
        delay: float = 0.0,
    ) -> None:
        self.scripts = scripts or {}
        self.delay = delay
        self.calls: List[tuple[str, List[dict]]] = []

    async def stream(self, model_id: str, messages: List[dict]) -> AsyncIterator[Segment]:
        self.calls.append((model_id, messages))
        if model_id in self.scripts:
            segments = list(self.scripts[model_id])
        else:
            chunks = _MOCK_RESPONSES.get(model_id, _MOCK_RESPONSES["chat"])
            prompt_words = sum(len(parts_text(m.get("parts") or []).split()) for m in messages)
            segments = [{"type": "text", "text": chunk} for chunk in chunks]
            segments.append(
                {
                    "type": "finish",
                    "finish_reason": "stop",
                    "usage": {
                        "prompt_tokens": prompt_words,
                        "completion_tokens": len("".join(chunks).split()),
                    },
                }
            )
        for segment in segments:
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(segment, Exception):
                raise segment
            yield dict(segment)


def build_backends(settings: Settings) -> Dict[str, ModelBackend]:
    """Instantiate one backend per provider named in model specs."""
    return {
        "mock": MockBackend(),
        "google": GoogleGenerativeBackend(
            api_key=settings.google_api_key,
            base_url=settings.google_base_url,
            timeout=settings.turn_timeout_seconds,
        ),
        "openai": OpenAIChatBackend(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
        ),
    }
