"""Selector resolution and the streaming generation handle.

The gateway is the only place that knows which backend serves a selector.
Callers get a :class:`GenerationStream`: an async iterator of segments that
also assembles the response messages once drained.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from formfind.config import ModelEntry, ModelRegistry
from formfind.content_parts import PartsAccumulator, normalize_attachments, normalize_parts
from formfind.logging import get_logger
from formfind.service.errors import ConfigurationError
from formfind.service.model_backend import ModelBackend, ReasoningExtractor, Segment

logger = get_logger(__name__)


@dataclass
class ResponseMetadata:
    messages: List[dict] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: Dict[str, int] = field(
        default_factory=lambda: {"prompt_tokens": 0, "completion_tokens": 0}
    )


async def _extract_reasoning(source: AsyncIterator[Segment]) -> AsyncIterator[Segment]:
    extractor = ReasoningExtractor()
    try:
        async for segment in source:
            if segment.get("type") == "text":
                for piece in extractor.feed(segment.get("text") or ""):
                    yield piece
                continue
            for piece in extractor.flush():
                yield piece
            yield segment
        for piece in extractor.flush():
            yield piece
    finally:
        await source.aclose()


class GenerationStream:
    """Async iterator over one generation's segments.

    The first segment is always ``step-start`` carrying the assistant message
    id; the last is always ``finish``. :attr:`response` is only readable once
    the stream has been drained.
    """

    def __init__(self, message_id: str, source: AsyncIterator[Segment], entry: ModelEntry) -> None:
        self.message_id = message_id
        self.entry = entry
        self._source = source
        self._accumulator = PartsAccumulator()
        self._started = False
        self._finished = False
        self._drained = False
        self._override: Optional[List[dict]] = None
        self._finish_reason = "stop"
        self._usage = {"prompt_tokens": 0, "completion_tokens": 0}

    def __aiter__(self) -> "GenerationStream":
        return self

    async def __anext__(self) -> Segment:
        if self._drained:
            raise StopAsyncIteration
        if not self._started:
            self._started = True
            return {"type": "step-start", "message_id": self.message_id}
        if self._finished:
            self._drained = True
            raise StopAsyncIteration
        try:
            segment = await self._source.__anext__()
        except StopAsyncIteration:
            # backend ended without a finish segment
            self._finished = True
            return self._finish_segment()
        if segment.get("type") == "finish":
            self._finished = True
            self._finish_reason = segment.get("finish_reason") or "stop"
            self._usage = dict(segment.get("usage") or self._usage)
            if segment.get("messages") is not None:
                self._override = list(segment["messages"])
            await self._source.aclose()
            return self._finish_segment()
        self._accumulator.add(segment)
        return segment

    def _finish_segment(self) -> Segment:
        return {
            "type": "finish",
            "finish_reason": self._finish_reason,
            "usage": dict(self._usage),
        }

    @property
    def parts(self) -> List[dict]:
        return self._accumulator.snapshot()

    @property
    def response(self) -> ResponseMetadata:
        if not self._drained:
            raise RuntimeError("response metadata is only available after the stream is drained")
        if self._override is not None:
            messages = [
                {
                    "id": raw.get("id") or self.message_id,
                    "role": raw.get("role") or "assistant",
                    "parts": normalize_parts(raw.get("parts"), raw.get("content")),
                    "attachments": normalize_attachments(raw.get("attachments")),
                }
                for raw in self._override
                if isinstance(raw, Mapping)
            ]
        elif self._accumulator.has_content:
            messages = [
                {
                    "id": self.message_id,
                    "role": "assistant",
                    "parts": self._accumulator.snapshot(),
                    "attachments": [],
                }
            ]
        else:
            messages = []
        return ResponseMetadata(
            messages=messages, finish_reason=self._finish_reason, usage=dict(self._usage)
        )

    async def aclose(self) -> None:
        """Stop the upstream call; safe to call more than once."""
        self._finished = True
        self._drained = True
        await self._source.aclose()


class ModelGateway:
    def __init__(self, registry: ModelRegistry, backends: Mapping[str, ModelBackend]) -> None:
        self.registry = registry
        self.backends = dict(backends)

    def resolve(self, selector: str) -> ModelEntry:
        entry = self.registry.get(selector)
        if entry is None:
            raise ConfigurationError(
                f"Unknown model selector: {selector}",
                detail={"selector": selector, "available": self.registry.selectors()},
            )
        if entry.provider not in self.backends:
            raise ConfigurationError(
                f"No backend registered for provider: {entry.provider}",
                detail={"selector": selector},
            )
        return entry

    def generate(self, history: List[dict], selector: str) -> GenerationStream:
        entry = self.resolve(selector)
        backend = self.backends[entry.provider]
        message_id = str(uuid.uuid4())
        source: AsyncIterator[Any] = backend.stream(entry.model_id, history)
        if entry.extract_reasoning:
            source = _extract_reasoning(source)
        logger.info(
            "generation_started",
            selector=selector,
            provider=entry.provider,
            model=entry.model_id,
            message_id=message_id,
            history_length=len(history),
        )
        return GenerationStream(message_id, source, entry)
