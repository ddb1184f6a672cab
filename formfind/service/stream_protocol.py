"""Data stream wire encoding.

Each segment becomes one ``<code>:<json>\\n`` line, which is the format the
chat front end's data stream reader consumes.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, AsyncIterator, Dict, Optional

from formfind.logging import sanitize_error_message

STREAM_HEADERS = {
    "x-vercel-ai-data-stream": "v1",
    "Cache-Control": "no-cache",
}
STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"

_WORD_CHUNK = re.compile(r"\S+\s+")


def _line(code: str, value: Any) -> str:
    return f"{code}:{json.dumps(value, separators=(',', ':'), ensure_ascii=False)}\n"


def _usage(segment: Dict[str, Any]) -> Dict[str, Optional[int]]:
    usage = segment.get("usage") or {}
    return {
        "promptTokens": usage.get("prompt_tokens"),
        "completionTokens": usage.get("completion_tokens"),
    }


def encode_segment(segment: Dict[str, Any]) -> str:
    """Encode one segment; ``finish`` yields the step and message finish lines."""
    seg_type = segment.get("type")
    if seg_type == "step-start":
        return _line("f", {"messageId": segment.get("message_id")})
    if seg_type == "text":
        return _line("0", segment.get("text") or "")
    if seg_type == "reasoning":
        return _line("g", segment.get("text") or "")
    if seg_type == "tool-call":
        return _line(
            "9",
            {
                "toolCallId": segment.get("tool_call_id"),
                "toolName": segment.get("tool_name"),
                "args": segment.get("args") or {},
            },
        )
    if seg_type == "tool-result":
        return _line(
            "a",
            {"toolCallId": segment.get("tool_call_id"), "result": segment.get("result")},
        )
    if seg_type == "file":
        return _line("k", {"mimeType": segment.get("mime_type"), "data": segment.get("data")})
    if seg_type == "finish":
        reason = segment.get("finish_reason") or "stop"
        usage = _usage(segment)
        return _line(
            "e", {"finishReason": reason, "usage": usage, "isContinued": False}
        ) + _line("d", {"finishReason": reason, "usage": usage})
    if seg_type == "error":
        return encode_error(segment.get("error"))
    raise ValueError(f"unknown segment type: {seg_type!r}")


def format_stream_error(error: Any) -> str:
    if error is None:
        return "Unknown error occurred"
    if isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        return f"Error: {sanitize_error_message(str(error))}"
    try:
        return json.dumps(error)
    except (TypeError, ValueError):
        return "Unknown error occurred"


def encode_error(error: Any) -> str:
    return _line("3", format_stream_error(error))


async def smooth_words(
    segments: AsyncIterator[Dict[str, Any]], delay_seconds: float = 0.01
) -> AsyncIterator[Dict[str, Any]]:
    """Re-chunk text segments into whole words (word plus trailing whitespace).

    Buffered text is flushed before any non-text segment and at the end,
    including when the upstream raises, so the concatenated text is exactly
    what the model produced.
    """
    buffer = ""
    try:
        async for segment in segments:
            if segment.get("type") != "text":
                if buffer:
                    yield {"type": "text", "text": buffer}
                    buffer = ""
                yield segment
                continue
            buffer += segment.get("text") or ""
            while True:
                match = _WORD_CHUNK.search(buffer)
                if not match:
                    break
                chunk = buffer[: match.end()]
                buffer = buffer[len(chunk):]
                yield {"type": "text", "text": chunk}
                if delay_seconds > 0:
                    await asyncio.sleep(delay_seconds)
    except Exception:
        if buffer:
            yield {"type": "text", "text": buffer}
        raise
    if buffer:
        yield {"type": "text", "text": buffer}
