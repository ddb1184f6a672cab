from __future__ import annotations

import asyncio
import re
from typing import Optional

from formfind.content_parts import parts_text
from formfind.logging import get_logger
from formfind.service.gateway import ModelGateway

logger = get_logger(__name__)

TITLE_INSTRUCTIONS = (
    "- you will generate a short title based on the first message a user begins a conversation with\n"
    "- ensure it is not more than 80 characters long\n"
    "- the title should be a summary of the user's message\n"
    "- do not use quotes or colons"
)

MAX_TITLE_LENGTH = 80


def truncate_title(message: Optional[str], max_length: int = 50) -> str:
    """Title from the message text, cut at a word boundary where possible."""
    if not message:
        return "New conversation"
    cleaned = " ".join(message.split())
    if not cleaned:
        return "New conversation"
    if len(cleaned) <= max_length:
        return cleaned
    truncated = cleaned[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length // 2:
        truncated = truncated[:last_space]
    return truncated.rstrip(".,!?;:") + "..."


def clean_title(raw: str) -> str:
    title = " ".join(raw.split())
    title = re.sub(r"[\"'`:“”‘’]", "", title).strip()
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH].rstrip()
    return title


async def _collect_text(stream) -> str:
    collected = []
    async for segment in stream:
        if segment.get("type") == "text":
            collected.append(segment.get("text") or "")
    return "".join(collected)


class TitleGenerator:
    def __init__(self, gateway: ModelGateway, selector: str = "title-model") -> None:
        self.gateway = gateway
        self.selector = selector

    async def generate(self, message: dict, *, timeout: Optional[float] = None) -> str:
        """Model-written title; truncates the message text instead when the
        model fails or runs past ``timeout`` seconds."""
        text = parts_text(message.get("parts") or []) or message.get("content") or ""
        history = [
            {"role": "system", "parts": [{"type": "text", "text": TITLE_INSTRUCTIONS}]},
            {"role": "user", "parts": [{"type": "text", "text": text}]},
        ]
        stream = None
        try:
            stream = self.gateway.generate(history, self.selector)
            title = clean_title(await asyncio.wait_for(_collect_text(stream), timeout))
        except asyncio.TimeoutError:
            logger.warning("title_generation_timed_out", selector=self.selector, timeout_seconds=timeout)
            title = ""
        except Exception as exc:
            logger.warning(
                "title_generation_failed",
                selector=self.selector,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            title = ""
        finally:
            if stream is not None:
                await stream.aclose()
        return title or truncate_title(text)
