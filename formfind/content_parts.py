"""Normalization of message ``parts`` across the two stored message shapes.

Current-generation messages carry an ordered list of typed parts plus an
attachment list; legacy messages carry a single flat ``content`` string. The
orchestrator and the gateway only ever see the parts shape, so everything
entering or leaving storage passes through :func:`normalize_parts`.

This module also hosts :class:`PartsAccumulator`, which folds a stream of
model output segments into the parts list persisted for an assistant turn.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterable, List, Literal, Optional, TypedDict

PartType = Literal[
    "text", "reasoning", "tool-invocation", "file", "image", "source", "step-start"
]


class ToolInvocation(TypedDict, total=False):
    state: str
    toolCallId: str
    toolName: str
    args: Dict[str, Any]
    result: Any


class MessagePart(TypedDict, total=False):
    """One typed part of a message. Only whitelisted keys survive."""

    type: PartType
    text: str
    # reasoning
    reasoning: str
    details: List[Dict[str, Any]]
    # tool calls and their results
    toolInvocation: ToolInvocation
    # generated or uploaded media
    mimeType: str
    data: str
    image: str
    # citations
    source: Dict[str, Any]


class Attachment(TypedDict, total=False):
    url: str
    name: str
    contentType: str


_PART_KEYS: Dict[str, List[str]] = {
    "text": ["text"],
    "reasoning": ["reasoning", "details"],
    "tool-invocation": ["toolInvocation"],
    "file": ["mimeType", "data"],
    "image": ["image", "mimeType"],
    "source": ["source"],
    "step-start": [],
}

_TOOL_INVOCATION_KEYS = ("state", "toolCallId", "toolName", "args", "result")

_ATTACHMENT_KEYS = ("url", "name", "contentType")


def _coerce_part(part: Any) -> Optional[MessagePart]:
    if not isinstance(part, dict):
        return None
    part_type = part.get("type")
    if part_type not in _PART_KEYS:
        return None
    normalized: MessagePart = {"type": part_type}
    for key in _PART_KEYS[part_type]:
        if key in part:
            normalized[key] = copy.deepcopy(part[key])
    if part_type == "text" and not isinstance(normalized.get("text"), str):
        return None
    if part_type == "tool-invocation":
        invocation = normalized.get("toolInvocation")
        if not isinstance(invocation, dict) or not invocation.get("toolCallId"):
            return None
        normalized["toolInvocation"] = {
            key: invocation[key] for key in _TOOL_INVOCATION_KEYS if key in invocation
        }
    return normalized


def normalize_parts(parts: Any, content: Optional[str] = None) -> List[MessagePart]:
    """Return a sanitized parts list.

    Unknown part types and unknown keys are dropped. When nothing valid is
    left and a legacy ``content`` string is given, the result is a single
    text part carrying that content.
    """
    normalized: List[MessagePart] = []
    if isinstance(parts, list):
        for raw in parts:
            part = _coerce_part(raw)
            if part:
                normalized.append(part)
    if not normalized and isinstance(content, str) and content:
        normalized.append({"type": "text", "text": content})
    return normalized


def normalize_attachments(attachments: Any) -> List[Attachment]:
    if not isinstance(attachments, list):
        return []
    normalized: List[Attachment] = []
    for raw in attachments:
        if not isinstance(raw, dict) or not isinstance(raw.get("url"), str):
            continue
        normalized.append({key: raw[key] for key in _ATTACHMENT_KEYS if key in raw})
    return normalized


def parts_text(parts: Iterable[MessagePart]) -> str:
    """Concatenate the text parts, in order."""
    return "".join(part.get("text", "") for part in parts if part.get("type") == "text")


def prepend_to_first_text(parts: List[MessagePart], prefix: str) -> List[MessagePart]:
    """Return a copy of ``parts`` with ``prefix`` placed before the first text part.

    If there is no text part, a new one holding only the prefix is inserted
    at the front.
    """
    updated = copy.deepcopy(parts)
    for part in updated:
        if part.get("type") == "text":
            part["text"] = prefix + part.get("text", "")
            return updated
    return [{"type": "text", "text": prefix.rstrip()}] + updated


class PartsAccumulator:
    """Fold output segments into the parts of one assistant message.

    Consecutive text deltas merge into one text part, consecutive reasoning
    deltas into one reasoning part. A tool result completes the invocation
    part opened by the matching tool call.
    """

    def __init__(self) -> None:
        self.parts: List[MessagePart] = []
        self._invocations: Dict[str, MessagePart] = {}

    def add(self, segment: Dict[str, Any]) -> None:
        seg_type = segment.get("type")
        if seg_type == "text":
            text = segment.get("text") or ""
            if not text:
                return
            last = self.parts[-1] if self.parts else None
            if last and last.get("type") == "text":
                last["text"] = last.get("text", "") + text
            else:
                self.parts.append({"type": "text", "text": text})
        elif seg_type == "reasoning":
            text = segment.get("text") or ""
            if not text:
                return
            last = self.parts[-1] if self.parts else None
            if last and last.get("type") == "reasoning":
                last["reasoning"] = last.get("reasoning", "") + text
            else:
                self.parts.append({"type": "reasoning", "reasoning": text})
        elif seg_type == "tool-call":
            call_id = segment.get("tool_call_id")
            part: MessagePart = {
                "type": "tool-invocation",
                "toolInvocation": {
                    "state": "call",
                    "toolCallId": call_id,
                    "toolName": segment.get("tool_name"),
                    "args": segment.get("args") or {},
                },
            }
            self._invocations[call_id] = part
            self.parts.append(part)
        elif seg_type == "tool-result":
            call_id = segment.get("tool_call_id")
            part = self._invocations.get(call_id)
            if part is None:
                part = {
                    "type": "tool-invocation",
                    "toolInvocation": {
                        "toolCallId": call_id,
                        "toolName": segment.get("tool_name"),
                        "args": {},
                    },
                }
                self._invocations[call_id] = part
                self.parts.append(part)
            part["toolInvocation"]["state"] = "result"
            part["toolInvocation"]["result"] = segment.get("result")
        elif seg_type == "file":
            self.parts.append(
                {
                    "type": "file",
                    "mimeType": segment.get("mime_type") or "application/octet-stream",
                    "data": segment.get("data") or "",
                }
            )
        # step-start, finish and error carry no persisted content

    @property
    def has_content(self) -> bool:
        return bool(self.parts)

    def snapshot(self) -> List[MessagePart]:
        return copy.deepcopy(self.parts)
