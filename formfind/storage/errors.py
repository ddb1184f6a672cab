from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A storage write broke a uniqueness or foreign-key rule."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateIdError(ConstraintViolation):
    """A chat or message id is already taken (in either message generation)."""


__all__ = ["ConstraintViolation", "DuplicateIdError"]
