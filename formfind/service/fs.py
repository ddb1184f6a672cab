from __future__ import annotations

import base64
import binascii
import re
import uuid
from pathlib import Path

from formfind.logging import get_logger

logger = get_logger(__name__)

_DATA_URL = re.compile(r"^data:([A-Za-z-+/]+);base64,(.+)$", re.DOTALL)
_BLOB_NAME = re.compile(r"^[0-9a-f-]{36}\.[A-Za-z0-9+-]{1,32}$")


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


class InvalidDataURLError(ValueError):
    """Raised when an uploaded image is not a base64 ``data:`` URL."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


class BlobStore:
    """Public image blobs under ``<fs_root>/blobs``, served by name."""

    def __init__(self, fs_root: str, *, public_base_url: str, max_bytes: int) -> None:
        self.root = Path(fs_root) / "blobs"
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")
        self.max_bytes = max_bytes

    def put_data_url(self, data_url: str) -> str:
        """Store a ``data:<mime>;base64,<payload>`` image and return its public URL."""
        match = _DATA_URL.match(data_url.strip())
        if not match:
            raise InvalidDataURLError("Invalid base64 format")
        mime_type, payload = match.group(1), match.group(2)
        extension = mime_type.split("/")[1] if "/" in mime_type else ""
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidDataURLError("Invalid base64 format") from exc
        if len(raw) > self.max_bytes:
            raise InvalidDataURLError("image exceeds size limit")
        name = f"{uuid.uuid4()}.{extension or 'png'}"
        path = safe_join(self.root, name)
        path.write_bytes(raw)
        logger.info("blob_stored", name=name, size=len(raw), mime_type=mime_type)
        return f"{self.public_base_url}/api/files/{name}"

    def path_for(self, name: str) -> Path:
        if not _BLOB_NAME.match(name):
            raise PathTraversalError("invalid blob name")
        return safe_join(self.root, name)
