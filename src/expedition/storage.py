"""
File Storage collaborator.

The engine only keeps opaque URLs in ``Submission.files``; this module turns
uploaded bytes into such URLs.
"""

import logging
import os
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from src.expedition.config import ALLOWED_UPLOAD_TYPES, DEFAULT_UPLOAD_MAX_BYTES
from src.expedition.errors import UploadRejectedError

logger = logging.getLogger(__name__)


class FileStorage(Protocol):

    def upload(self, filename: str, content: bytes, content_type: str) -> str:
        """Store the file and return its public URL."""
        ...


class LocalFileStorage:
    """Stores uploads on local disk under a random name, keeping the extension."""

    def __init__(
        self,
        upload_dir: str,
        url_prefix: str = "/uploads/expeditions",
        max_bytes: int = DEFAULT_UPLOAD_MAX_BYTES,
    ):
        self.upload_dir = Path(upload_dir)
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes

    def upload(self, filename: str, content: bytes, content_type: str) -> str:
        if content_type not in ALLOWED_UPLOAD_TYPES:
            raise UploadRejectedError(
                "Only images (JPG, PNG, GIF, WebP) and PDFs are allowed"
            )
        if len(content) > self.max_bytes:
            raise UploadRejectedError(
                f"File exceeds the {self.max_bytes // (1024 * 1024)}MB limit"
            )
        if not content:
            raise UploadRejectedError("Empty file")

        ext = os.path.splitext(filename)[1].lower() or ALLOWED_UPLOAD_TYPES[content_type]
        stored_name = f"{uuid4()}{ext}"

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        (self.upload_dir / stored_name).write_bytes(content)
        logger.info("Stored upload %s as %s (%d bytes)", filename, stored_name, len(content))
        return f"{self.url_prefix}/{stored_name}"
