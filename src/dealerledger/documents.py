"""
Local store for purchase documentation (bokföringsunderlag).

Inventory items reference their documents by a path relative to the store
root, optionally prefixed with the bucket name ``purchase-docs/``.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("dealerledger.documents")

BUCKET_PREFIX = "purchase-docs/"


@dataclass
class StoredDocument:
    filename: str
    content: bytes
    content_type: str


class DocumentStore:
    """Reads documents from a directory tree."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, reference: str) -> Path:
        """Map a stored reference to a path inside the root.

        Raises:
            FileNotFoundError: The reference escapes the root or does not exist.
        """
        relative = reference[len(BUCKET_PREFIX):] if reference.startswith(BUCKET_PREFIX) else reference
        path = (self.root / relative.lstrip("/")).resolve()
        if self.root not in path.parents and path != self.root:
            raise FileNotFoundError(f"Document reference {reference!r} is outside {self.root}")
        if not path.is_file():
            raise FileNotFoundError(f"Document {reference!r} not found under {self.root}")
        return path

    def read(self, reference: str) -> StoredDocument:
        path = self.resolve(reference)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        logger.debug("Read document %s (%s)", path.name, content_type)
        return StoredDocument(filename=path.name, content=path.read_bytes(), content_type=content_type)
