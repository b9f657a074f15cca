"""Receipt storage boundary.

Document requests and online transactions carry a path to an uploaded
receipt.  The workflows only need to know whether that file exists and to
stream it back; storage itself belongs to the upload side of the platform.
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO

from bursar.config import settings
from bursar.services.exceptions import ResourceNotFound, ValidationError

logger = logging.getLogger(__name__)


class ReceiptStorage(ABC):
    @abstractmethod
    def exists(self, path: str) -> bool:
        """True when the receipt is present and readable."""

    @abstractmethod
    def open(self, path: str) -> BinaryIO:
        """Open the receipt for binary reading."""


class LocalReceiptStorage(ReceiptStorage):
    """Receipts on the local filesystem below a fixed root directory."""

    def __init__(self, root: str | os.PathLike | None = None):
        self.root = Path(root or settings.upload_dir).resolve()

    def _resolve(self, path: str) -> Path:
        if not path or "\x00" in path:
            raise ValidationError("Receipt path is empty or malformed")
        candidate = (self.root / path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            logger.warning("Rejected receipt path outside upload root: %s", path)
            raise ValidationError("Receipt path escapes the upload directory")
        return candidate

    def exists(self, path: str) -> bool:
        resolved = self._resolve(path)
        return resolved.is_file() and os.access(resolved, os.R_OK)

    def open(self, path: str) -> BinaryIO:
        if not self.exists(path):
            raise ResourceNotFound(f"Receipt file {path} not found")
        return self._resolve(path).open("rb")


def get_receipt_storage() -> ReceiptStorage:
    """FastAPI dependency; override in tests."""
    return LocalReceiptStorage()
