"""
File Storage Service

Stores retained originals (bank statement CSVs) under STORAGE_REF_BASE.
Only local:// references are supported for now.
"""

import os
import re
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from config import get_settings

logger = logging.getLogger(__name__)


class FileStoreError(Exception):
    """Raised when a file cannot be stored or read."""


@dataclass
class StoredFile:
    file_ref: str
    file_name: str
    size: int
    content_type: str


class FileStore(ABC):

    @abstractmethod
    async def save(self, path: str, content: bytes, file_name: str, content_type: str = "text/csv") -> StoredFile:
        ...

    @abstractmethod
    async def read(self, file_ref: str) -> bytes:
        ...


def _safe_relative(path: str) -> Path:
    parts = [re.sub(r'[^\w\-.]', '_', part) for part in path.split("/") if part not in ("", ".", "..")]
    if not parts:
        raise FileStoreError(f"Invalid storage path: {path!r}")
    return Path(*parts)


class LocalFileStore(FileStore):
    """Handles file storage on local disk"""

    SCHEME = "local://"

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)

    @classmethod
    def from_ref_base(cls, ref_base: str) -> "LocalFileStore":
        if not ref_base.startswith(cls.SCHEME):
            raise ValueError(f"Unsupported storage reference base: {ref_base}")
        return cls(ref_base[len(cls.SCHEME):] or ".")

    def _resolve(self, file_ref: str) -> Path:
        relative = file_ref[len(self.SCHEME):] if file_ref.startswith(self.SCHEME) else file_ref
        return self.base_dir / _safe_relative(relative)

    async def save(self, path: str, content: bytes, file_name: str, content_type: str = "text/csv") -> StoredFile:
        relative = _safe_relative(path)
        target = self.base_dir / relative
        try:
            os.makedirs(target.parent, exist_ok=True)
            with open(target, 'wb') as f:
                f.write(content)
            logger.info(f"Stored file: {target}")
        except OSError as e:
            logger.error(f"Failed to store file: {e}")
            raise FileStoreError(f"Failed to store file: {e}") from e

        return StoredFile(
            file_ref=f"{self.SCHEME}{relative.as_posix()}",
            file_name=file_name,
            size=len(content),
            content_type=content_type,
        )

    async def read(self, file_ref: str) -> bytes:
        target = self._resolve(file_ref)
        try:
            with open(target, 'rb') as f:
                return f.read()
        except OSError as e:
            raise FileStoreError(f"Failed to read file: {e}") from e


@lru_cache()
def get_file_store() -> FileStore:
    return LocalFileStore.from_ref_base(get_settings().STORAGE_REF_BASE)
