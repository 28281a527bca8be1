"""
Local file storage for uploads.

Files are kept under UPLOAD_DIR as <folder>/<uuid><ext> and served from
UPLOAD_BASE_URL. Keys are always resolved inside the root directory.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
UPLOAD_BASE_URL = os.getenv("UPLOAD_BASE_URL", "/uploads")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

_CHUNK_SIZE = 64 * 1024


class StorageError(Exception):
    pass


class InvalidFileKeyError(StorageError, ValueError):
    """Key is empty or resolves outside the storage root."""


class FileTooLargeError(StorageError, ValueError):
    pass


@dataclass
class StoredFile:
    key: str
    file_name: str
    url: str
    size: int


def category_for_mime_type(mime_type: Optional[str]) -> str:
    """Bucket an upload into images, videos, audio, documents or general."""
    mime_type = mime_type or ""
    if mime_type.startswith("image/"):
        return "images"
    if mime_type.startswith("video/"):
        return "videos"
    if mime_type.startswith("audio/"):
        return "audio"
    if "pdf" in mime_type or "document" in mime_type:
        return "documents"
    return "general"


class LocalStorageService:
    """Stores uploads on the local filesystem."""

    storage_type = "local"

    def __init__(self, root: str = UPLOAD_DIR, base_url: str = UPLOAD_BASE_URL, max_bytes: int = MAX_UPLOAD_BYTES):
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")
        self.max_bytes = max_bytes

    def resolve_path(self, key: str) -> Path:
        """Absolute path for a key. Raises InvalidFileKeyError if it escapes the root."""
        if not key or key.startswith(("/", "\\")):
            raise InvalidFileKeyError(f"Invalid file key: {key!r}")
        path = (self.root / key).resolve()
        if path == self.root or self.root not in path.parents:
            raise InvalidFileKeyError(f"Invalid file key: {key!r}")
        return path

    def get_file_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def save(self, fileobj: BinaryIO, original_name: str, folder: str) -> StoredFile:
        """
        Copy an upload stream into <folder>/<uuid><ext>.

        Raises FileTooLargeError, removing the partial file, when the stream
        exceeds max_bytes.
        """
        ext = Path(original_name or "").suffix.lower()
        file_name = f"{uuid4()}{ext}"
        key = f"{folder}/{file_name}"
        path = self.resolve_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        size = 0
        with open(path, "wb") as buffer:
            while True:
                chunk = fileobj.read(_CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > self.max_bytes:
                    break
                buffer.write(chunk)

        if size > self.max_bytes:
            path.unlink(missing_ok=True)
            raise FileTooLargeError(f"File exceeds maximum size of {self.max_bytes} bytes")

        logger.info(f"Stored upload {original_name} as {key} ({size} bytes)")
        return StoredFile(key=key, file_name=file_name, url=self.get_file_url(key), size=size)

    def copy_from(self, source_path: str, folder: str) -> StoredFile:
        """Store an existing local file (used by scripts and tests)."""
        with open(source_path, "rb") as source:
            return self.save(source, os.path.basename(source_path), folder)

    def delete(self, key: str) -> bool:
        """Remove a stored file. Returns False when it was already gone."""
        path = self.resolve_path(key)
        if not path.exists():
            logger.warning(f"Delete requested for missing file {key}")
            return False
        path.unlink()
        return True

    def exists(self, key: str) -> bool:
        return self.resolve_path(key).is_file()

    def get_storage_stats(self) -> Dict:
        """File count and byte totals, overall and per top-level folder."""
        folders: Dict[str, Dict[str, int]] = {}
        total_files = 0
        total_size = 0

        if self.root.exists():
            for dirpath, _dirnames, filenames in os.walk(self.root):
                rel = Path(dirpath).relative_to(self.root)
                folder = rel.parts[0] if rel.parts else "root"
                for name in filenames:
                    size = os.path.getsize(os.path.join(dirpath, name))
                    entry = folders.setdefault(folder, {"files": 0, "size": 0})
                    entry["files"] += 1
                    entry["size"] += size
                    total_files += 1
                    total_size += size

        return {
            "storage_type": self.storage_type,
            "total_files": total_files,
            "total_size": total_size,
            "folders": folders,
        }
