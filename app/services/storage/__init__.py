"""
File Storage - Service Package
"""
from .storage_service import (
    LocalStorageService,
    StoredFile,
    StorageError,
    InvalidFileKeyError,
    FileTooLargeError,
    category_for_mime_type,
)

__all__ = [
    "LocalStorageService",
    "StoredFile",
    "StorageError",
    "InvalidFileKeyError",
    "FileTooLargeError",
    "category_for_mime_type",
]
