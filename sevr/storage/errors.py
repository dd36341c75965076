from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by a store backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """A uniqueness constraint rejected the write (e.g. duplicate email)."""


class StatePersistenceError(StorageError):
    """The memory store could not write its snapshot file."""


__all__ = ["ConstraintViolation", "StatePersistenceError", "StorageError"]
