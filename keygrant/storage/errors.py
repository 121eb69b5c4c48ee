from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write broke a storage invariant, e.g. a session for an unknown token."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaMissing(RuntimeError):
    """Required tables or views are absent from the database."""


__all__ = ["ConstraintViolation", "SchemaMissing"]
