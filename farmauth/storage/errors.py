from __future__ import annotations

from typing import Optional


class ConstraintViolation(Exception):
    """Raised when an account write would duplicate a unique phone or email."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    @property
    def detail(self) -> dict:
        return {"field": self.field} if self.field else {}


__all__ = ["ConstraintViolation"]
