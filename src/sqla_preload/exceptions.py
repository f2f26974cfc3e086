"""Exception hierarchy for sqla_preload.

Resolution errors (``InvalidPathError``, ``UnresolvableRelationError``,
``ShapeError``) are raised while a preload plan is built, before any
statement runs. ``QueryExecutionError`` is the only error raised while
executing a plan; driver exceptions are always chained behind it.
"""

from __future__ import annotations

from typing import Any


class PreloadError(Exception):
    """Base exception for all sqla_preload errors."""


class ShapeError(PreloadError):
    """Raised when a shape cannot be reflected or is not registered."""


class InvalidPathError(PreloadError):
    """Raised for a malformed dotted preload path."""

    def __init__(self, path: Any, detail: str) -> None:
        self.path = path
        super().__init__(f"Invalid preload path {path!r}: {detail}")


class UnresolvableRelationError(PreloadError):
    """Raised when a field cannot be resolved into a relationship."""

    def __init__(self, shape: type, field_name: str, detail: str) -> None:
        self.shape = shape
        self.field_name = field_name
        super().__init__(f"Cannot resolve {shape.__name__}.{field_name}: {detail}")


class QueryExecutionError(PreloadError):
    """Raised when the underlying database rejects a statement."""

    def __init__(self, statement: Any, detail: str) -> None:
        self.statement = statement
        super().__init__(f"Query execution failed: {detail}")


class NotFoundError(PreloadError):
    """Raised by ``Query.first``/``Query.last`` when the root lookup is empty."""

    def __init__(self, shape: type) -> None:
        self.shape = shape
        super().__init__(f"No {shape.__name__} record found")
