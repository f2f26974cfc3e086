from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from functools import lru_cache
from typing import Any, TypeVar

import sqlalchemy as sa


T = TypeVar("T")
_S = TypeVar("_S", bound=sa.Select[Any])

_CAMEL_HEAD = re.compile(r"(.)([A-Z][a-z]+)")
_CAMEL_TAIL = re.compile(r"([a-z0-9])([A-Z])")


@lru_cache
def snake_case(name: str) -> str:
    """Convert a CamelCase class name to snake_case (``LevelA3`` -> ``level_a3``)."""
    return _CAMEL_TAIL.sub(r"\1_\2", _CAMEL_HEAD.sub(r"\1_\2", name)).lower()


@lru_cache
def _get_table_name(shape: type) -> str:
    """Return the table name for *shape*, preferring ``__tablename__`` (cached)."""
    result = getattr(shape, "__tablename__", None) or snake_case(shape.__name__)
    if not isinstance(result, str):
        raise ValueError(f"Cannot determine tablename for {shape}")

    return result


def get_table_name(shape: type) -> str:
    """Get the table name for a shape.

    Args:
        shape: Dataclass shape.

    Returns:
        ``shape.__tablename__`` when declared, otherwise the snake_case class name.
    """
    return _get_table_name(shape)


def get_field(instance: Any, name: str) -> Any:
    """Read field *name* from *instance*."""
    return getattr(instance, name)


def set_field(instance: Any, name: str, value: Any) -> None:
    """Write field *name* on *instance*, bypassing frozen dataclass guards."""
    object.__setattr__(instance, name, value)


def key_of(instance: Any, fields: Sequence[str]) -> tuple[Any, ...] | None:
    """Build the join-key tuple of *fields* for *instance*.

    Returns ``None`` if any part of the key is ``None``; such a key never
    matches anything.
    """
    key = tuple(get_field(instance, name) for name in fields)
    if any(part is None for part in key):
        return None

    return key


def as_instances(target: Any) -> list[Any]:
    """Normalize a preload target into a list of root instances.

    Accepts a single instance, a list/tuple of instances (``None`` entries
    are dropped) or ``None``.
    """
    if target is None:
        return []

    if isinstance(target, (list, tuple)):
        return [item for item in target if item is not None]

    return [target]


def match_keys(
    columns: Sequence[sa.ColumnElement[Any]],
    keys: Sequence[tuple[Any, ...]],
) -> sa.ColumnElement[bool]:
    """Build ``columns IN keys``, using a tuple comparison for composite keys."""
    if len(columns) == 1:
        return columns[0].in_([key[0] for key in keys])

    return sa.tuple_(*columns).in_(keys)


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[_S], _S]:
    """Create a customization callback that adds WHERE conditions.

    Example:
        >>> zh_or_ru = add_conditions(registry.c(Level1).value.in_(["zh", "ru"]))
        >>> await preload(levels, Preload("level1s", customize=zh_or_ru), executor=executor)
    """

    def _add(query: _S) -> _S:
        return query.where(*conditions)

    return _add


def order_by(
    *clauses: sa.ColumnExpressionArgument[Any],
) -> Callable[[_S], _S]:
    """Create a customization callback that sets ORDER BY on the child query.

    Example:
        >>> by_id = order_by(registry.c(Level1).id.asc())
        >>> await preload(levels, Preload("level2.level1s", customize=by_id), executor=executor)
    """

    def _order(query: _S) -> _S:
        return query.order_by(*clauses)

    return _order
