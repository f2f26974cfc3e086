from __future__ import annotations

import sys
from collections.abc import Hashable, Iterable, Iterator, Mapping
from typing import Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")
H = TypeVar("H", bound=Hashable)


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Used for reflected shape metadata (field tables, relation hints) so that
    ``ShapeInfo`` and ``FieldInfo`` stay hashable and can take part in the
    ``lru_cache`` keys of the relationship resolver.

    Example:
        >>> fd = frozendict({"many2many": "levels"})
        >>> fd["many2many"]
        'levels'
        >>> fd.copy(join_foreign_key=("level2_id",))
        <frozendict {'many2many': 'levels', 'join_foreign_key': ('level2_id',)}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash = hash(frozenset(self._dict.items()))

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Return a new frozendict with *add_or_replace* merged in."""
        return type(self)(self, **add_or_replace)

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        return self._hash


def unique(items: Iterable[H]) -> list[H]:
    """Deduplicate hashable *items*, keeping first-seen order."""
    return list(dict.fromkeys(items))


def unique_by_identity(items: Iterable[V]) -> list[V]:
    """Deduplicate *items* by object identity, keeping first-seen order.

    Instances are compared with ``is`` rather than ``==`` because two equal
    records materialized for different parents are still distinct frontier
    members.
    """
    seen: set[int] = set()
    out: list[V] = []
    for item in items:
        if id(item) not in seen:
            seen.add(id(item))
            out.append(item)

    return out
