from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import Any

from .datastructures import unique, unique_by_identity
from .relations import Relationship, RelationKind
from .tools import key_of, set_field


Key = tuple[Any, ...]
Pair = tuple[Key, Key]


def _single(rel: Relationship, parents: Sequence[Any], children: Iterable[Any]) -> list[Any]:
    index: dict[Key, Any] = {}
    for child in children:
        key = key_of(child, rel.target_key)
        if key is not None:
            index.setdefault(key, child)

    attached: list[Any] = []
    for parent in parents:
        key = key_of(parent, rel.owner_key)
        child = None if key is None else index.get(key)
        if child is not None:
            set_field(parent, rel.field, child)
            attached.append(child)
        elif rel.optional:
            set_field(parent, rel.field, None)

    return attached


def _has_many(rel: Relationship, parents: Sequence[Any], children: Iterable[Any]) -> list[Any]:
    assert rel.container is not None
    groups: defaultdict[Key, list[Any]] = defaultdict(list)
    for child in children:
        key = key_of(child, rel.target_key)
        if key is not None:
            groups[key].append(child)

    attached: list[Any] = []
    for parent in parents:
        key = key_of(parent, rel.owner_key)
        items = groups.get(key, []) if key is not None else []
        set_field(parent, rel.field, rel.container(items))
        attached.extend(items)

    return attached


def _many_to_many(
    rel: Relationship,
    parents: Sequence[Any],
    children: Iterable[Any],
    pairs: Iterable[Pair],
) -> list[Any]:
    assert rel.container is not None
    owners: defaultdict[Key, list[Any]] = defaultdict(list)
    for parent in parents:
        key = key_of(parent, rel.owner_key)
        if key is not None:
            owners[key].append(parent)

    paired: defaultdict[Key, list[Key]] = defaultdict(list)
    for owner_key, target_key in unique(pairs):
        paired[target_key].append(owner_key)

    buckets: dict[int, list[Any]] = {id(parent): [] for parent in parents}
    attached: list[Any] = []
    for child in children:
        key = key_of(child, rel.target_key)
        if key is None:
            continue
        for owner_key in paired.get(key, ()):
            for parent in owners.get(owner_key, ()):
                buckets[id(parent)].append(child)
                attached.append(child)

    for parent in parents:
        set_field(parent, rel.field, rel.container(buckets[id(parent)]))

    return attached


def associate(
    rel: Relationship,
    parents: Sequence[Any],
    children: Iterable[Any],
    pairs: Iterable[Pair] | None = None,
) -> list[Any]:
    """Write *children* back onto *parents* through *rel*.

    Children are matched by join-key tuple; a child referenced by several
    parents is attached to each of them as the same instance. Collections
    keep the order in which children arrive, so the child query's ORDER BY
    decides the collection order.

    Unmatched parents get ``None`` for ``Target | None`` fields, are left
    untouched for value-typed single fields and get an empty container for
    collection fields (also for ``list[Target] | None``).

    Args:
        rel: Resolved relationship.
        parents: Frontier at the parent path.
        children: Hydrated child instances in query order.
        pairs: ``(owner key, target key)`` rows of the join table, required
            for many-to-many.

    Returns:
        The attached children, deduplicated by identity. This is the frontier
        of the next depth.
    """
    parents = unique_by_identity(parents)
    match rel.kind:
        case RelationKind.BELONGS_TO | RelationKind.HAS_ONE:
            attached = _single(rel, parents, children)
        case RelationKind.HAS_MANY:
            attached = _has_many(rel, parents, children)
        case RelationKind.MANY_TO_MANY:
            if pairs is None:
                raise ValueError(f"{rel!r} needs join table pairs")
            attached = _many_to_many(rel, parents, children, pairs)

    return unique_by_identity(attached)
