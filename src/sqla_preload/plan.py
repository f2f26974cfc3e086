from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa

from .datastructures import frozendict
from .exceptions import InvalidPathError
from .relations import Relationship, resolve_relation
from .schema import Registry


Customize = Callable[[sa.Select[Any]], sa.Select[Any]]


@dataclass(frozen=True, slots=True, eq=False, init=False)
class Preload:
    """One requested association path with its per-node options.

    Args:
        path: Dotted association path relative to the root shape.
        *conditions: SQLAlchemy boolean expressions ANDed into the child query.
        customize: Callback applied to the child ``sa.Select`` after the
            conditions (ordering, extra filtering, ...).
        **filters: ``filter_by``-style equality filters on target fields.

    Example:
        >>> Preload("level2.level1s", customize=order_by(registry.c(Level1).id.desc()))
        >>> Preload("level1s", value="zh")
    """

    path: str
    conditions: tuple[sa.ColumnExpressionArgument[bool], ...]
    customize: Customize | None
    filters: frozendict[str, Any]

    def __init__(
        self,
        path: str,
        *conditions: sa.ColumnExpressionArgument[bool],
        customize: Customize | None = None,
        **filters: Any,
    ) -> None:
        object.__setattr__(self, "path", path)
        object.__setattr__(self, "conditions", conditions)
        object.__setattr__(self, "customize", customize)
        object.__setattr__(self, "filters", frozendict(filters))

    def __repr__(self) -> str:
        return f"<Preload {self.path!r}>"


@dataclass(slots=True, eq=False)
class PreloadNode:
    index: int
    name: str
    path: str
    relationship: Relationship
    depth: int
    parent: int | None = None
    conditions: tuple[sa.ColumnElement[bool], ...] = ()
    customize: Customize | None = None
    children: list[int] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"<PreloadNode #{self.index} {self.path!r} {self.relationship.kind.value}>"


@dataclass(frozen=True, slots=True)
class PreloadPlan:
    """Flat arena of preload nodes, every parent stored before its children."""

    root: type
    nodes: tuple[PreloadNode, ...] = ()

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[PreloadNode]:
        return iter(self.nodes)

    def __getitem__(self, index: int) -> PreloadNode:
        return self.nodes[index]

    def find(self, path: str) -> PreloadNode | None:
        for node in self.nodes:
            if node.path == path:
                return node

        return None

    def levels(self) -> list[list[int]]:
        """Node indices grouped by depth, siblings in registration order."""
        levels: list[list[int]] = []
        for node in self.nodes:
            if node.depth == len(levels):
                levels.append([])
            levels[node.depth].append(node.index)

        return levels

    def descendants(self, index: int) -> list[int]:
        out: list[int] = []
        stack = list(reversed(self.nodes[index].children))
        while stack:
            current = stack.pop()
            out.append(current)
            stack.extend(reversed(self.nodes[current].children))

        return out


def split_path(path: Any) -> tuple[str, ...]:
    """Split a dotted path into its segments.

    Raises:
        InvalidPathError: For non-string, empty or padded paths and for
            empty or non-identifier segments.
    """
    if not isinstance(path, str):
        raise InvalidPathError(path, "path must be a string")
    if not path:
        raise InvalidPathError(path, "path is empty")
    if path != path.strip():
        raise InvalidPathError(path, "surrounding whitespace")

    segments = tuple(path.split("."))
    for segment in segments:
        if not segment:
            raise InvalidPathError(path, "empty segment")
        if not segment.isidentifier():
            raise InvalidPathError(path, f"{segment!r} is not a field name")

    return segments


class PlanBuilder:
    """Turns preload requests into a ``PreloadPlan``.

    Every segment is resolved while the plan is built, so a bad path fails
    before any statement runs. Registering a path again replaces its
    conditions and callback (last registration wins, nothing is merged);
    intermediate nodes created implicitly by a deeper path never override
    an explicit registration.

    Example:
        >>> plan = (
        ...     PlanBuilder(registry, Level3)
        ...     .add("level2.level1s")
        ...     .add(Preload("level2", customize=order_by(registry.c(Level2).id.desc())))
        ...     .build()
        ... )
        >>> [node.path for node in plan]
        ['level2', 'level2.level1s']
    """

    __slots__ = ("_by_path", "_nodes", "registry", "root")

    def __init__(self, registry: Registry, root: type) -> None:
        registry.info(root)
        self.registry = registry
        self.root = root
        self._nodes: list[PreloadNode] = []
        self._by_path: dict[str, PreloadNode] = {}

    def add(self, option: Preload | str) -> Self:
        if isinstance(option, str):
            option = Preload(option)
        elif not isinstance(option, Preload):
            raise InvalidPathError(option, "expected a dotted path or Preload")

        segments = split_path(option.path)
        shape = self.root
        parent: PreloadNode | None = None
        for depth, name in enumerate(segments):
            path = ".".join(segments[: depth + 1])
            node = self._by_path.get(path)
            if node is None:
                node = PreloadNode(
                    index=len(self._nodes),
                    name=name,
                    path=path,
                    relationship=resolve_relation(self.registry, shape, name),
                    depth=depth,
                    parent=None if parent is None else parent.index,
                )
                self._nodes.append(node)
                self._by_path[path] = node
                if parent is not None:
                    parent.children.append(node.index)

            shape = node.relationship.target
            parent = node

        assert parent is not None
        parent.conditions = (*map(sa.and_, option.conditions), *self._filters(parent, option))
        parent.customize = option.customize

        return self

    def _filters(self, node: PreloadNode, option: Preload) -> list[sa.ColumnElement[bool]]:
        target = node.relationship.target
        return [
            column == value
            for column, value in zip(
                self.registry.key_columns(target, tuple(option.filters)), option.filters.values()
            )
        ]

    def build(self) -> PreloadPlan:
        return PreloadPlan(root=self.root, nodes=tuple(self._nodes))


def build_plan(registry: Registry, root: type, *options: Preload | str) -> PreloadPlan:
    """Shortcut for ``PlanBuilder(registry, root).add(...)...build()``."""
    builder = PlanBuilder(registry, root)
    for option in options:
        builder.add(option)

    return builder.build()
