from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import sqlalchemy as sa

from .associator import Key, Pair, associate
from .datastructures import unique
from .executor import Executor
from .plan import PreloadNode
from .relations import RelationKind
from .schema import Registry
from .tools import key_of, match_keys


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoadContext:
    """State of a single ``preload()`` call.

    ``frontiers`` maps a node index to the instances materialized at that
    node, shared by reference with the parents they were attached to.
    """

    registry: Registry
    executor: Executor
    roots: list[Any]
    frontiers: dict[int, list[Any]] = field(default_factory=dict)

    def parents_of(self, node: PreloadNode) -> list[Any]:
        if node.parent is None:
            return self.roots

        return self.frontiers.get(node.parent, [])


def child_select(
    registry: Registry,
    node: PreloadNode,
    key_fields: Sequence[str],
    keys: Sequence[Key],
) -> sa.Select[Any]:
    """Build ``SELECT target WHERE key IN keys`` with the node's options.

    Conditions go first, then the customization callback. When the statement
    still has no ORDER BY the target primary key ascending is used.
    """
    target = node.relationship.target
    stmt = sa.select(registry.table(target)).where(
        match_keys(registry.key_columns(target, key_fields), keys)
    )
    if node.conditions:
        stmt = stmt.where(*node.conditions)
    if node.customize is not None:
        stmt = node.customize(stmt)
    if not stmt._order_by_clauses:  # noqa: SLF001
        stmt = stmt.order_by(*registry.key_columns(target, registry.info(target).primary_key))

    return stmt


async def _fetch_children(
    ctx: LoadContext,
    node: PreloadNode,
    key_fields: Sequence[str],
    keys: Sequence[Key],
) -> list[Any]:
    if not keys:
        return []

    target = node.relationship.target
    rows = await ctx.executor.fetch_all(child_select(ctx.registry, node, key_fields, keys))
    return [ctx.registry.hydrate(target, row) for row in rows]


async def _fetch_pairs(ctx: LoadContext, node: PreloadNode, keys: Sequence[Key]) -> list[Pair]:
    rel = node.relationship
    assert rel.join_table is not None
    join = ctx.registry.join_table(rel.join_table)
    owner_columns = [join.c[name] for name in rel.join_owner_columns]
    target_columns = [join.c[name] for name in rel.join_target_columns]
    stmt = (
        sa.select(*owner_columns, *target_columns)
        .where(match_keys(owner_columns, keys))
        .order_by(*owner_columns, *target_columns)
    )
    rows = await ctx.executor.fetch_all(stmt)
    return unique(
        (
            tuple(row[name] for name in rel.join_owner_columns),
            tuple(row[name] for name in rel.join_target_columns),
        )
        for row in rows
    )


async def load_node(ctx: LoadContext, node: PreloadNode) -> list[Any]:
    """Load one plan node and attach the result to its parents.

    Issues one query for belongs-to, has-one and has-many nodes and two for
    many-to-many (join table, then target). No query runs when there are no
    parents or none of them has a usable key; parents are still given their
    empty value in the latter case.

    Returns:
        The node's frontier, which is also stored on *ctx*.

    Raises:
        QueryExecutionError: If the executor fails. Nothing is attached then.
    """
    rel = node.relationship
    parents = ctx.parents_of(node)
    if not parents:
        logger.debug("Preload %r: no parents, skipped", node.path)
        ctx.frontiers[node.index] = []
        return []

    keys = unique(key for parent in parents if (key := key_of(parent, rel.owner_key)) is not None)
    pairs: list[Pair] | None = None
    if rel.kind is RelationKind.MANY_TO_MANY:
        pairs = await _fetch_pairs(ctx, node, keys) if keys else []
        child_keys = unique(target_key for _, target_key in pairs)
        children = await _fetch_children(ctx, node, rel.target_key, child_keys)
    else:
        children = await _fetch_children(ctx, node, rel.target_key, keys)

    frontier = associate(rel, parents, children, pairs)
    ctx.frontiers[node.index] = frontier
    logger.debug(
        "Preload %r: %d parents, %d keys, %d rows, %d attached",
        node.path,
        len(parents),
        len(keys),
        len(children),
        len(frontier),
    )

    return frontier
