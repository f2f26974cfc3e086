from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Final, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import Required, Self, TypedDict, Unpack
else:
    from typing_extensions import Required, Self, TypedDict, Unpack

import anyio
import sqlalchemy as sa

from .datastructures import unique_by_identity
from .exceptions import NotFoundError, ShapeError
from .executor import Executor
from .loader import LoadContext, load_node
from .plan import Customize, Preload, PreloadNode, PreloadPlan, build_plan
from .relations import resolve_relation
from .schema import Registry, get_registry
from .tools import as_instances, snake_case


logger = logging.getLogger(__name__)

T = TypeVar("T")
DEFAULT_MAX_CONCURRENCY: Final[int] = 1


@dataclass(slots=True, frozen=True)
class _PreloadParams:
    executor: Executor
    registry: Registry = field(default_factory=get_registry)
    max_concurrency: int = field(default=DEFAULT_MAX_CONCURRENCY)

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")


class _PreloadParamsType(TypedDict, total=False):
    executor: Required[Executor]
    registry: Registry
    max_concurrency: int


async def _load_guarded(
    node: PreloadNode,
    ctx: LoadContext,
    failures: dict[int, Exception],
    limiter: anyio.CapacityLimiter | None = None,
) -> None:
    try:
        if limiter is None:
            await load_node(ctx, node)
        else:
            async with limiter:
                await load_node(ctx, node)
    except Exception as exc:
        failures[node.index] = exc


async def _run_plan(plan: PreloadPlan, ctx: LoadContext, max_concurrency: int) -> None:
    """Run *plan* level by level.

    Nodes of one level are independent of each other and run concurrently
    when ``max_concurrency > 1``. A failed node keeps its siblings running,
    its descendants are skipped and the first failure in plan order is
    raised once every runnable node has finished.
    """
    failures: dict[int, Exception] = {}
    skipped: set[int] = set()
    for level in plan.levels():
        runnable = [index for index in level if index not in skipped]
        if max_concurrency > 1 and len(runnable) > 1:
            limiter = anyio.CapacityLimiter(max_concurrency)
            async with anyio.create_task_group() as tg:
                for index in runnable:
                    tg.start_soon(_load_guarded, plan[index], ctx, failures, limiter)
        else:
            for index in runnable:
                await _load_guarded(plan[index], ctx, failures)

        for index in runnable:
            if index in failures:
                descendants = plan.descendants(index)
                skipped.update(descendants)
                logger.warning(
                    "Preload %r failed, skipping %d dependent node(s): %s",
                    plan[index].path,
                    len(descendants),
                    failures[index],
                )

    if failures:
        raise failures[min(failures)]


async def _execute(plan: PreloadPlan, roots: list[Any], params: _PreloadParams) -> None:
    if not plan.nodes:
        return

    ctx = LoadContext(registry=params.registry, executor=params.executor, roots=roots)
    await _run_plan(plan, ctx, params.max_concurrency)


async def preload(target: T, *paths: Preload | str, **params: Unpack[_PreloadParamsType]) -> T:
    """Eager-load association *paths* onto already materialized records.

    Args:
        target: One instance, a list/tuple of instances of the same shape, or
            ``None``. An empty target makes the call a no-op.
        *paths: Dotted paths (``"level2.level1s"``) or ``Preload`` objects
            carrying per-node conditions and a customization callback.
        executor: Executor
            Where statements run.
        registry: Registry
            Shape registry. Defaults to the one installed by ``init_registry``.
        max_concurrency: int
            Number of same-depth nodes loaded at once. Defaults to 1.

    Returns:
        *target*, with the requested associations populated in place.

    Raises:
        InvalidPathError: For a malformed path, before any query runs.
        UnresolvableRelationError: For a path segment that is not a
            resolvable relation field, before any query runs.
        QueryExecutionError: The first node failure in plan order. Nodes
            loaded before or beside the failed one keep their results.
            An exception raised by a ``customize`` callback is re-raised
            the same way, whatever ``max_concurrency`` is.

    Examples:
        Nested paths::

            await preload(levels, "level2.level1s", executor=executor)

        Filtering and ordering a node::

            await preload(
                levels,
                Preload("level1s", registry.c(Level1).value != "ru"),
                Preload("level2", customize=order_by(registry.c(Level2).id.desc())),
                executor=executor,
            )
    """
    opts = _PreloadParams(**params)
    roots = unique_by_identity(as_instances(target))
    if not roots:
        return target

    shapes = {type(root) for root in roots}
    if len(shapes) > 1:
        raise ShapeError(f"Cannot preload mixed shapes {sorted(s.__name__ for s in shapes)}")

    plan = build_plan(opts.registry, type(roots[0]), *paths)
    await _execute(plan, roots, opts)

    return target


class Query(Generic[T]):
    """Root lookup with preloads, returning hydrated shape instances.

    Builders return copies, so a base query can be shared and refined.

    Example:
        >>> levels = await (
        ...     Query(Level3)
        ...     .where(registry.c(Level3).name != "")
        ...     .preload("level2.level1s")
        ...     .all(executor)
        ... )
    """

    __slots__ = ("_conditions", "_order_by", "_preloads", "registry", "shape")

    def __init__(self, shape: type[T], registry: Registry | None = None) -> None:
        self.shape = shape
        self.registry = registry if registry is not None else get_registry()
        self.registry.info(shape)
        self._conditions: tuple[sa.ColumnElement[bool], ...] = ()
        self._order_by: tuple[sa.ColumnExpressionArgument[Any], ...] = ()
        self._preloads: tuple[Preload, ...] = ()

    def _clone(self, **changes: Any) -> Self:
        clone = type(self).__new__(type(self))
        clone.shape = self.shape
        clone.registry = self.registry
        clone._conditions = changes.get("conditions", self._conditions)
        clone._order_by = changes.get("order_by", self._order_by)
        clone._preloads = changes.get("preloads", self._preloads)

        return clone

    def where(self, *conditions: sa.ColumnExpressionArgument[bool]) -> Self:
        return self._clone(conditions=(*self._conditions, *map(sa.and_, conditions)))

    def filter_by(self, **filters: Any) -> Self:
        columns = self.registry.key_columns(self.shape, tuple(filters))
        return self.where(*(col == value for col, value in zip(columns, filters.values())))

    def order_by(self, *clauses: sa.ColumnExpressionArgument[Any]) -> Self:
        return self._clone(order_by=(*self._order_by, *clauses))

    def preload(
        self,
        path: str,
        *conditions: sa.ColumnExpressionArgument[bool],
        customize: Customize | None = None,
        **filters: Any,
    ) -> Self:
        """Add a preload path, see :class:`Preload`."""
        option = Preload(path, *conditions, customize=customize, **filters)
        return self._clone(preloads=(*self._preloads, option))

    def statement(self) -> sa.Select[Any]:
        """The root SELECT without any preloads."""
        stmt = sa.select(self.registry.table(self.shape))
        if self._conditions:
            stmt = stmt.where(*self._conditions)
        if self._order_by:
            stmt = stmt.order_by(*self._order_by)

        return stmt

    def _pk_order(self, descending: bool) -> list[sa.ColumnElement[Any]]:
        info = self.registry.info(self.shape)
        columns = self.registry.key_columns(self.shape, info.primary_key)
        return [col.desc() if descending else col.asc() for col in columns]

    async def _fetch(
        self,
        stmt: sa.Select[Any],
        executor: Executor,
        max_concurrency: int,
    ) -> list[T]:
        opts = _PreloadParams(
            executor=executor, registry=self.registry, max_concurrency=max_concurrency
        )
        plan = build_plan(self.registry, self.shape, *self._preloads)
        rows = await executor.fetch_all(stmt)
        roots = [self.registry.hydrate(self.shape, row) for row in rows]
        if roots:
            await _execute(plan, roots, opts)

        return roots

    async def all(
        self,
        executor: Executor,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> list[T]:
        """Fetch every matching record with its preloads."""
        return await self._fetch(self.statement(), executor, max_concurrency)

    async def first(
        self,
        executor: Executor,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> T:
        """Fetch the first record by the query order, then primary key.

        Raises:
            NotFoundError: If nothing matches. Preloads never run then.
        """
        stmt = self.statement().order_by(*self._pk_order(descending=False)).limit(1)
        found = await self._fetch(stmt, executor, max_concurrency)
        if not found:
            raise NotFoundError(self.shape)

        return found[0]

    async def last(
        self,
        executor: Executor,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> T:
        """Fetch the last record by primary key (after any query order).

        Raises:
            NotFoundError: If nothing matches. Preloads never run then.
        """
        stmt = self.statement().order_by(*self._pk_order(descending=True)).limit(1)
        found = await self._fetch(stmt, executor, max_concurrency)
        if not found:
            raise NotFoundError(self.shape)

        return found[0]


def _cached_functions() -> tuple[Any, ...]:
    from .tools import _get_table_name

    return (resolve_relation, _get_table_name, snake_case)


def preload_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    return {fn.__name__: fn.cache_info() for fn in _cached_functions()}


def preload_cache_clear() -> None:
    """Clear all internal LRU caches."""
    for fn in _cached_functions():
        fn.cache_clear()
