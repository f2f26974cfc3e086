"""Batched eager loading for dataclass records stored with SQLAlchemy Core.

sqla_preload populates association fields (belongs-to, has-one, has-many and
many-to-many) on records that are already in memory. Register your dataclass
shapes once with ``init_registry``, then call ``preload(records, "a.b.c",
executor=...)`` or use ``Query(Shape).preload(...).all(executor)``: every
node of the path tree costs one query (two for many-to-many) no matter how
many records are loaded.
"""

from ._version import __version__, __version_tuple__
from .core import DEFAULT_MAX_CONCURRENCY, Query, preload, preload_cache_clear, preload_cache_info
from .datastructures import frozendict
from .exceptions import (
    InvalidPathError,
    NotFoundError,
    PreloadError,
    QueryExecutionError,
    ShapeError,
    UnresolvableRelationError,
)
from .executor import ConnectionExecutor, EngineExecutor, Executor
from .persist import save
from .plan import Preload, PreloadPlan, build_plan
from .relations import Relationship, RelationKind, resolve_relation
from .schema import Registry, column, get_registry, init_registry, relation
from .tools import add_conditions, get_table_name, order_by


__all__ = (
    "DEFAULT_MAX_CONCURRENCY",
    "ConnectionExecutor",
    "EngineExecutor",
    "Executor",
    "InvalidPathError",
    "NotFoundError",
    "Preload",
    "PreloadError",
    "PreloadPlan",
    "Query",
    "QueryExecutionError",
    "Registry",
    "RelationKind",
    "Relationship",
    "ShapeError",
    "UnresolvableRelationError",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "build_plan",
    "column",
    "frozendict",
    "get_registry",
    "get_table_name",
    "init_registry",
    "order_by",
    "preload",
    "preload_cache_clear",
    "preload_cache_info",
    "relation",
    "resolve_relation",
    "save",
)
