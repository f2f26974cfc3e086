from __future__ import annotations

import dataclasses
import datetime
import decimal
import types
import typing
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Annotated, Any, ClassVar, Final, TypeVar, Union, final

import sqlalchemy as sa

from .datastructures import frozendict
from .exceptions import ShapeError, UnresolvableRelationError
from .tools import get_table_name, set_field


T = TypeVar("T")

_METADATA_KEY: Final[str] = "sqla_preload"
_STRING_LENGTH: Final[int] = 255

_COLUMN_TYPES: Final[Mapping[type, Callable[[], sa.types.TypeEngine[Any]]]] = frozendict({
    bool: sa.Boolean,
    int: sa.Integer,
    float: sa.Float,
    str: lambda: sa.String(_STRING_LENGTH),
    bytes: sa.LargeBinary,
    decimal.Decimal: sa.Numeric,
    datetime.datetime: sa.DateTime,
    datetime.date: sa.Date,
    datetime.time: sa.Time,
})


def _names(value: str | Sequence[str] | None) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)

    return tuple(value)


def column(
    default: Any = dataclasses.MISSING,
    *,
    default_factory: Any = dataclasses.MISSING,
    primary_key: bool = False,
    name: str | None = None,
) -> Any:
    """Declare a scalar field with column options.

    Args:
        default: Field default, as for ``dataclasses.field``.
        default_factory: Field default factory.
        primary_key: Mark the field as (part of) the primary key. Shapes
            without any marked field use the field named ``id``.
        name: Column name, defaults to the field name.

    Example:
        >>> @dataclass
        ... class Level1:
        ...     id: int | None = column(None, primary_key=True)
        ...     language_code: str = column("", primary_key=True)
    """
    return dataclasses.field(
        default=default,
        default_factory=default_factory,
        metadata={_METADATA_KEY: frozendict(primary_key=primary_key, name=name)},
    )


def relation(
    default: Any = dataclasses.MISSING,
    *,
    default_factory: Any = dataclasses.MISSING,
    many2many: str | None = None,
    foreign_key: str | Sequence[str] | None = None,
    references: str | Sequence[str] | None = None,
    join_foreign_key: str | Sequence[str] | None = None,
    join_references: str | Sequence[str] | None = None,
) -> Any:
    """Declare a relation field with resolution hints.

    Plain annotations (``Level2``, ``Level2 | None``, ``list[Level1]``) are
    enough for conventional keys; ``relation`` adds what conventions cannot
    infer.

    Args:
        default: Field default (``None`` for optional single relations).
        default_factory: Field default factory (``list``, or the target shape
            for value-typed single relations).
        many2many: Join table name; turns the field into a many-to-many.
        foreign_key: Field name(s) holding the foreign key, on the parent for
            a belongs-to or on the target for has-one/has-many.
        references: Field name(s) the foreign key points at; defaults to the
            referenced shape's primary key.
        join_foreign_key: Join table column(s) referencing the parent.
        join_references: Join table column(s) referencing the target.
    """
    hints = {
        "many2many": many2many,
        "foreign_key": _names(foreign_key),
        "references": _names(references),
        "join_foreign_key": _names(join_foreign_key),
        "join_references": _names(join_references),
    }
    return dataclasses.field(
        default=default,
        default_factory=default_factory,
        metadata={_METADATA_KEY: frozendict({k: v for k, v in hints.items() if v})},
    )


@dataclass(frozen=True, slots=True)
class FieldInfo:
    """Reflected metadata of one shape field.

    Scalar fields carry a ``column``; relation fields carry a ``target``
    shape together with their container representation.
    """

    name: str
    python_type: Any
    optional: bool = False
    init: bool = True
    column: str | None = None
    primary_key: bool = False
    target: type | None = None
    container: type | None = None
    hints: frozendict[str, Any] = frozendict()

    @property
    def is_relation(self) -> bool:
        return self.target is not None

    @property
    def many(self) -> bool:
        return self.container is not None


@dataclass(frozen=True, slots=True)
class ShapeInfo:
    shape: type
    table_name: str
    fields: frozendict[str, FieldInfo]
    primary_key: tuple[str, ...]

    @property
    def columns(self) -> tuple[FieldInfo, ...]:
        return tuple(f for f in self.fields.values() if not f.is_relation)

    @property
    def relations(self) -> tuple[FieldInfo, ...]:
        return tuple(f for f in self.fields.values() if f.is_relation)

    def has_fields(self, names: Sequence[str]) -> bool:
        """True when every name is a scalar field of this shape."""
        return bool(names) and all(
            (f := self.fields.get(name)) is not None and not f.is_relation for name in names
        )


def _unwrap_optional(annotation: Any) -> tuple[Any, bool]:
    if typing.get_origin(annotation) is Annotated:
        annotation = typing.get_args(annotation)[0]

    if typing.get_origin(annotation) in (Union, types.UnionType):
        args = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(args) != 1:
            raise ShapeError(f"Unsupported union annotation {annotation!r}")

        return args[0], True

    return annotation, False


def _unwrap_container(annotation: Any) -> tuple[Any, type | None]:
    origin = typing.get_origin(annotation)
    if origin is list:
        (item,) = typing.get_args(annotation)
        return item, list

    if origin is tuple:
        args = typing.get_args(annotation)
        if len(args) != 2 or args[1] is not Ellipsis:  # noqa: PLR2004
            raise ShapeError(f"Tuple relations must be declared as tuple[X, ...], got {annotation!r}")

        return args[0], tuple

    return annotation, None


def _describe_field(
    shape: type,
    dc_field: dataclasses.Field[Any],
    annotation: Any,
    shapes: Mapping[str, type],
) -> FieldInfo:
    options = dc_field.metadata.get(_METADATA_KEY, frozendict())
    base, optional = _unwrap_optional(annotation)
    item, container = _unwrap_container(base)
    if container is not None:
        item, _ = _unwrap_optional(item)

    if isinstance(item, type) and shapes.get(item.__name__) is item:
        if "primary_key" in options:
            raise ShapeError(f"{shape.__name__}.{dc_field.name} is a relation, use relation()")

        return FieldInfo(
            name=dc_field.name,
            python_type=item,
            optional=optional,
            init=dc_field.init,
            target=item,
            container=container,
            hints=options,
        )

    if container is not None or base not in _COLUMN_TYPES:
        raise ShapeError(
            f"{shape.__name__}.{dc_field.name}: unsupported column type {annotation!r} "
            f"(is the related shape registered?)"
        )

    return FieldInfo(
        name=dc_field.name,
        python_type=base,
        optional=optional,
        init=dc_field.init,
        column=options.get("name") or dc_field.name,
        primary_key=bool(options.get("primary_key")),
    )


def describe_shape(shape: type, shapes: Mapping[str, type]) -> ShapeInfo:
    """Reflect a dataclass *shape* into a ``ShapeInfo``.

    Args:
        shape: Dataclass to reflect.
        shapes: Registered shapes by class name, used both to resolve string
            annotations and to tell relation fields from columns.

    Raises:
        ShapeError: If *shape* is not a dataclass, has no primary key or uses
            an unsupported field type.
    """
    if not dataclasses.is_dataclass(shape):
        raise ShapeError(f"{shape!r} is not a dataclass")

    try:
        hints = typing.get_type_hints(shape, localns=dict(shapes), include_extras=True)
    except NameError as exc:
        raise ShapeError(f"Cannot resolve annotations of {shape.__name__}: {exc}") from exc

    fields = frozendict({
        f.name: _describe_field(shape, f, hints[f.name], shapes) for f in dataclasses.fields(shape)
    })
    primary_key = tuple(f.name for f in fields.values() if f.primary_key)
    if not primary_key:
        id_field = fields.get("id")
        if id_field is None or id_field.is_relation:
            raise ShapeError(f"{shape.__name__} has no primary key")

        fields = fields.copy(id=dataclasses.replace(id_field, primary_key=True))
        primary_key = ("id",)

    return ShapeInfo(
        shape=shape,
        table_name=get_table_name(shape),
        fields=fields,
        primary_key=primary_key,
    )


def _build_table(info: ShapeInfo, metadata: sa.MetaData) -> sa.Table:
    columns = [
        sa.Column(
            f.column,
            _COLUMN_TYPES[f.python_type](),
            primary_key=f.primary_key,
            nullable=f.optional and not f.primary_key,
        )
        for f in info.columns
    ]
    return sa.Table(info.table_name, metadata, *columns)


@final
class Registry:
    """Registry of dataclass shapes and their tables.

    Registration is the declarative step that replaces runtime reflection on
    every call: each shape is reflected once into a ``ShapeInfo`` and an
    ``sa.Table`` on ``metadata``; many-to-many join tables are created for
    every ``relation(many2many=...)`` field.

    A process-wide default registry can be installed with
    :func:`init_registry`; preload calls fall back to it when no registry is
    passed explicitly.

    Example:
        >>> registry = init_registry(Level1, Level2, Level3)
        >>> async with engine.begin() as conn:
        ...     await conn.run_sync(registry.metadata.create_all)
    """

    __instance: ClassVar[Registry | None] = None

    def __init__(self, *shapes: type, metadata: sa.MetaData | None = None) -> None:
        if not shapes:
            raise ShapeError("Registry needs at least one shape")

        by_name = {shape.__name__: shape for shape in shapes}
        if len(by_name) != len(shapes):
            raise ShapeError("Shape class names must be unique within a registry")

        self.metadata = metadata if metadata is not None else sa.MetaData()
        infos = {shape: describe_shape(shape, by_name) for shape in shapes}
        self._shapes: frozendict[type, ShapeInfo] = frozendict(infos)
        self._tables: frozendict[type, sa.Table] = frozendict({
            shape: _build_table(info, self.metadata) for shape, info in infos.items()
        })
        self._join_tables: dict[str, sa.Table] = {}
        self._build_join_tables()

    def _build_join_tables(self) -> None:
        from .relations import RelationKind, resolve_relation

        for shape, info in self._shapes.items():
            for f in info.relations:
                if "many2many" not in f.hints:
                    continue

                rel = resolve_relation(self, shape, f.name)
                assert rel.kind is RelationKind.MANY_TO_MANY
                assert rel.join_table is not None
                wanted = dict(
                    zip(rel.join_owner_columns, self.key_columns(shape, rel.owner_key), strict=True)
                )
                wanted.update(
                    zip(rel.join_target_columns, self.key_columns(rel.target, rel.target_key), strict=True)
                )

                existing = self.metadata.tables.get(rel.join_table)
                if existing is not None:
                    if set(existing.c.keys()) != set(wanted):
                        raise ShapeError(
                            f"Join table {rel.join_table!r} declared with different columns: "
                            f"{sorted(existing.c.keys())} vs {sorted(wanted)}"
                        )
                    self._join_tables[rel.join_table] = existing
                    continue

                self._join_tables[rel.join_table] = sa.Table(
                    rel.join_table,
                    self.metadata,
                    *(sa.Column(name, ref.type, primary_key=True) for name, ref in wanted.items()),
                )

    def __contains__(self, shape: object) -> bool:
        return shape in self._shapes

    def __iter__(self) -> Iterator[type]:
        return iter(self._shapes)

    def __len__(self) -> int:
        return len(self._shapes)

    def __repr__(self) -> str:
        return f"<Registry {[shape.__name__ for shape in self._shapes]}>"

    def info(self, shape: type) -> ShapeInfo:
        """Return the reflected ``ShapeInfo`` of *shape*.

        Raises:
            ShapeError: If *shape* is not registered.
        """
        try:
            return self._shapes[shape]
        except KeyError:
            raise ShapeError(f"{getattr(shape, '__name__', shape)!r} is not registered") from None

    def table(self, shape: type) -> sa.Table:
        """The ``sa.Table`` that stores *shape*."""
        self.info(shape)
        return self._tables[shape]

    def c(self, shape: type) -> sa.ColumnCollection[str, sa.Column[Any]]:
        """Shorthand for ``registry.table(shape).c``, used to write conditions."""
        return self.table(shape).c

    def join_table(self, name: str) -> sa.Table:
        """The many-to-many join table called *name*."""
        try:
            return self._join_tables[name]
        except KeyError:
            raise ShapeError(f"Unknown join table {name!r}") from None

    def key_columns(self, shape: type, fields: Sequence[str]) -> list[sa.Column[Any]]:
        """Map field names of *shape* to their table columns."""
        info = self.info(shape)
        table = self._tables[shape]
        columns: list[sa.Column[Any]] = []
        for name in fields:
            f = info.fields.get(name)
            if f is None or f.column is None:
                raise UnresolvableRelationError(shape, name, "no such column field")
            columns.append(table.c[f.column])

        return columns

    def hydrate(self, shape: type[T], row: Mapping[str, Any]) -> T:
        """Build a *shape* instance from a row mapping keyed by column name.

        Relation fields get their declared defaults.
        """
        info = self.info(shape)
        values = {f.name: row[f.column] for f in info.columns if f.column in row}
        instance = shape(**{k: v for k, v in values.items() if info.fields[k].init})
        for name, value in values.items():
            if not info.fields[name].init:
                set_field(instance, name, value)

        return instance

    @classmethod
    def default(cls) -> Registry:
        """Return the process-wide default registry.

        Raises:
            RuntimeError: If :func:`init_registry` was never called.
        """
        if cls.__instance is None:
            raise RuntimeError("Registry is not initialized")

        return cls.__instance

    @classmethod
    def set_default(cls, registry: Registry) -> None:
        cls.__instance = registry

    @classmethod
    def reset(cls) -> None:
        """Drop the default registry (primarily for tests)."""
        cls.__instance = None


def init_registry(*shapes: type, metadata: sa.MetaData | None = None) -> Registry:
    """Register *shapes* and install the result as the default registry.

    Call once during application startup.

    Example:
        >>> from myapp.models import Level1, Level2, Level3
        >>> registry = init_registry(Level1, Level2, Level3)
    """
    registry = Registry(*shapes, metadata=metadata)
    Registry.set_default(registry)

    return registry


def get_registry() -> Registry:
    """Return the default registry installed by :func:`init_registry`."""
    return Registry.default()
