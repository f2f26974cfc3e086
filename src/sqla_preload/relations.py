from __future__ import annotations

import enum
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING

from .exceptions import UnresolvableRelationError
from .schema import FieldInfo, ShapeInfo
from .tools import snake_case


if TYPE_CHECKING:
    from .schema import Registry


class RelationKind(enum.Enum):
    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    MANY_TO_MANY = "many_to_many"


@dataclass(frozen=True, slots=True)
class Relationship:
    """Resolved relationship between a parent shape and one of its fields.

    ``owner_key`` names the parent fields whose values are collected from the
    frontier; ``target_key`` names the target fields those values are matched
    against. For a belongs-to the owner key is the parent's foreign key; for
    has-one/has-many it is the parent's primary key and the target key is the
    child's foreign key; for many-to-many both are primary keys and the join
    table columns pair them up.
    """

    kind: RelationKind
    parent: type
    field: str
    target: type
    owner_key: tuple[str, ...]
    target_key: tuple[str, ...]
    optional: bool = False
    container: type | None = None
    join_table: str | None = None
    join_owner_columns: tuple[str, ...] = ()
    join_target_columns: tuple[str, ...] = ()

    @property
    def many(self) -> bool:
        return self.container is not None

    def __repr__(self) -> str:
        return (
            f"<Relationship {self.parent.__name__}.{self.field} "
            f"{self.kind.value} {self.target.__name__}>"
        )


def _convention_key(prefix: str, info: ShapeInfo) -> tuple[str, ...]:
    return tuple(f"{prefix}_{pk}" for pk in info.primary_key)


def _check_arity(shape: type, f: FieldInfo, left: tuple[str, ...], right: tuple[str, ...]) -> None:
    if len(left) != len(right):
        raise UnresolvableRelationError(
            shape, f.name, f"key {left} does not match referenced key {right}"
        )


def _many_to_many(registry: Registry, info: ShapeInfo, f: FieldInfo) -> Relationship:
    shape = info.shape
    target_info = registry.info(f.target)  # type: ignore[arg-type]
    if not f.many:
        raise UnresolvableRelationError(shape, f.name, "many2many requires a collection field")

    owner_columns = f.hints.get("join_foreign_key") or _convention_key(snake_case(shape.__name__), info)
    target_columns = f.hints.get("join_references") or _convention_key(
        snake_case(target_info.shape.__name__), target_info
    )
    if set(owner_columns) & set(target_columns):
        raise UnresolvableRelationError(
            shape, f.name, "self-referential many2many needs join_foreign_key and join_references"
        )

    _check_arity(shape, f, owner_columns, info.primary_key)
    _check_arity(shape, f, target_columns, target_info.primary_key)

    return Relationship(
        kind=RelationKind.MANY_TO_MANY,
        parent=shape,
        field=f.name,
        target=target_info.shape,
        owner_key=info.primary_key,
        target_key=target_info.primary_key,
        container=f.container,
        optional=f.optional,
        join_table=f.hints["many2many"],
        join_owner_columns=owner_columns,
        join_target_columns=target_columns,
    )


def _explicit(registry: Registry, info: ShapeInfo, f: FieldInfo) -> Relationship:
    shape = info.shape
    target_info = registry.info(f.target)  # type: ignore[arg-type]
    foreign_key: tuple[str, ...] = f.hints["foreign_key"]
    references: tuple[str, ...] | None = f.hints.get("references")

    if not f.many and info.has_fields(foreign_key):
        target_key = references or target_info.primary_key
        _check_arity(shape, f, foreign_key, target_key)
        if not target_info.has_fields(target_key):
            raise UnresolvableRelationError(shape, f.name, f"{target_key} not found on target")

        kind = RelationKind.BELONGS_TO
        owner_key = foreign_key
    elif target_info.has_fields(foreign_key):
        owner_key = references or info.primary_key
        _check_arity(shape, f, foreign_key, owner_key)
        if not info.has_fields(owner_key):
            raise UnresolvableRelationError(shape, f.name, f"{owner_key} not found on parent")

        kind = RelationKind.HAS_MANY if f.many else RelationKind.HAS_ONE
        target_key = foreign_key
    else:
        raise UnresolvableRelationError(
            shape, f.name, f"foreign key {foreign_key} not found on either side"
        )

    return Relationship(
        kind=kind,
        parent=shape,
        field=f.name,
        target=target_info.shape,
        owner_key=owner_key,
        target_key=target_key,
        optional=f.optional,
        container=f.container,
    )


@lru_cache(maxsize=2048)
def resolve_relation(registry: Registry, shape: type, field_name: str) -> Relationship:
    """Resolve ``shape.field_name`` into a ``Relationship``.

    Resolution order:

    1. ``relation(many2many=...)`` -> many-to-many through the join table.
    2. Explicit ``relation(foreign_key=...)`` -> belongs-to when the key lives
       on the parent, otherwise has-one/has-many.
    3. Collection field whose target has ``<parent>_<pk>`` -> has-many.
    4. Single field and the parent has ``<field>_<pk>`` -> belongs-to.
    5. Single field whose target has ``<parent>_<pk>`` -> has-one.

    Composite primary keys expand every convention to the whole key. Results
    are cached per ``(registry, shape, field_name)``.

    Raises:
        UnresolvableRelationError: If the field does not exist, is not a
            relation field, or no key convention matches.
    """
    info = registry.info(shape)
    f = info.fields.get(field_name)
    if f is None:
        raise UnresolvableRelationError(shape, field_name, "no such field")
    if not f.is_relation:
        raise UnresolvableRelationError(shape, field_name, "not a relation field")

    if "many2many" in f.hints:
        return _many_to_many(registry, info, f)
    if "foreign_key" in f.hints:
        return _explicit(registry, info, f)

    target_info = registry.info(f.target)  # type: ignore[arg-type]
    parent_fk = _convention_key(snake_case(shape.__name__), info)

    if f.many:
        if target_info.has_fields(parent_fk):
            return Relationship(
                kind=RelationKind.HAS_MANY,
                parent=shape,
                field=field_name,
                target=target_info.shape,
                owner_key=info.primary_key,
                target_key=parent_fk,
                optional=f.optional,
                container=f.container,
            )
        raise UnresolvableRelationError(
            shape, field_name, f"{target_info.shape.__name__} has no foreign key {parent_fk}"
        )

    belongs_fk = _convention_key(field_name, target_info)
    if info.has_fields(belongs_fk):
        return Relationship(
            kind=RelationKind.BELONGS_TO,
            parent=shape,
            field=field_name,
            target=target_info.shape,
            owner_key=belongs_fk,
            target_key=target_info.primary_key,
            optional=f.optional,
        )

    if target_info.has_fields(parent_fk):
        return Relationship(
            kind=RelationKind.HAS_ONE,
            parent=shape,
            field=field_name,
            target=target_info.shape,
            owner_key=info.primary_key,
            target_key=parent_fk,
            optional=f.optional,
        )

    raise UnresolvableRelationError(
        shape,
        field_name,
        f"neither {shape.__name__} has {belongs_fk} nor "
        f"{target_info.shape.__name__} has {parent_fk}",
    )
