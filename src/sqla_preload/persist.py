from __future__ import annotations

import dataclasses
import logging
from typing import Any, TypeVar

import sqlalchemy as sa

from .executor import Executor
from .relations import Relationship, RelationKind, resolve_relation
from .schema import Registry, ShapeInfo, get_registry
from .tools import get_field, key_of, set_field


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_blank(instance: Any) -> bool:
    """True when every field of *instance* still holds its default."""
    for dc_field in dataclasses.fields(instance):
        if dc_field.default is not dataclasses.MISSING:
            default = dc_field.default
        elif dc_field.default_factory is not dataclasses.MISSING:
            default = dc_field.default_factory()
        else:
            return False

        if get_field(instance, dc_field.name) != default:
            return False

    return True


def _members(rel: Relationship, value: Any) -> list[Any]:
    if value is None:
        return []
    if rel.many:
        return [item for item in value if item is not None]
    if not rel.optional and _is_blank(value):
        return []

    return [value]


def _key_condition(columns: list[sa.Column[Any]], key: tuple[Any, ...]) -> sa.ColumnElement[bool]:
    return sa.and_(*(col == value for col, value in zip(columns, key, strict=True)))


async def _upsert(executor: Executor, registry: Registry, info: ShapeInfo, instance: Any) -> None:
    table = registry.table(info.shape)
    values = {f.column: get_field(instance, f.name) for f in info.columns}
    pk = key_of(instance, info.primary_key)

    if pk is not None:
        condition = _key_condition(registry.key_columns(info.shape, info.primary_key), pk)
        existing = await executor.fetch_all(sa.select(*table.primary_key.columns).where(condition))
        if existing:
            changes = {
                f.column: values[f.column] for f in info.columns if not f.primary_key
            }
            if changes:
                await executor.execute(sa.update(table).where(condition).values(changes))
            logger.debug("Updated %s %r", info.shape.__name__, pk)
            return

        await executor.execute(sa.insert(table).values(values))
        logger.debug("Inserted %s %r", info.shape.__name__, pk)
        return

    pk_columns = {info.fields[name].column for name in info.primary_key}
    result = await executor.execute(
        sa.insert(table).values({
            column: value
            for column, value in values.items()
            if not (column in pk_columns and value is None)
        })
    )
    for name, value in zip(info.primary_key, result.inserted_primary_key or (), strict=False):
        if get_field(instance, name) is None:
            set_field(instance, name, value)
    logger.debug("Inserted %s %r", info.shape.__name__, key_of(instance, info.primary_key))


async def _link(
    executor: Executor,
    registry: Registry,
    rel: Relationship,
    owner: Any,
    target: Any,
) -> None:
    assert rel.join_table is not None
    join = registry.join_table(rel.join_table)
    owner_key = key_of(owner, rel.owner_key)
    target_key = key_of(target, rel.target_key)
    if owner_key is None or target_key is None:
        return

    values = {
        **dict(zip(rel.join_owner_columns, owner_key, strict=True)),
        **dict(zip(rel.join_target_columns, target_key, strict=True)),
    }
    condition = sa.and_(*(join.c[name] == value for name, value in values.items()))
    if not await executor.fetch_all(sa.select(join).where(condition)):
        await executor.execute(sa.insert(join).values(values))


async def _save(executor: Executor, registry: Registry, instance: Any, seen: set[int]) -> None:
    if id(instance) in seen:
        return
    seen.add(id(instance))

    info = registry.info(type(instance))
    rels = [resolve_relation(registry, info.shape, f.name) for f in info.relations]

    for rel in rels:
        if rel.kind is not RelationKind.BELONGS_TO:
            continue
        for child in _members(rel, get_field(instance, rel.field)):
            await _save(executor, registry, child, seen)
            for fk, ref in zip(rel.owner_key, rel.target_key, strict=True):
                set_field(instance, fk, get_field(child, ref))

    await _upsert(executor, registry, info, instance)

    for rel in rels:
        match rel.kind:
            case RelationKind.HAS_ONE | RelationKind.HAS_MANY:
                for child in _members(rel, get_field(instance, rel.field)):
                    for fk, ref in zip(rel.target_key, rel.owner_key, strict=True):
                        set_field(child, fk, get_field(instance, ref))
                    await _save(executor, registry, child, seen)
            case RelationKind.MANY_TO_MANY:
                for child in _members(rel, get_field(instance, rel.field)):
                    await _save(executor, registry, child, seen)
                    await _link(executor, registry, rel, instance, child)


async def save(executor: Executor, instance: T, *, registry: Registry | None = None) -> T:
    """Persist *instance* together with the records reachable from it.

    Belongs-to records are saved first so their keys can be copied onto
    *instance*; the row itself is then inserted (or updated when its primary
    key already exists); has-one and has-many children get the foreign key
    set and are saved next; many-to-many members are saved and linked
    through the join table. Autoincrement keys are written back onto the
    instances.

    Value-typed single relations still holding their defaults are skipped.
    Every statement runs on its own; wrap the call in a transaction through
    a ``ConnectionExecutor`` when atomicity matters.

    Example:
        >>> level3 = Level3(value="Bob", level2=Level2(value="Foo"))
        >>> await save(executor, level3)
        >>> level3.level2_id == level3.level2.id
        True
    """
    await _save(executor, registry if registry is not None else get_registry(), instance, set())
    return instance
