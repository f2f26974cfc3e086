"""Self-referential preload example.

Demonstrates loading parent/children on the same shape (Category).
"""

from __future__ import annotations

from sqla_preload import Executor, Query, get_registry

from .models import Category


# children needs foreign_key="parent_id" on the shape, parent is found by the
# <field>_id convention


async def get_categories_with_children(executor: Executor) -> list[Category]:
    return await Query(Category).preload("children").all(executor)


async def get_categories_with_parent(executor: Executor) -> list[Category]:
    return await Query(Category).preload("parent").all(executor)


async def get_tree(executor: Executor) -> list[Category]:
    roots = get_registry().c(Category).parent_id.is_(None)
    return await Query(Category).where(roots).preload("children.children.children").all(executor)
