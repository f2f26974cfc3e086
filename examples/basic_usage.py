"""Basic sqla-preload usage examples.

Demonstrates initialization, simple preloads, dotted paths,
conditions, ordering and preloading already loaded records.

NOTE: This file is illustrative, it won't run standalone
without a database and seeded data.
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from sqla_preload import (
    ConnectionExecutor,
    EngineExecutor,
    Preload,
    Query,
    add_conditions,
    init_registry,
    order_by,
    preload,
    save,
)

from .models import SHAPES, Post, Role, User


# ── 1. Initialize once at startup ────────────────────────────────────

engine = create_async_engine("sqlite+aiosqlite:///:memory:")
executor = EngineExecutor(engine)

# Builds the tables of every shape and installs the default registry
registry = init_registry(*SHAPES)


async def setup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(registry.metadata.create_all)

    await save(executor, User(name="alice", posts=[Post(title="hello")], roles=[Role(name="admin")]))


# ── 2. Simple preloads ───────────────────────────────────────────────


async def get_users_with_posts() -> list[User]:
    return await Query(User).preload("posts").all(executor)


async def get_users_with_all() -> list[User]:
    return await Query(User).preload("posts").preload("roles").preload("profile").all(executor)


# ── 3. Dotted / deep paths ──────────────────────────────────────────


async def get_users_deep() -> list[User]:
    # posts and posts.comments are loaded too, one query per level
    return await Query(User).preload("posts.comments.reactions").all(executor)


# ── 4. Conditions ────────────────────────────────────────────────────


async def get_users_with_senior_roles() -> list[User]:
    return await Query(User).preload("roles", registry.c(Role).level > 3).all(executor)  # noqa: PLR2004


async def get_users_with_admin_role() -> list[User]:
    return await Query(User).preload("roles", name="admin").all(executor)


async def get_users_with_titled_posts() -> list[User]:
    titled = add_conditions(registry.c(Post).title != "")
    return await Query(User).preload("posts", customize=titled).all(executor)


# ── 5. Ordering ─────────────────────────────────────────────────────


async def get_users_posts_by_title() -> list[User]:
    by_title = order_by(registry.c(Post).title)
    return await Query(User).preload("posts", customize=by_title).all(executor)


async def get_latest_user() -> User:
    return await Query(User).preload("posts").last(executor)


# ── 6. Records loaded elsewhere ─────────────────────────────────────


async def preload_existing(users: list[User]) -> list[User]:
    return await preload(
        users,
        "posts.comments",
        Preload("roles", customize=order_by(registry.c(Role).level.desc())),
        executor=executor,
        max_concurrency=4,
    )


# ── 7. Inside a session ─────────────────────────────────────────────


async def get_active_users_with_posts(session: AsyncSession) -> list[User]:
    session_executor = ConnectionExecutor(session)
    return await (
        Query(User)
        .where(registry.c(User).name != "deleted")
        .order_by(sa.desc(registry.c(User).id))
        .preload("posts")
        .all(session_executor)
    )


# ── 8. Belongs-to ───────────────────────────────────────────────────


async def get_posts_with_author() -> list[Post]:
    return await Query(Post).preload("author").all(executor)
