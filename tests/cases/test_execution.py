from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from sqla_preload import (
    ConnectionExecutor,
    EngineExecutor,
    Preload,
    Query,
    QueryExecutionError,
    order_by,
    preload,
    save,
)

from ..conftest import Database, StatementRecorder
from ..models import ALL_SHAPES, Category, Comment, Message, Post, Profile, Role, Tag, User


pytestmark = pytest.mark.anyio


def _tables(statement: sa.Select[Any]) -> set[str]:
    return {getattr(f, "name", "") for f in statement.get_final_froms()}


class FailingExecutor(EngineExecutor):
    """Rejects every SELECT reading one of *tables*."""

    def __init__(self, engine: AsyncEngine, *tables: str) -> None:
        super().__init__(engine)
        self.tables = set(tables)

    async def _fetch_all(self, statement: sa.Select[Any]) -> Sequence[sa.RowMapping]:
        if _tables(statement) & self.tables:
            raise sa.exc.OperationalError(str(statement), {}, Exception("boom"))

        return await super()._fetch_all(statement)


async def _seed(executor: EngineExecutor, registry: Any) -> list[User]:
    admin, editor = Role(name="admin", level=2), Role(name="editor", level=1)
    python, sql = Tag(name="python"), Tag(name="sql")
    users = [
        User(
            name="alice",
            roles=[admin, editor],
            profile=Profile(bio="hi"),
            posts=[
                Post(title="a1", tags=(python, sql), comments=[Comment(text="c1"), Comment(text="c2")]),
                Post(title="a2", tags=(sql,)),
            ],
        ),
        User(name="bob", roles=[editor], posts=[Post(title="b1", comments=[Comment(text="c3")])]),
        User(name="carol"),
    ]
    for user in users:
        await save(executor, user, registry=registry)

    return users


def _snapshot(users: list[User]) -> list[Any]:
    return [
        (
            user.name,
            [role.name for role in user.roles],
            user.profile.bio if user.profile else None,
            [
                (post.title, [c.text for c in post.comments], [t.name for t in post.tags])
                for post in user.posts
            ],
        )
        for user in users
    ]


class TestBatching:
    async def test_one_statement_per_node(self, db: Database, recorder: StatementRecorder) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)
        executor.add_listener(recorder)

        users = await (
            Query(User, registry)
            .order_by(registry.c(User).id)
            .preload("posts.comments")
            .preload("posts.tags")
            .preload("roles")
            .preload("profile")
            .all(executor)
        )

        # root, posts, comments, post_tags + tags, user_roles + roles, profiles
        assert len(recorder) == 8
        assert _snapshot(users) == [
            ("alice", ["admin", "editor"], "hi", [("a1", ["c1", "c2"], ["python", "sql"]), ("a2", [], ["sql"])]),
            ("bob", ["editor"], None, [("b1", ["c3"], [])]),
            ("carol", [], None, []),
        ]

    async def test_no_statement_without_parents(self, db: Database, recorder: StatementRecorder) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await save(executor, User(name="carol"), registry=registry)
        executor.add_listener(recorder)

        user = await Query(User, registry).preload("posts.comments.reactions").preload("roles.users").first(executor)

        # root, posts, user_roles
        assert len(recorder) == 3
        assert user.posts == []
        assert user.roles == []

    async def test_no_statement_without_keys(self, db: Database, recorder: StatementRecorder) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        posts = [Post(title="orphan"), Post(title="another")]
        executor.add_listener(recorder)

        await preload(posts, "author", executor=executor, registry=registry)

        assert len(recorder) == 0
        assert [post.author for post in posts] == [None, None]

    async def test_keys_are_deduplicated(self, db: Database, recorder: StatementRecorder) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        author = await save(executor, User(name="alice"), registry=registry)
        for title in ("p1", "p2", "p3"):
            await save(executor, Post(title=title, author_id=author.id), registry=registry)
        posts = await Query(Post, registry).all(executor)
        executor.add_listener(recorder)

        await preload(posts, "author", executor=executor, registry=registry)

        (stmt,) = recorder.selects
        sql = str(stmt.compile(compile_kwargs={"literal_binds": True}))
        assert f"users.id IN ({author.id})" in sql
        assert posts[0].author is posts[1].author is posts[2].author

    async def test_root_instances_keep_identity(self, db: Database) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)
        users = await Query(User, registry).order_by(registry.c(User).id).all(executor)
        before = list(users)

        await preload(users + users, "posts", executor=executor, registry=registry)

        assert all(a is b for a, b in zip(users, before, strict=True))
        assert [len(user.posts) for user in users] == [2, 1, 0]


class TestErrorIsolation:
    @pytest.mark.parametrize("max_concurrency", [1, 3])
    async def test_failed_node_keeps_siblings(
        self,
        db: Database,
        engine: AsyncEngine,
        caplog: pytest.LogCaptureFixture,
        max_concurrency: int,
    ) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)
        users = await Query(User, registry).order_by(registry.c(User).id).all(executor)
        failing = FailingExecutor(engine, "posts")
        recorder = StatementRecorder()
        failing.add_listener(recorder)

        with caplog.at_level(logging.WARNING, logger="sqla_preload"):
            with pytest.raises(QueryExecutionError, match="boom") as exc_info:
                await preload(
                    users,
                    "posts.comments",
                    "roles",
                    "profile",
                    executor=failing,
                    registry=registry,
                    max_concurrency=max_concurrency,
                )

        assert isinstance(exc_info.value.__cause__, sa.exc.OperationalError)
        assert [[role.name for role in user.roles] for user in users] == [["admin", "editor"], ["editor"], []]
        assert users[0].profile is not None
        assert [user.posts for user in users] == [[], [], []]
        # posts, user_roles, roles, profiles; comments never runs
        assert len(recorder) == 4
        assert not any("comments" in _tables(stmt) for stmt in recorder.selects)
        assert "skipping 1 dependent node(s)" in caplog.text

    async def test_first_failure_in_plan_order(self, db: Database, engine: AsyncEngine) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)
        users = await Query(User, registry).order_by(registry.c(User).id).all(executor)
        failing = FailingExecutor(engine, "profiles", "user_roles")

        with pytest.raises(QueryExecutionError) as exc_info:
            await preload(users, "posts", "roles", "profile", executor=failing, registry=registry, max_concurrency=3)

        assert "user_roles" in _tables(exc_info.value.statement)
        assert [len(user.posts) for user in users] == [2, 1, 0]

    @pytest.mark.parametrize("max_concurrency", [1, 4])
    async def test_failing_callback(
        self, db: Database, recorder: StatementRecorder, max_concurrency: int
    ) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)
        users = await Query(User, registry).order_by(registry.c(User).id).all(executor)
        executor.add_listener(recorder)

        def bad_callback(stmt: sa.Select[Any]) -> sa.Select[Any]:
            raise ValueError("bad callback")

        with pytest.raises(ValueError, match="bad callback"):
            await preload(
                users,
                Preload("posts.comments"),
                Preload("posts", customize=bad_callback),
                "roles",
                executor=executor,
                registry=registry,
                max_concurrency=max_concurrency,
            )

        assert [[role.name for role in user.roles] for user in users] == [["admin", "editor"], ["editor"], []]
        assert [user.posts for user in users] == [[], [], []]
        # user_roles, roles; posts fails before its statement and comments is skipped
        assert len(recorder) == 2

    async def test_root_failure(self, db: Database, engine: AsyncEngine) -> None:
        registry, _ = await db.setup(*ALL_SHAPES)
        with pytest.raises(QueryExecutionError):
            await Query(User, registry).preload("posts").all(FailingExecutor(engine, "users"))


class TestConcurrency:
    async def test_same_result_as_sequential(self, db: Database) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)
        query = (
            Query(User, registry)
            .order_by(registry.c(User).id)
            .preload("posts.comments.reactions")
            .preload("posts.tags")
            .preload("roles.users")
            .preload("profile")
            .preload("sent_messages")
        )

        sequential = await query.all(executor)
        concurrent = await query.all(executor, max_concurrency=4)

        assert _snapshot(concurrent) == _snapshot(sequential)
        assert [u.name for u in concurrent[0].roles[1].users] == ["alice", "bob"]

    async def test_connection_executor(self, db: Database, engine: AsyncEngine) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)

        async with engine.connect() as conn:
            users = await (
                Query(User, registry)
                .order_by(registry.c(User).id)
                .preload("posts.comments")
                .preload("posts.tags")
                .preload("roles")
                .preload("profile")
                .all(ConnectionExecutor(conn), max_concurrency=4)
            )

        assert _snapshot(users)[0][1] == ["admin", "editor"]
        assert _snapshot(users)[1][3] == [("b1", ["c3"], [])]

    async def test_session_executor(self, db: Database, engine: AsyncEngine) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)

        async with AsyncSession(engine) as session:
            session_executor = ConnectionExecutor(session)
            users = await Query(User, registry).order_by(registry.c(User).id).all(session_executor)
            await preload(users, "posts", "roles", executor=session_executor, registry=registry, max_concurrency=2)

        assert [len(user.posts) for user in users] == [2, 1, 0]
        assert [len(user.roles) for user in users] == [2, 1, 0]

    async def test_save_inside_transaction(self, db: Database, engine: AsyncEngine) -> None:
        registry, _ = await db.setup(*ALL_SHAPES)

        async with engine.begin() as conn:
            tx_executor = ConnectionExecutor(conn)
            user = await save(tx_executor, User(name="dave", posts=[Post(title="d1")]), registry=registry)
            loaded = await Query(User, registry).preload("posts").first(tx_executor)

        assert loaded.id == user.id
        assert [post.title for post in loaded.posts] == ["d1"]


class TestQuery:
    async def test_first_and_last(self, db: Database) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)

        first = await Query(User, registry).preload("posts").first(executor)
        last = await Query(User, registry).preload("posts").last(executor)
        active = await Query(User, registry).filter_by(active=True, name="bob").last(executor)

        assert (first.name, last.name, active.name) == ("alice", "carol", "bob")
        assert [post.title for post in first.posts] == ["a1", "a2"]
        assert last.posts == []

    async def test_builders_return_copies(self, db: Database) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)
        base = Query(User, registry).order_by(registry.c(User).name.desc())

        names = [user.name for user in await base.all(executor)]
        bobs = await base.filter_by(name="bob").preload("posts").all(executor)

        assert names == ["carol", "bob", "alice"]
        assert [user.name for user in bobs] == ["bob"]
        assert [user.name for user in await base.all(executor)] == names

    async def test_preload_options(self, db: Database) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)
        posts_c = registry.c(Post)

        user = await (
            Query(User, registry)
            .filter_by(name="alice")
            .preload("posts", posts_c.title != "a2", customize=order_by(posts_c.id.desc()))
            .preload("roles", customize=order_by(registry.c(Role).level))
            .first(executor)
        )

        assert [post.title for post in user.posts] == ["a1"]
        assert [role.name for role in user.roles] == ["editor", "admin"]

    async def test_explicit_foreign_keys(self, db: Database) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        alice = await save(executor, User(name="alice"), registry=registry)
        bob = await save(executor, User(name="bob"), registry=registry)
        await save(executor, Message(content="hey", from_user=alice, to_user=bob), registry=registry)
        await save(executor, Message(content="yo", from_user=bob, to_user=alice), registry=registry)

        users = await (
            Query(User, registry)
            .order_by(registry.c(User).id)
            .preload("sent_messages.to_user")
            .preload("received_messages.from_user")
            .all(executor)
        )

        assert [m.content for m in users[0].sent_messages] == ["hey"]
        assert [m.content for m in users[0].received_messages] == ["yo"]
        assert users[0].sent_messages[0].to_user == User(id=bob.id, name="bob")
        assert users[1].received_messages[0].from_user == User(id=alice.id, name="alice")

    async def test_preload_object(self, db: Database) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        await _seed(executor, registry)
        comments = await Query(Comment, registry).order_by(registry.c(Comment).id).all(executor)

        await preload(
            comments,
            Preload("post.author", active=True),
            "post.tags",
            executor=executor,
            registry=registry,
        )

        assert {c.post.author.name for c in comments if c.post and c.post.author} == {"alice", "bob"}
        assert [t.name for t in comments[0].post.tags] == ["python", "sql"]  # type: ignore[union-attr]


class TestSelfReferential:
    async def test_parent_and_children(self, db: Database) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        root = Category(
            name="root",
            children=[
                Category(name="a", children=[Category(name="a1"), Category(name="a2")]),
                Category(name="b"),
            ],
        )
        await save(executor, root, registry=registry)

        got = await (
            Query(Category, registry)
            .where(registry.c(Category).parent_id.is_(None))
            .preload("children.children")
            .preload("children.parent")
            .first(executor)
        )

        assert [c.name for c in got.children] == ["a", "b"]
        assert [c.name for c in got.children[0].children] == ["a1", "a2"]
        assert got.children[1].children == []
        assert got.children[0].parent is not None
        assert got.children[0].parent.name == "root"

    async def test_walk_up(self, db: Database) -> None:
        registry, executor = await db.setup(*ALL_SHAPES)
        leaf = Category(name="leaf", parent=Category(name="mid", parent=Category(name="top")))
        await save(executor, leaf, registry=registry)

        got = await Query(Category, registry).filter_by(name="leaf").preload("parent.parent.parent").first(executor)

        assert got.parent is not None
        assert got.parent.parent is not None
        assert got.parent.parent.name == "top"
        assert got.parent.parent.parent is None
