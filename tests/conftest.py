from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from sqla_preload import EngineExecutor, Registry, preload_cache_clear


pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["postgres", "mysql", "mariadb", "sqlite"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "mysql" | "mariadb":
            from testcontainers.mysql import MySqlContainer

            image = "mysql:8.0" if db_backend == "mysql" else "mariadb:latest"
            my = MySqlContainer(image=image)
            if os.name == "nt":
                my.get_container_host_ip = lambda: "127.0.0.1"
            with my:
                host = my.get_container_host_ip()
                port = my.get_exposed_port(my.port)
                yield f"mysql+asyncmy://{my.username}:{my.password}@{host}:{port}/{my.dbname}"

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


class Database:
    """Creates the tables of per-test registries and drops them afterwards."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._registries: list[Registry] = []

    async def setup(self, *shapes: type) -> tuple[Registry, EngineExecutor]:
        registry = Registry(*shapes)
        async with self.engine.begin() as conn:
            await conn.run_sync(registry.metadata.drop_all)
            await conn.run_sync(registry.metadata.create_all)
        self._registries.append(registry)

        return registry, EngineExecutor(self.engine)

    async def teardown(self) -> None:
        async with self.engine.begin() as conn:
            for registry in reversed(self._registries):
                await conn.run_sync(registry.metadata.drop_all)
        self._registries.clear()


@pytest.fixture
async def db(engine: AsyncEngine) -> AsyncIterator[Database]:
    database = Database(engine)
    yield database
    await database.teardown()


class StatementRecorder:
    """Executor listener that keeps every issued statement."""

    def __init__(self) -> None:
        self.statements: list[sa.Executable] = []

    def __call__(self, statement: sa.Executable) -> None:
        self.statements.append(statement)

    def __len__(self) -> int:
        return len(self.statements)

    @property
    def selects(self) -> list[Any]:
        return [stmt for stmt in self.statements if isinstance(stmt, sa.Select)]

    def clear(self) -> None:
        self.statements.clear()


@pytest.fixture
def recorder() -> StatementRecorder:
    return StatementRecorder()


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    preload_cache_clear()
