from __future__ import annotations

import abc
import logging
from collections.abc import Callable, Sequence
from typing import Any

import anyio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession

from .exceptions import QueryExecutionError


logger = logging.getLogger(__name__)

Listener = Callable[[sa.Executable], None]


class Executor(abc.ABC):
    """Runs statements for the preload engine.

    Subclasses implement ``_fetch_all`` and ``_execute``; this base notifies
    listeners before every statement and turns SQLAlchemy errors into
    ``QueryExecutionError`` so driver exceptions never leak past it.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        """Call *listener* with every statement before it is executed."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        self._listeners.remove(listener)

    def _notify(self, statement: sa.Executable) -> None:
        for listener in self._listeners:
            listener(statement)

    async def fetch_all(self, statement: sa.Select[Any]) -> Sequence[sa.RowMapping]:
        """Execute a SELECT and return its rows as mappings keyed by column name."""
        self._notify(statement)
        try:
            return await self._fetch_all(statement)
        except sa.exc.SQLAlchemyError as exc:
            logger.debug("Statement failed: %s", exc)
            raise QueryExecutionError(statement, str(exc)) from exc

    async def execute(self, statement: sa.Executable) -> sa.CursorResult[Any]:
        """Execute a write statement."""
        self._notify(statement)
        try:
            return await self._execute(statement)
        except sa.exc.SQLAlchemyError as exc:
            logger.debug("Statement failed: %s", exc)
            raise QueryExecutionError(statement, str(exc)) from exc

    @abc.abstractmethod
    async def _fetch_all(self, statement: sa.Select[Any]) -> Sequence[sa.RowMapping]: ...

    @abc.abstractmethod
    async def _execute(self, statement: sa.Executable) -> sa.CursorResult[Any]: ...


class EngineExecutor(Executor):
    """Executor that checks out a fresh connection per statement.

    Writes run in their own ``engine.begin()`` block. Safe to share between
    concurrently loading nodes.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        super().__init__()
        self.engine = engine

    async def _fetch_all(self, statement: sa.Select[Any]) -> Sequence[sa.RowMapping]:
        async with self.engine.connect() as conn:
            result = await conn.execute(statement)
            return result.mappings().all()

    async def _execute(self, statement: sa.Executable) -> sa.CursorResult[Any]:
        async with self.engine.begin() as conn:
            return await conn.execute(statement)


class ConnectionExecutor(Executor):
    """Executor bound to one ``AsyncConnection`` or ``AsyncSession``.

    Statements are serialized with a lock since a single connection cannot
    run two statements at once. Transactions are left to the caller.
    """

    def __init__(self, connection: AsyncConnection | AsyncSession) -> None:
        super().__init__()
        self.connection = connection
        self._lock = anyio.Lock()

    async def _fetch_all(self, statement: sa.Select[Any]) -> Sequence[sa.RowMapping]:
        async with self._lock:
            result = await self.connection.execute(statement)
            return result.mappings().all()

    async def _execute(self, statement: sa.Executable) -> sa.CursorResult[Any]:
        async with self._lock:
            return await self.connection.execute(statement)  # type: ignore[return-value]
