"""Database connection, units of work and transaction outcomes.

``Database`` owns the engine and session factory and is opened/closed
explicitly by whoever composes the application. Service calls run inside a
``UnitOfWork``: one session, one transaction, plus the domain events the
services emitted. Events are handed to the event bus only after commit.

``Database.run`` is the boundary used by callers that want an explicit
outcome instead of exceptions::

    result = await db.run(lambda uow: ParticipantRegistry(uow).register(tid, ref))
    if not result.ok:
        ...  # result.error is a TourneyError, the transaction was rolled back
"""

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from tourney.config import Settings
from tourney.errors import ConflictError, InternalError, TourneyError
from tourney.tournament.event_bus import DomainEventBus
from tourney.tournament.events import DomainEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL SQLSTATEs for lock waits that gave up
_LOCK_FAILURE_SQLSTATES = {"55P03", "40P01", "40001"}


@dataclass
class OperationResult(Generic[T]):
    """Outcome of a unit of work: either ``value`` or ``error``."""

    ok: bool
    value: T | None = None
    error: TourneyError | None = None

    @classmethod
    def success(cls, value: T) -> "OperationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: TourneyError) -> "OperationResult[T]":
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        """Return the value or re-raise the error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


@dataclass
class UnitOfWork:
    """A session bound to one transaction plus the events it produced."""

    session: AsyncSession
    events: list[DomainEvent] = field(default_factory=list)

    def emit(self, event: DomainEvent) -> None:
        self.events.append(event)


def _is_lock_failure(error: DBAPIError) -> bool:
    sqlstate = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    if sqlstate in _LOCK_FAILURE_SQLSTATES:
        return True
    # SQLite reports lock contention as "database is locked"
    return "locked" in str(error.orig).lower()


def translate_db_error(error: SQLAlchemyError) -> TourneyError:
    """Map persistence failures onto domain error kinds."""
    if isinstance(error, IntegrityError):
        return ConflictError(
            "Concurrent modification violated a uniqueness rule, please retry",
            details={"reason": "integrity"},
        )
    if isinstance(error, DBAPIError) and _is_lock_failure(error):
        return ConflictError(
            "Could not acquire a row lock in time, please retry",
            details={"reason": "lock_timeout"},
        )
    return InternalError("Persistence failure")


class Database:
    """Engine, session factory and transaction helpers."""

    def __init__(
        self,
        settings: Settings,
        *,
        event_bus: DomainEventBus | None = None,
        use_null_pool: bool = False,
    ):
        self.settings = settings
        self.event_bus = event_bus
        self._use_null_pool = use_null_pool
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    @property
    def is_postgres(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    async def open(self) -> None:
        """Create the engine and verify connectivity."""
        if self._engine is not None:
            return

        if self._use_null_pool or self.settings.database_url.startswith("sqlite"):
            self._engine = create_async_engine(
                self.settings.database_url,
                poolclass=NullPool,
                echo=self.settings.db_echo,
            )
        else:
            self._engine = create_async_engine(
                self.settings.database_url,
                pool_size=self.settings.db_pool_size,
                max_overflow=self.settings.db_max_overflow,
                pool_timeout=self.settings.db_pool_timeout,
                pool_recycle=self.settings.db_pool_recycle,
                pool_pre_ping=True,
                echo=self.settings.db_echo,
            )
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_factory = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Plain session that commits on success and rolls back on error."""
        if self._session_factory is None:
            raise RuntimeError("Database is not open")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncGenerator[UnitOfWork, None]:
        """Run a block in one transaction; publish its events after commit.

        Persistence errors leave the block as ``TourneyError`` subclasses.
        """
        if self._session_factory is None:
            raise RuntimeError("Database is not open")

        async with self._session_factory() as session:
            uow = UnitOfWork(session=session)
            try:
                if self.is_postgres and self.settings.lock_timeout_ms:
                    await session.execute(
                        text(f"SET LOCAL lock_timeout = '{int(self.settings.lock_timeout_ms)}ms'")
                    )
                yield uow
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                error = translate_db_error(e)
                if isinstance(error, InternalError):
                    logger.exception(f"Unit of work failed: {e}")
                raise error from e
            except Exception:
                await session.rollback()
                raise

        if uow.events and self.event_bus is not None:
            await self.event_bus.publish_batch(uow.events)

    async def run(
        self,
        operation: Callable[[UnitOfWork], Awaitable[T]],
    ) -> OperationResult[T]:
        """Run ``operation`` in a unit of work and report the outcome.

        Domain errors and persistence errors become a failed result after a
        full rollback. Anything else is unexpected and propagates.
        """
        try:
            async with self.unit_of_work() as uow:
                value = await operation(uow)
        except TourneyError as e:
            logger.info(f"Operation rejected: {e.code} {e.message}")
            return OperationResult.failure(e)
        return OperationResult.success(value)


async def create_schema(db: Database) -> None:
    """Create all tables (tests and local development; production uses Alembic)."""
    from tourney.models import Base

    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
