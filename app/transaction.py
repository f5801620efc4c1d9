"""
Transaction runner with propagation policies.

Every multi-row mutation in the services goes through
``TransactionRunner.execute``.  A unit of work is an async callable that
receives the ``AsyncSession`` to use::

    async def _work(session: AsyncSession) -> int:
        ...

    user_id = await runner.execute(Propagation.REQUIRED, _work)

The transaction currently open for the running call chain (the *ambient*
transaction) is held in a ``ContextVar``.  asyncio copies the context into
every task, so each request handler sees only its own ambient session and
nested units of work inside one request join it instead of committing twice.

Policies:

============== ======================== =====================
Policy         No ambient transaction   Ambient transaction
============== ======================== =====================
REQUIRED       start new                join
REQUIRES_NEW   start new                TransactionError
SUPPORTS       run non-transactionally  join
NOT_SUPPORTED  run non-transactionally  TransactionError
NEVER          run non-transactionally  TransactionError
============== ======================== =====================

Any exception raised by a unit of work that started the transaction rolls
back everything done since ``begin`` and is re-raised unchanged.  Joined
units leave commit/rollback to the unit that owns the transaction.
"""
import enum
import logging
from contextvars import ContextVar
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import AppError, TransactionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

UnitOfWork = Callable[[AsyncSession], Awaitable[T]]

# ---------------------------------------------------------------------------
# Per-call-chain ambient transaction
# ---------------------------------------------------------------------------

_ambient_session: ContextVar[AsyncSession | None] = ContextVar(
    "ambient_session", default=None
)


class Propagation(str, enum.Enum):
    REQUIRED = "REQUIRED"
    REQUIRES_NEW = "REQUIRES_NEW"
    SUPPORTS = "SUPPORTS"
    NOT_SUPPORTED = "NOT_SUPPORTED"
    NEVER = "NEVER"


class TransactionRunner:
    """
    Executes units of work under a propagation policy.

    Parameters
    ----------
    session_factory:
        Factory for transactional sessions.
    autocommit_factory:
        Factory for sessions bound with ``isolation_level="AUTOCOMMIT"``;
        used when a unit of work runs outside a transaction.  Defaults to
        *session_factory* with a commit after the unit completes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        autocommit_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._autocommit_factory = autocommit_factory or session_factory

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @staticmethod
    def current_session() -> AsyncSession | None:
        """Return the ambient session of the running call chain, if any."""
        return _ambient_session.get()

    @property
    def in_transaction(self) -> bool:
        return _ambient_session.get() is not None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, propagation: Propagation, work: UnitOfWork[T]) -> T:
        ambient = _ambient_session.get()

        if propagation is Propagation.REQUIRED:
            if ambient is not None:
                return await work(ambient)
            return await self._run_in_new_transaction(work)

        if propagation is Propagation.REQUIRES_NEW:
            if ambient is not None:
                raise TransactionError(
                    "Nested transactions are not supported", "NESTED_TRANSACTION"
                )
            return await self._run_in_new_transaction(work)

        if propagation is Propagation.SUPPORTS:
            if ambient is not None:
                return await work(ambient)
            return await self._run_without_transaction(work)

        if propagation in (Propagation.NOT_SUPPORTED, Propagation.NEVER):
            if ambient is not None:
                raise TransactionError(
                    "A transaction is not allowed in this context",
                    "TRANSACTION_NOT_ALLOWED",
                )
            return await self._run_without_transaction(work)

        raise TransactionError(f"Unsupported propagation: {propagation!r}")

    async def _run_in_new_transaction(self, work: UnitOfWork[T]) -> T:
        async with self._session_factory() as session:
            token = _ambient_session.set(session)
            try:
                result = await work(session)
                await session.commit()
                return result
            # BaseException so a cancelled await (caller deadline) rolls back too.
            except BaseException as exc:
                await session.rollback()
                if isinstance(exc, AppError):
                    logger.debug("Transaction rolled back: %s", exc.code)
                else:
                    logger.warning("Transaction rolled back after %s", type(exc).__name__)
                raise
            finally:
                _ambient_session.reset(token)

    async def _run_without_transaction(self, work: UnitOfWork[T]) -> T:
        async with self._autocommit_factory() as session:
            result = await work(session)
            await session.commit()
            return result
