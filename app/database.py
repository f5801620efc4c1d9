from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from app.config import settings


def install_sqlite_pragmas(engine: AsyncEngine) -> None:
    """
    Register a ``connect`` listener on *engine* that turns on foreign key
    enforcement for every new SQLite connection.

    SQLite ignores ``ON DELETE CASCADE`` unless the pragma is set per
    connection.  Other dialects are left untouched.

    Must be called once per engine (production engine below, test engines
    in ``conftest.py``).
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def make_session_factories(
    engine: AsyncEngine,
) -> tuple[async_sessionmaker[AsyncSession], async_sessionmaker[AsyncSession]]:
    """
    Return ``(transactional, autocommit)`` session factories for *engine*.

    The autocommit factory is bound to the same pool with
    ``isolation_level="AUTOCOMMIT"``; every statement issued through it is
    committed on its own.  The transaction runner uses it for units of work
    that execute outside a transaction.
    """
    transactional = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    autocommit = async_sessionmaker(
        engine.execution_options(isolation_level="AUTOCOMMIT"),
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return transactional, autocommit


# Process-wide engine; tests build their own engines and session factories.
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
)

install_sqlite_pragmas(engine)

async_session, autocommit_session = make_session_factories(engine)


class Base(DeclarativeBase):
    pass
