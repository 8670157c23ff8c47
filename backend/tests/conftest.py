import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.database import Base
from app.models.user import User
from app.models.ledger import CreditLedgerEntry


@pytest_asyncio.fixture
async def engine(tmp_path):
    db_path = tmp_path / "queue.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def serialized_engine(tmp_path):
    """Engine whose transactions take the SQLite write lock up front.

    Needed when several sessions write concurrently, otherwise SQLite
    reports "database is locked" instead of waiting.
    """
    db_path = tmp_path / "concurrent.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


async def create_user(session_maker, user_id: str = "user-1", balance: int = 500) -> str:
    async with session_maker() as session:
        session.add(User(id=user_id, credits_balance=balance))
        await session.commit()
    return user_id


async def fetch_balance(session_maker, user_id: str = "user-1") -> int:
    async with session_maker() as session:
        result = await session.execute(select(User.credits_balance).where(User.id == user_id))
        return result.scalar_one()


async def fetch_entries(session_maker, user_id: str = "user-1", direction: str = None) -> list[CreditLedgerEntry]:
    async with session_maker() as session:
        query = select(CreditLedgerEntry).where(CreditLedgerEntry.user_id == user_id)
        if direction:
            query = query.where(CreditLedgerEntry.direction == direction)
        result = await session.execute(query)
        return list(result.scalars().all())


@pytest.fixture
def user_factory(session_maker):
    async def _create(user_id: str = "user-1", balance: int = 500):
        return await create_user(session_maker, user_id, balance)
    return _create


@pytest.fixture
def balance_of(session_maker):
    async def _balance(user_id: str = "user-1") -> int:
        return await fetch_balance(session_maker, user_id)
    return _balance


@pytest.fixture
def ledger_entries(session_maker):
    async def _entries(user_id: str = "user-1", direction: str = None) -> list[CreditLedgerEntry]:
        return await fetch_entries(session_maker, user_id, direction)
    return _entries
