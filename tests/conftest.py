from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.config import Settings
from app.core.money import Money
from app.db.session import build_sessionmaker
from app.models.service import Service
from app.models.user import User, UserRole
from app.models.wallet import TransactionType, WalletType
from app.services import wallet_service as ledger
from app.services.bootstrap_service import init_db
from app.services.escrow_service import EscrowService
from app.services.transaction_log import record_transaction


def _make_engine(url: str) -> AsyncEngine:
    """
    File-backed SQLite; each session gets its own connection (NullPool).
    BEGIN IMMEDIATE takes the write lock up front so concurrent units of
    work serialize the way row locks serialize them on MySQL.
    """
    engine = create_async_engine(url, poolclass=NullPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_connect(dbapi_conn, _):
        # hand transaction control to the "begin" hook below
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@pytest.fixture
def config(monkeypatch) -> Settings:
    monkeypatch.setenv("TX_BACKOFF_BASE_MS", "1")
    monkeypatch.setenv("TX_BACKOFF_MAX_MS", "5")
    monkeypatch.setenv("SCHEDULER_ENABLED", "0")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    return Settings()


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = _make_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def sessionmaker(engine):
    return build_sessionmaker(engine)


@pytest.fixture
def escrow(sessionmaker, config) -> EscrowService:
    return EscrowService(sessionmaker, config)


@pytest.fixture
def make_user(sessionmaker):
    counter = {"n": 0}

    async def _make(role: UserRole = UserRole.CUSTOMER, discord_id: str | None = None, name: str | None = None) -> User:
        counter["n"] += 1
        n = counter["n"]
        async with sessionmaker() as session:
            async with session.begin():
                u = User(
                    username=name or f"{role.value.lower()}{n}",
                    fullname=(name or f"{role.value.title()} {n}"),
                    discord_id=discord_id or f"discord-{n}",
                    role=role,
                    status=1,
                )
                session.add(u)
        return u

    return _make


@pytest.fixture
def fund(sessionmaker):
    """Seed a wallet directly through the ledger: balance and/or worker deposit pool."""

    async def _fund(user: User, balance="0", deposit="0", wallet_type: WalletType = WalletType.CUSTOMER):
        async with sessionmaker() as session:
            async with session.begin():
                w = await ledger.get_or_create_wallet(session, user.id, wallet_type)
                change = await ledger.update_balance(session, w.id, Money(balance), deposit_delta=Money(deposit))
                record_transaction(session, wallet_id=w.id, type=TransactionType.DEPOSIT, change=change,
                                   notes="test funding")
        return w

    return _fund


@pytest.fixture
def wallet_of(sessionmaker):
    async def _get(user: User):
        async with sessionmaker() as session:
            return await ledger.get_wallet_by_user_id(session, user.id)

    return _get


@pytest.fixture
def make_service(sessionmaker):
    async def _make(name: str = "Boosting") -> Service:
        async with sessionmaker() as session:
            async with session.begin():
                svc = Service(name=name, status=1)
                session.add(svc)
        return svc

    return _make


@pytest_asyncio.fixture
async def parties(make_user, fund):
    """Customer with 1000.00, worker with 100.00, a support agent."""
    customer = await make_user(UserRole.CUSTOMER, "cust-1")
    worker = await make_user(UserRole.WORKER, "work-1")
    support = await make_user(UserRole.SUPPORT, "supp-1")
    await fund(customer, balance="1000")
    await fund(worker, balance="100", wallet_type=WalletType.WORKER)
    return customer, worker, support

