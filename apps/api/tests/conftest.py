import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.account import Account
from routers import rate_limit
from services.price_catalog import PriceCatalog


PRICE_IDS = {
    ("grower", "monthly"): "price_grower_m",
    ("grower", "annual"): "price_grower_y",
    ("builder", "monthly"): "price_builder_m",
    ("builder", "annual"): "price_builder_y",
    ("maven", "monthly"): "price_maven_m",
    ("maven", "annual"): "price_maven_y",
}


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def catalog():
    return PriceCatalog.from_mapping(PRICE_IDS)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def create_account(session_maker):
    """Factory inserting an account row with the given billing fields."""

    async def _create(account_id: str, **fields) -> Account:
        async with session_maker() as session:
            account = Account(id=account_id, email=f"{account_id}@example.com", **fields)
            session.add(account)
            await session.commit()
            return account

    return _create
