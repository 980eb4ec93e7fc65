"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite database file; the schema is dropped
and recreated for every test that asks for the database.
"""
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="giftledger-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/giftledger.db"
os.environ["HASH_PEPPER"] = "test-pepper"
os.environ["RESEND_API_KEY"] = ""
os.environ["APP_ENV"] = "test"

import uuid  # noqa: E402
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Tuple  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from giftledger.config import get_settings  # noqa: E402

get_settings.cache_clear()

from giftledger.api.main import app  # noqa: E402
from giftledger.core.api_keys import api_key_service  # noqa: E402
from giftledger.core.cards import IssuedCard, card_service  # noqa: E402
from giftledger.core.constants import API_PERMISSIONS  # noqa: E402
from giftledger.core.identity import Scope  # noqa: E402
from giftledger.database.connection import close_db, get_engine, get_session_factory  # noqa: E402
from giftledger.database.models import Base, Merchant, MerchantMember, Partner  # noqa: E402


def scope_for(merchant: Merchant, role: str = "owner", actor_id: str = "user_owner") -> Scope:
    """Portal-style scope on a merchant."""
    return Scope(
        role=role,
        merchant_id=merchant.id,
        partner_id=merchant.partner_id,
        permissions=frozenset(API_PERMISSIONS),
        actor_id=actor_id,
        actor_type="user",
    )


def partner_scope_for(partner: Partner, role: str = "owner") -> Scope:
    """Portal-style scope on a partner organisation."""
    return Scope(
        role=role,
        partner_id=partner.id,
        permissions=frozenset(API_PERMISSIONS),
        actor_id="user_partner",
        actor_type="user",
    )


class RecordingLogger:
    """Stands in for a module logger and keeps every event logged through it."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    def __getattr__(self, level: str) -> Callable[..., None]:
        def log(event: str, **kwargs: Any) -> None:
            self.events.append((level, event, kwargs))

        return log

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [kwargs for _, name, kwargs in self.events if name == event]


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[None, Any]:
    """Fresh schema bound to the current event loop."""
    await close_db()
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()


@pytest_asyncio.fixture
async def db(database: None) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with get_session_factory()() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def merchant(db: AsyncSession) -> Merchant:
    merchant = Merchant(name="Corner Coffee", email="owner@corner.example", currency="USD")
    db.add(merchant)
    await db.commit()
    return merchant


@pytest_asyncio.fixture
async def other_merchant(db: AsyncSession) -> Merchant:
    merchant = Merchant(name="Book Nook", currency="USD")
    db.add(merchant)
    await db.commit()
    return merchant


@pytest_asyncio.fixture
async def partner(db: AsyncSession) -> Partner:
    partner = Partner(name="Main Street Group")
    db.add(partner)
    await db.commit()
    return partner


@pytest_asyncio.fixture
async def partner_merchant(db: AsyncSession, partner: Partner) -> Merchant:
    merchant = Merchant(name="Bakery on Main", partner_id=partner.id, currency="USD")
    db.add(merchant)
    await db.commit()
    return merchant


@pytest.fixture
def owner_scope(merchant: Merchant) -> Scope:
    return scope_for(merchant)


@pytest.fixture
def staff_scope(merchant: Merchant) -> Scope:
    return scope_for(merchant, role="staff", actor_id="user_staff")


@pytest_asyncio.fixture
async def members(db: AsyncSession, merchant: Merchant) -> None:
    """Portal memberships: one owner and one staff user on the merchant."""
    db.add_all(
        [
            MerchantMember(merchant_id=merchant.id, user_id="user_owner", role="owner"),
            MerchantMember(merchant_id=merchant.id, user_id="user_staff", role="staff"),
        ]
    )
    await db.commit()


@pytest.fixture
def make_card(db: AsyncSession) -> Callable[..., Awaitable[IssuedCard]]:
    """Issue and commit a card; keyword arguments go to create_card."""

    async def _make_card(scope: Scope, initial_balance: int = 0, **kwargs: Any) -> IssuedCard:
        issued = await card_service.create_card(db, scope, initial_balance=initial_balance, **kwargs)
        await db.commit()
        return issued

    return _make_card


@pytest.fixture
def make_api_key(db: AsyncSession) -> Callable[..., Awaitable[str]]:
    """Create and commit an API key; returns the plaintext secret."""

    async def _make_api_key(
        scope: Scope,
        permissions: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> str:
        created = await api_key_service.create_key(
            db,
            scope,
            name="Test key",
            permissions=permissions or list(API_PERMISSIONS),
            **kwargs,
        )
        await db.commit()
        return created["key"]

    return _make_api_key


@pytest_asyncio.fixture
async def client(database: None) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def bearer(key: str) -> dict:
    return {"Authorization": f"Bearer {key}"}


def portal_user(user_id: str, role: str = "user") -> dict:
    return {"X-User-Id": user_id, "X-User-Role": role}


def random_id() -> str:
    return str(uuid.uuid4())
