"""Test configuration and fixtures.

Tests run against in-memory SQLite (aiosqlite) and fakeredis, with the
payment processor replaced by ``tests.fakes.FakeGateway``. Each test gets a
fresh database; every request opens its own session on it, as in production.
"""

import json
from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import fakeredis
import pytest
import pytest_asyncio
import redis.asyncio as aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from escrow_ledger.auth.signing import generate_keypair, generate_nonce, sign_request
from escrow_ledger.config import settings
from escrow_ledger.database import Base, get_db, get_session_factory
from escrow_ledger.main import app
from escrow_ledger.redis import get_redis
from escrow_ledger.services.gateway import get_gateway
from escrow_ledger.services.intents import InMemoryIntentStore, get_intent_store
from tests.fakes import PARTNER_A, PARTNER_B, FakeGateway

WEBHOOK_SECRET = "whsec_test_secret"
OPERATOR_TOKEN = "operator-test-token"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "partner_a_account_id", PARTNER_A)
    object.__setattr__(settings, "partner_b_account_id", PARTNER_B)
    object.__setattr__(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    object.__setattr__(settings, "stripe_secret_key", "sk_test_fake")
    object.__setattr__(settings, "operator_token", OPERATOR_TOKEN)
    object.__setattr__(settings, "email_backend", "log")
    object.__setattr__(settings, "sweeper_enabled", False)
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        settings.test_database_url,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = fakeredis.FakeAsyncRedis()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def store() -> InMemoryIntentStore:
    return InMemoryIntentStore()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis,
    gateway: FakeGateway,
    store: InMemoryIntentStore,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with storage and the processor overridden."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_get_redis() -> AsyncGenerator[aioredis.Redis, None]:
        yield redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_intent_store] = lambda: store
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_user_data(role: str, public_key: str | None = None, **overrides: object) -> dict:
    """Factory for user registration payload."""
    if public_key is None:
        _, public_key = generate_keypair()
    data = {
        "public_key": public_key,
        "role": role,
        "display_name": f"Test {role.title()}",
        "email": f"{role}@example.com",
        "phone": "+65 8123 4567",
    }
    if role == "operator":
        data["operator_token"] = OPERATOR_TOKEN
    data.update(overrides)
    return data


def encode_body(body: bytes | dict | list | None) -> bytes:
    if body is None:
        return b""
    if isinstance(body, bytes):
        return body
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode()


def make_auth_headers(
    user_id: str,
    private_key_hex: str,
    method: str,
    path: str,
    body: bytes | dict | list | None = None,
    timestamp: str | None = None,
    nonce: str | None = None,
) -> dict[str, str]:
    """Build signed auth headers for a request."""
    timestamp = timestamp or datetime.now(UTC).isoformat()
    nonce = nonce or generate_nonce()
    signature = sign_request(private_key_hex, timestamp, nonce, method, path, encode_body(body))
    return {
        "Authorization": f"LedgerSig {user_id}:{signature}",
        "X-Timestamp": timestamp,
        "X-Nonce": nonce,
    }
