"""Test configuration and fixtures.

Supports parallel execution via pytest-xdist (pytest -n auto).
Each worker gets its own Postgres schema. Within a worker, tables are created
once per session and each test runs inside a rolled-back transaction (fast).
Tests that need Postgres or Redis are skipped when the service is unreachable.
"""

import asyncio
import json
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Any

import pytest
import pytest_asyncio
import redis.asyncio as aioredis
import sqlalchemy
from httpx import ASGITransport, AsyncClient, Response
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tradeguard.config import settings
from tradeguard.database import Base, get_db
from tradeguard.main import app
from tradeguard.redis import get_redis
from tradeguard.utils.crypto import AUTH_SCHEME, generate_keypair


# ---------------------------------------------------------------------------
# Per-worker database isolation (for pytest-xdist)
# ---------------------------------------------------------------------------

def _worker_schema(worker_id: str) -> str:
    """Each xdist worker gets its own Postgres schema for isolation."""
    if worker_id == "master":
        return "public"
    return f"test_{worker_id}"


def _worker_redis_db(worker_id: str) -> int:
    if worker_id == "master":
        return 0
    return int(worker_id.replace("gw", "")) + 1


@pytest.fixture(scope="session")
def worker_id(request: pytest.FixtureRequest) -> str:
    if hasattr(request.config, "workerinput"):
        return request.config.workerinput["workerid"]
    return "master"


async def _drop_enum_types(conn: Any, schema: str) -> None:
    prefix = "" if schema == "public" else f"{schema}."
    await conn.execute(text(
        f"DO $$ DECLARE r RECORD; "
        f"BEGIN FOR r IN (SELECT typname FROM pg_type t JOIN pg_namespace n ON t.typnamespace = n.oid "
        f"WHERE n.nspname = '{schema}' AND t.typtype = 'e') "
        f"LOOP EXECUTE 'DROP TYPE IF EXISTS {prefix}' || quote_ident(r.typname) || ' CASCADE'; END LOOP; END $$;"
    ))


async def _setup_schema(schema: str) -> None:
    """Create per-worker schema and tables using asyncpg."""
    engine_auto = create_async_engine(
        settings.test_database_url, isolation_level="AUTOCOMMIT"
    )
    async with engine_auto.connect() as conn:
        if schema != "public":
            await conn.execute(text(f'DROP SCHEMA IF EXISTS "{schema}" CASCADE'))
            await conn.execute(text(f'CREATE SCHEMA "{schema}"'))
    await engine_auto.dispose()

    engine = create_async_engine(
        settings.test_database_url,
        connect_args={"server_settings": {"search_path": schema}},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await _drop_enum_types(conn, schema)
        await conn.execute(text("DROP TABLE IF EXISTS alembic_version"))
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


async def _teardown_schema(schema: str) -> None:
    """Drop per-worker schema or clean public schema."""
    if schema != "public":
        engine = create_async_engine(
            settings.test_database_url, isolation_level="AUTOCOMMIT"
        )
        async with engine.connect() as conn:
            await conn.execute(text(f'DROP SCHEMA IF EXISTS "{schema}" CASCADE'))
        await engine.dispose()
        return

    engine = create_async_engine(settings.test_database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await _drop_enum_types(conn, schema)
    await engine.dispose()


@pytest.fixture(scope="session")
def _worker_db_setup(worker_id: str) -> tuple[str, str]:
    """Create per-worker schema and tables once per session (sync wrapper).

    Returns (async_db_url, schema_name).
    """
    schema = _worker_schema(worker_id)
    try:
        asyncio.run(_setup_schema(schema))
    except (OSError, sqlalchemy.exc.OperationalError, sqlalchemy.exc.InterfaceError) as exc:
        pytest.skip(f"PostgreSQL unavailable at {settings.test_database_url}: {exc}")

    yield settings.test_database_url, schema

    asyncio.run(_teardown_schema(schema))


# ---------------------------------------------------------------------------
# Per-test fixtures: transaction rollback isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "env", "test")
    # Every test client shares one IP; registration is otherwise limited to 5.
    object.__setattr__(settings, "rate_limit_registration_capacity", 1000)
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def _worker_engine(_worker_db_setup: tuple[str, str]) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine for this worker's test DB (created per-test, cheap)."""
    url, schema = _worker_db_setup
    engine = create_async_engine(
        url,
        connect_args={"server_settings": {"search_path": schema}},
    )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def _worker_redis(worker_id: str) -> AsyncGenerator[aioredis.Redis, None]:
    """Per-worker Redis connection using separate DB numbers."""
    base_url = settings.redis_url.rsplit("/", 1)[0]
    db_num = _worker_redis_db(worker_id)
    redis_client = aioredis.from_url(f"{base_url}/{db_num}")
    try:
        await redis_client.flushdb()
    except (RedisConnectionError, OSError) as exc:
        await redis_client.aclose()
        pytest.skip(f"Redis unavailable at {settings.redis_url}: {exc}")
    yield redis_client
    await redis_client.flushdb()
    await redis_client.aclose()


@pytest_asyncio.fixture
async def db_session(
    _worker_engine: AsyncEngine,
) -> AsyncGenerator[AsyncSession, None]:
    """Per-test session wrapped in a transaction that rolls back after the test.

    Tests that call session.commit() will commit the inner SAVEPOINT, not the
    outer transaction, so data is still rolled back at the end.
    """
    async with _worker_engine.connect() as conn:
        txn = await conn.begin()
        await conn.begin_nested()

        session = AsyncSession(bind=conn, expire_on_commit=False)

        @sqlalchemy.event.listens_for(session.sync_session, "after_transaction_end")
        def reopen_nested(session_sync, transaction):  # type: ignore[no-untyped-def]
            if conn.closed:
                return
            if not conn.in_nested_transaction():
                conn.sync_connection.begin_nested()  # type: ignore[union-attr]

        yield session

        await session.close()
        await txn.rollback()


@pytest_asyncio.fixture
async def committed_sessions(
    _worker_engine: AsyncEngine,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory whose commits are real, for racing two transactions.

    Tables are emptied afterwards to avoid cross-test contamination.
    """
    yield async_sessionmaker(_worker_engine, class_=AsyncSession, expire_on_commit=False)

    async with _worker_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    _worker_redis: aioredis.Redis,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB and Redis dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> AsyncGenerator[aioredis.Redis, None]:
        yield _worker_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@dataclass
class TestWallet:
    wallet_id: str
    private_key: str
    public_key: str

    __test__ = False


def make_wallet_data(public_key: str | None = None, display_name: str = "Test Wallet") -> dict:
    """Factory for wallet registration payload."""
    if public_key is None:
        _, public_key = generate_keypair()
    return {"public_key": public_key, "display_name": display_name}


def make_auth_headers(
    wallet_id: str,
    private_key_hex: str,
    method: str,
    path: str,
    body: bytes | dict | list | None = None,
) -> dict[str, str]:
    """Build signed auth headers for a request."""
    from datetime import UTC, datetime

    from tradeguard.utils.crypto import generate_nonce, sign_request

    if body is None:
        body_bytes = b""
    elif isinstance(body, bytes):
        body_bytes = body
    else:
        body_bytes = encode_body(body)

    timestamp = datetime.now(UTC).isoformat()
    signature = sign_request(private_key_hex, timestamp, method, path, body_bytes)
    return {
        "Authorization": f"{AUTH_SCHEME} {wallet_id}:{signature}",
        "X-Timestamp": timestamp,
        "X-Nonce": generate_nonce(),
    }


def encode_body(body: dict | list) -> bytes:
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode()


async def signed(
    client: AsyncClient,
    wallet: TestWallet,
    method: str,
    path: str,
    body: dict | None = None,
    headers: dict[str, str] | None = None,
    params: dict | None = None,
) -> Response:
    """Send a request signed by ``wallet``. The body is sent exactly as signed."""
    content = encode_body(body) if body is not None else b""
    request_headers = make_auth_headers(wallet.wallet_id, wallet.private_key, method, path, content)
    if body is not None:
        request_headers["Content-Type"] = "application/json"
    if headers:
        request_headers.update(headers)
    return await client.request(method, path, content=content, headers=request_headers, params=params)


async def create_wallet(
    client: AsyncClient, display_name: str = "Test Wallet", arbiter: bool = False
) -> TestWallet:
    priv, pub = generate_keypair()
    if arbiter:
        object.__setattr__(settings, "arbiter_public_keys", [*settings.arbiter_public_keys, pub])
    resp = await client.post("/wallets", json=make_wallet_data(pub, display_name))
    assert resp.status_code == 201, resp.text
    return TestWallet(wallet_id=resp.json()["wallet_id"], private_key=priv, public_key=pub)


async def deposit(client: AsyncClient, wallet: TestWallet, amount: str) -> dict:
    resp = await signed(client, wallet, "POST", f"/wallets/{wallet.wallet_id}/deposit", {"amount": amount})
    assert resp.status_code == 200, resp.text
    return resp.json()


async def get_balance(client: AsyncClient, wallet: TestWallet) -> dict:
    resp = await signed(client, wallet, "GET", f"/wallets/{wallet.wallet_id}/balance")
    assert resp.status_code == 200, resp.text
    return resp.json()


def reserve_payload(
    buyer: TestWallet,
    seller: TestWallet,
    amount: str = "1000.00",
    seller_amount: str | None = None,
    platform_fee: str = "0.00",
    driver: TestWallet | None = None,
    driver_amount: str = "0.00",
    reference_type: str = "order",
    reference_id: str | None = None,
    **extra: Any,
) -> dict:
    import uuid
    from decimal import Decimal

    if seller_amount is None:
        seller_amount = str(Decimal(amount) - Decimal(platform_fee) - Decimal(driver_amount))
    payload = {
        "buyer_wallet_id": buyer.wallet_id,
        "seller_wallet_id": seller.wallet_id,
        "amount": amount,
        "seller_amount": seller_amount,
        "driver_amount": driver_amount,
        "platform_fee": platform_fee,
        "reference_type": reference_type,
        "reference_id": reference_id or f"ORD-{uuid.uuid4().hex[:10]}",
    }
    if driver is not None:
        payload["driver_wallet_id"] = driver.wallet_id
    payload.update(extra)
    return payload


async def hold(
    client: AsyncClient,
    buyer: TestWallet,
    seller: TestWallet,
    headers: dict[str, str] | None = None,
    **kwargs: Any,
) -> dict:
    resp = await signed(client, buyer, "POST", "/reserves", reserve_payload(buyer, seller, **kwargs), headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest_asyncio.fixture
async def parties(client: AsyncClient) -> tuple[TestWallet, TestWallet]:
    """A funded buyer (5000.00) and a seller."""
    buyer = await create_wallet(client, "Buyer")
    seller = await create_wallet(client, "Seller")
    await deposit(client, buyer, "5000.00")
    return buyer, seller


@pytest_asyncio.fixture
async def arbiter(client: AsyncClient) -> TestWallet:
    return await create_wallet(client, "TradeGuard Arbiter", arbiter=True)
