import os
import tempfile

# Settings are cached on first import; point everything at a throwaway SQLite file
_DB_DIR = tempfile.mkdtemp(prefix="wa-inbox-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'inbox.db')}"
os.environ["AUTH_JWT_SECRET"] = "test-jwt-secret-with-enough-bytes-for-hs256"
os.environ["WHATSAPP_ACCESS_TOKEN"] = "test-access-token"
os.environ["WHATSAPP_VERIFY_TOKEN"] = "verify-me"
os.environ["WHATSAPP_APP_SECRET"] = ""
os.environ["WHATSAPP_PHONE_NUMBER_ID"] = ""
os.environ["DEFAULT_TENANT_ID"] = ""
os.environ["DEFAULT_COUNTRY_CODE"] = "+54"

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from fastapi_limiter import FastAPILimiter

from config import get_settings
from database import AsyncSessionLocal, engine
from exceptions import ProviderSendError
from main import app
from models import Base, Channel, Profile, Tenant
from routers.messages import get_whatsapp_client
from services.cache import CacheService
from tests.fakes import FakeRedis, FakeWhatsAppClient
from tests.factories import AGENT_A, AGENT_B, PHONE_NUMBER_ID_A, PHONE_NUMBER_ID_B, TENANT_A, TENANT_B


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest_asyncio.fixture
async def db_schema():
    """Fresh schema per test; connections are dropped so no loop leaks between tests."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def seeded(db_schema):
    """Two tenants, one channel and one agent each."""
    async with AsyncSessionLocal() as session:
        session.add_all([
            Tenant(id=TENANT_A, name="Dealer A"),
            Tenant(id=TENANT_B, name="Dealer B"),
        ])
        await session.flush()
        session.add_all([
            Channel(tenant_id=TENANT_A, phone_number_id=PHONE_NUMBER_ID_A),
            Channel(tenant_id=TENANT_B, phone_number_id=PHONE_NUMBER_ID_B),
            Profile(id=AGENT_A, tenant_id=TENANT_A, role="seller", full_name="Agent A"),
            Profile(id=AGENT_B, tenant_id=TENANT_B, role="admin", full_name="Agent B"),
        ])
        await session.commit()
    return {"tenant_a": TENANT_A, "tenant_b": TENANT_B}


@pytest_asyncio.fixture
async def db_session(seeded):
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory():
    return AsyncSessionLocal


@pytest.fixture
def fake_whatsapp():
    return FakeWhatsAppClient()


@pytest.fixture
def failing_whatsapp():
    return FakeWhatsAppClient(error=ProviderSendError(
        "Meta API error 400", provider_status=400, provider_body={"error": {"code": 131030}}
    ))


@pytest_asyncio.fixture
async def async_client(redis_client, seeded, fake_whatsapp):
    # Lifespan does not run under ASGITransport; wire app.state by hand
    await FastAPILimiter.init(redis_client)

    app.state.redis = redis_client
    app.state.cache = CacheService(redis_client)
    app.state.whatsapp = fake_whatsapp
    app.dependency_overrides[get_whatsapp_client] = lambda: fake_whatsapp

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}
