import pytest

from config import Settings
from exceptions import Forbidden, Unauthorized
from security import AuthGuard
from services.cache import CacheService
from tests.factories import AGENT_A, AGENT_B, TENANT_A, TENANT_B, make_token
from tests.fakes import FakeRedis


@pytest.mark.asyncio
async def test_bearer_resolves_to_tenant_membership(db_session, settings):
    ctx = await AuthGuard(db_session, settings).resolve(f"Bearer {make_token(AGENT_A)}")

    assert ctx.actor_id == AGENT_A
    assert ctx.tenant_id == TENANT_A
    assert ctx.role == "seller"


@pytest.mark.asyncio
async def test_membership_is_cached(db_session, settings):
    redis = FakeRedis()
    guard = AuthGuard(db_session, settings, CacheService(redis))

    ctx = await guard.resolve(f"Bearer {make_token(AGENT_B)}")

    assert ctx.tenant_id == TENANT_B
    assert f"wa-inbox:membership:{AGENT_B}" in redis.data


@pytest.mark.asyncio
@pytest.mark.parametrize("header,detail", [
    (None, "missing_bearer"),
    ("", "missing_bearer"),
    ("Basic abc", "missing_bearer"),
    ("Bearer not-a-jwt", "invalid_token"),
])
async def test_bad_credentials(db_session, settings, header, detail):
    with pytest.raises(Unauthorized) as exc:
        await AuthGuard(db_session, settings).resolve(header)
    assert exc.value.detail == detail


@pytest.mark.asyncio
async def test_expired_token(db_session, settings):
    with pytest.raises(Unauthorized) as exc:
        await AuthGuard(db_session, settings).resolve(f"Bearer {make_token(AGENT_A, expires_in=-60)}")
    assert exc.value.detail == "token_expired"


@pytest.mark.asyncio
async def test_token_signed_with_other_secret(db_session, settings):
    token = make_token(AGENT_A, secret="someone-elses-secret-with-enough-bytes")
    with pytest.raises(Unauthorized) as exc:
        await AuthGuard(db_session, settings).resolve(f"Bearer {token}")
    assert exc.value.detail == "invalid_token"


@pytest.mark.asyncio
async def test_user_without_profile_is_forbidden(db_session, settings):
    with pytest.raises(Forbidden) as exc:
        await AuthGuard(db_session, settings).resolve(f"Bearer {make_token('no-such-user')}")
    assert exc.value.detail == "profile_missing"


@pytest.mark.asyncio
async def test_audience_is_checked_when_configured(db_session, settings):
    strict = Settings(AUTH_JWT_SECRET=settings.AUTH_JWT_SECRET, AUTH_JWT_AUDIENCE="authenticated")

    ctx = await AuthGuard(db_session, strict).resolve(f"Bearer {make_token(AGENT_A, aud='authenticated')}")
    assert ctx.tenant_id == TENANT_A

    with pytest.raises(Unauthorized):
        await AuthGuard(db_session, strict).resolve(f"Bearer {make_token(AGENT_A, aud='anon')}")
