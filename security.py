"""
Security boundary

- Meta webhook: X-Hub-Signature-256 HMAC check and hub.* verification handshake
- Outbound API: bearer JWT -> {actor_id, tenant_id, role}

tenant_id from AuthContext is the only tenant scope the outbound API trusts;
client-supplied tenant fields are never read.
"""

import hashlib
import hmac
import jwt
import structlog
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import get_db
from exceptions import Forbidden, InvalidSignature, Unauthorized
from models import Profile
from schemas import AuthContext
from services.cache import CacheService

logger = structlog.get_logger("security")

SIGNATURE_HEADER = "X-Hub-Signature-256"


# =============================================================================
# WEBHOOK
# =============================================================================

def compute_signature(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signature_is_valid(secret: str, body: bytes, header: Optional[str]) -> bool:
    if not header or not header.startswith("sha256="):
        return False
    return hmac.compare_digest(compute_signature(secret, body), header)


async def validate_meta_signature(request: Request, settings: Settings = Depends(get_settings)):
    """
    FastAPI dependency for the webhook POST.

    Disabled when WHATSAPP_APP_SECRET is empty. Otherwise a missing or wrong
    signature is rejected with 401 before any processing.
    """
    if not settings.WHATSAPP_APP_SECRET:
        return

    body = await request.body()
    if not signature_is_valid(settings.WHATSAPP_APP_SECRET, body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Webhook signature rejected", has_header=SIGNATURE_HEADER in request.headers)
        raise InvalidSignature("signature does not match request body")


def verify_challenge(mode: Optional[str], token: Optional[str], challenge: Optional[str], settings: Settings) -> str:
    """hub.* handshake. Returns the challenge to echo, raises Forbidden otherwise."""
    expected = settings.WHATSAPP_VERIFY_TOKEN
    if mode == "subscribe" and token and expected and hmac.compare_digest(token, expected):
        return challenge or ""
    raise Forbidden("webhook verification failed")


# =============================================================================
# AUTH GUARD
# =============================================================================

class AuthGuard:
    """Bearer credential -> AuthContext."""

    def __init__(self, db: AsyncSession, settings: Settings, cache: Optional[CacheService] = None):
        self.db = db
        self.cache = cache
        self.secret = settings.AUTH_JWT_SECRET
        self.algorithm = settings.AUTH_JWT_ALGORITHM
        self.audience = settings.AUTH_JWT_AUDIENCE
        self.cache_ttl = settings.AUTH_CACHE_TTL

    async def resolve(self, authorization: Optional[str]) -> AuthContext:
        user_id = self._user_id(authorization)

        if self.cache:
            membership = await self.cache.get_or_compute(
                f"membership:{user_id}", self._load_membership, user_id, ttl=self.cache_ttl
            )
        else:
            membership = await self._load_membership(user_id)

        if not membership:
            logger.warning("Authenticated user without tenant membership", actor_id=user_id)
            raise Forbidden("profile_missing")

        return AuthContext(actor_id=user_id, tenant_id=membership["tenant_id"], role=membership["role"])

    def _user_id(self, authorization: Optional[str]) -> str:
        if not authorization or not authorization.startswith("Bearer "):
            raise Unauthorized("missing_bearer")
        if not self.secret:
            logger.error("AUTH_JWT_SECRET is not configured")
            raise Unauthorized("invalid_token")

        token = authorization[len("Bearer "):].strip()
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={"verify_aud": bool(self.audience)},
            )
        except jwt.ExpiredSignatureError:
            raise Unauthorized("token_expired")
        except jwt.InvalidTokenError as e:
            logger.info("Bearer token rejected", error=str(e))
            raise Unauthorized("invalid_token")

        user_id = claims.get("sub")
        if not user_id:
            raise Unauthorized("invalid_token")
        return str(user_id)

    async def _load_membership(self, user_id: str) -> Optional[Dict[str, Any]]:
        result = await self.db.execute(
            select(Profile.tenant_id, Profile.role).where(Profile.id == user_id)
        )
        row = result.first()
        if row is None:
            return None
        return {"tenant_id": row.tenant_id, "role": row.role}


def get_cache(request: Request) -> Optional[CacheService]:
    return getattr(request.app.state, "cache", None)


async def get_auth_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    cache: Optional[CacheService] = Depends(get_cache),
) -> AuthContext:
    """FastAPI dependency for every mutating/outbound route."""
    ctx = await AuthGuard(db, settings, cache).resolve(request.headers.get("Authorization"))
    structlog.contextvars.bind_contextvars(tenant_id=ctx.tenant_id, actor_id=ctx.actor_id)
    return ctx
