"""
Tenant Resolver

Maps the phone_number_id from a webhook's metadata to the owning tenant.
Falls back to DEFAULT_TENANT_ID (single-tenant deployments).
"""

import structlog
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from exceptions import TenantResolutionError
from models import Channel

logger = structlog.get_logger("tenant_resolver")


class TenantResolver:
    """Channel -> tenant lookup, memoized per instance (one webhook delivery)."""

    def __init__(self, db: AsyncSession, settings: Settings):
        self.db = db
        self.default_tenant_id = settings.DEFAULT_TENANT_ID
        self._memo: Dict[str, Optional[str]] = {}

    async def resolve(self, phone_number_id: Optional[str]) -> str:
        """
        Returns the tenant id for a channel.

        Raises TenantResolutionError when the channel is absent or unmapped
        and no default tenant is configured.
        """
        tenant_id = None
        if phone_number_id:
            tenant_id = await self._lookup(phone_number_id)

        if tenant_id:
            return tenant_id

        if self.default_tenant_id:
            logger.debug("Using default tenant", phone_number_id=phone_number_id)
            return self.default_tenant_id

        logger.warning("Tenant resolution failed", phone_number_id=phone_number_id)
        raise TenantResolutionError(
            f"no tenant mapped to phone_number_id={phone_number_id!r} and no default tenant"
        )

    async def _lookup(self, phone_number_id: str) -> Optional[str]:
        if phone_number_id in self._memo:
            return self._memo[phone_number_id]

        result = await self.db.execute(
            select(Channel.tenant_id).where(Channel.phone_number_id == phone_number_id)
        )
        tenant_id = result.scalar_one_or_none()
        self._memo[phone_number_id] = tenant_id
        return tenant_id
