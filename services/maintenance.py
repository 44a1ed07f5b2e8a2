import structlog
import time
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Settings
from models import Message, MessageDirection, MessageStatus, utcnow

logger = structlog.get_logger("maintenance")


class MaintenanceService:
    """
    Closes the crash window of the outbound send: a message still `queued`
    after QUEUED_MESSAGE_TIMEOUT_SECONDS never got a provider answer patched
    back, so it is marked `failed` and the agent can resend it.
    """

    def __init__(self, session_factory: async_sessionmaker, settings: Settings):
        self.session_factory = session_factory
        self.timeout = timedelta(seconds=settings.QUEUED_MESSAGE_TIMEOUT_SECONDS)
        self.interval = settings.SWEEP_INTERVAL_SECONDS
        self.last_run = 0.0

    async def run_if_due(self) -> Optional[int]:
        """
        Called on every worker tick; sweeps at most once per interval.
        Returns the swept count, or None when nothing ran.
        """
        now = time.monotonic()
        if self.last_run and now - self.last_run < self.interval:
            return None

        try:
            count = await self.sweep_stale_queued()
        except Exception as e:
            logger.error("Stale send sweep failed", error=str(e))
            raise

        self.last_run = now
        return count

    async def sweep_stale_queued(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - self.timeout

        async with self.session_factory() as session:
            try:
                stmt = (
                    update(Message)
                    .where(
                        Message.direction == MessageDirection.OUT.value,
                        Message.status == MessageStatus.QUEUED.value,
                        Message.created_at < cutoff,
                    )
                    .values(status=MessageStatus.FAILED.value)
                )
                result = await session.execute(stmt)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        if result.rowcount:
            logger.warning("Stale queued messages marked failed", count=result.rowcount, cutoff=cutoff.isoformat())
        return result.rowcount or 0
