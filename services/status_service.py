"""
Status Reconciliation

Applies WhatsApp delivery statuses (sent/delivered/read/failed) to stored
messages, matched by (tenant_id, wa_message_id).

With STATUS_ORDERING_GUARD on, a status only moves forward:
    queued < sent < delivered < read,   failed reachable from any of
    queued/sent/delivered,   read and failed are terminal.
The guard is a conditional UPDATE, so concurrent events cannot interleave
a read-modify-write. With the guard off the last event wins.
"""

import structlog
from typing import FrozenSet

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from models import Message, MessageStatus

logger = structlog.get_logger("status_service")

STATUS_RANK = {
    MessageStatus.QUEUED: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}

# Outcomes reported back to the inbound processor
UPDATED = "updated"
UNKNOWN = "unknown"
STALE = "stale"
DUPLICATE = "duplicate"


def map_provider_status(raw: str) -> MessageStatus:
    """Provider vocabulary -> local enum. Unrecognized values map to queued."""
    try:
        return MessageStatus((raw or "").strip().lower())
    except ValueError:
        return MessageStatus.QUEUED


def allowed_predecessors(new: MessageStatus) -> FrozenSet[str]:
    """Statuses a message may be in for `new` to be applied."""
    if new == MessageStatus.FAILED:
        return frozenset(
            s.value for s in (MessageStatus.QUEUED, MessageStatus.SENT, MessageStatus.DELIVERED)
        )
    rank = STATUS_RANK[new]
    return frozenset(s.value for s, r in STATUS_RANK.items() if r < rank)


def can_transition(current: MessageStatus, new: MessageStatus) -> bool:
    return current.value in allowed_predecessors(new)


class StatusReconciler:
    """Does not commit; the caller owns the transaction."""

    def __init__(self, db: AsyncSession, settings: Settings):
        self.db = db
        self.ordering_guard = settings.STATUS_ORDERING_GUARD

    async def apply_status(self, tenant_id: str, wa_message_id: str, raw_status: str) -> str:
        new = map_provider_status(raw_status)
        log = logger.bind(tenant_id=tenant_id, wa_message_id=wa_message_id, status=new.value)

        stmt = (
            update(Message)
            .where(Message.tenant_id == tenant_id, Message.wa_message_id == wa_message_id)
            .values(status=new.value)
            .returning(Message.id)
        )
        if self.ordering_guard:
            stmt = stmt.where(Message.status.in_(sorted(allowed_predecessors(new))))

        updated = (await self.db.execute(stmt)).scalar_one_or_none()
        if updated is not None:
            log.info("Message status updated", message_id=updated)
            return UPDATED

        current = (await self.db.execute(
            select(Message.status).where(
                Message.tenant_id == tenant_id,
                Message.wa_message_id == wa_message_id,
            )
        )).scalar_one_or_none()

        if current is None:
            # Status for a message not visible locally (yet); acceptable loss
            log.info("Status for unknown message ignored")
            return UNKNOWN

        if current == new.value:
            log.debug("Repeated status ignored")
            return DUPLICATE

        log.warning("Out-of-order status rejected", current=current)
        return STALE
