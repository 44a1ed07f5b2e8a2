"""
Identity Service

Resolves a tenant + phone number to a Contact and its Conversation.

All writes are single atomic statements (INSERT ... ON CONFLICT ... RETURNING),
so concurrent webhook deliveries for the same phone converge on one row and
counters never lose updates. ensure_* methods do not commit: the caller owns
the transaction.
"""

import re
import structlog
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, literal, update
from sqlalchemy.types import DateTime
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from database import upsert_insert
from exceptions import NotFound, ValidationError
from logger_config import phone_suffix
from models import Contact, Conversation, ConversationStatus, new_id, utcnow
from schemas import ConversationRef

logger = structlog.get_logger("identity_service")

_SEPARATORS = re.compile(r"[\s\-]+")
MIN_LOCAL_DIGITS = 6


def normalize_phone(raw: str, default_country_code: str, international: bool = False) -> str:
    """
    Normalize a phone number towards E.164.

    - whitespace and hyphens are removed
    - a leading "+" means the number is already international
    - international=True: digits are a full number without "+" (WhatsApp wa_id)
    - otherwise 6+ digits get the default country code prepended

    Anything else is returned stripped; callers decide whether it is usable.
    """
    s = _SEPARATORS.sub("", raw or "")
    if s.startswith("+"):
        return s
    if international and s.isdigit():
        return f"+{s}"
    if s.isdigit() and len(s) >= MIN_LOCAL_DIGITS:
        return f"{default_country_code}{s}"
    return s


def _bind_ts(at: datetime):
    return literal(at, DateTime())


def _later(current, incoming):
    """SQL max() of two nullable timestamps, portable across dialects."""
    return case(
        (incoming.is_(None), current),
        (current.is_(None), incoming),
        (incoming > current, incoming),
        else_=current,
    )


class IdentityService:
    """Contact / Conversation upserts scoped by tenant."""

    def __init__(self, db: AsyncSession, settings: Settings):
        self.db = db
        self.default_country_code = settings.DEFAULT_COUNTRY_CODE

    async def ensure_contact(
        self,
        tenant_id: str,
        phone_raw: str,
        seen_at: Optional[datetime],
        name: Optional[str] = None,
        international: bool = True,
    ) -> str:
        """
        Upsert keyed on (tenant, normalized phone). Returns the contact id.

        last_seen_at only moves forward; name is only overwritten when given.
        """
        phone = normalize_phone(phone_raw, self.default_country_code, international=international)
        if not phone.startswith("+"):
            raise ValidationError(f"invalid phone number: {phone_raw!r}")

        stmt = upsert_insert(self.db, Contact).values(
            id=new_id(),
            tenant_id=tenant_id,
            phone_e164=phone,
            name=name,
            last_seen_at=seen_at,
            created_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Contact.tenant_id, Contact.phone_e164],
            set_={
                "last_seen_at": _later(Contact.last_seen_at, stmt.excluded.last_seen_at),
                "name": func.coalesce(stmt.excluded.name, Contact.name),
            },
        ).returning(Contact.id)

        contact_id = (await self.db.execute(stmt)).scalar_one()
        logger.debug("Contact ensured", tenant_id=tenant_id, phone_suffix=phone_suffix(phone))
        return contact_id

    async def ensure_conversation(
        self,
        tenant_id: str,
        contact_id: str,
        seen_at: Optional[datetime],
        inbound: bool = True,
    ) -> str:
        """
        Upsert keyed on (tenant, contact). Returns the conversation id.

        inbound=True: new rows start with unread_count=1, existing rows get an
        atomic +1, last_message_at = max(current, seen_at) and are reopened.
        inbound=False (agent starts a chat): counters are left untouched.
        """
        stmt = upsert_insert(self.db, Conversation).values(
            id=new_id(),
            tenant_id=tenant_id,
            contact_id=contact_id,
            status=ConversationStatus.OPEN.value,
            unread_count=1 if inbound else 0,
            last_message_at=seen_at if inbound else None,
            created_at=utcnow(),
        )

        if inbound:
            set_ = {
                "status": ConversationStatus.OPEN.value,
                "unread_count": Conversation.unread_count + 1,
                "last_message_at": _later(Conversation.last_message_at, stmt.excluded.last_message_at),
            }
        else:
            # no-op update so RETURNING yields the existing row
            set_ = {"status": Conversation.status}

        stmt = stmt.on_conflict_do_update(
            index_elements=[Conversation.tenant_id, Conversation.contact_id],
            set_=set_,
        ).returning(Conversation.id)

        return (await self.db.execute(stmt)).scalar_one()

    async def touch_conversation(self, tenant_id: str, conversation_id: str, at: datetime) -> None:
        """Advance last_message_at monotonically (outbound path)."""
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.tenant_id == tenant_id)
            .values(last_message_at=_later(Conversation.last_message_at, _bind_ts(at)))
        )

    # =========================================================================
    # AGENT ACTIONS (own transaction)
    # =========================================================================

    async def start_conversation(self, tenant_id: str, phone_raw: str, name: Optional[str] = None) -> ConversationRef:
        """Agent opens a chat with a (possibly new) number."""
        phone = normalize_phone(phone_raw, self.default_country_code)
        try:
            contact_id = await self.ensure_contact(tenant_id, phone, None, name=name, international=False)
            conversation_id = await self.ensure_conversation(tenant_id, contact_id, None, inbound=False)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Conversation started", tenant_id=tenant_id, conversation_id=conversation_id,
                    phone_suffix=phone_suffix(phone))
        return ConversationRef(conversation_id=conversation_id, contact_id=contact_id, phone_e164=phone)

    async def mark_read(self, tenant_id: str, conversation_id: str) -> None:
        """Agent viewed the conversation: unread -> 0, contact seen-by-agent -> now."""
        result = await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.tenant_id == tenant_id)
            .values(unread_count=0)
            .returning(Conversation.contact_id)
        )
        contact_id = result.scalar_one_or_none()
        if contact_id is None:
            await self.db.rollback()
            raise NotFound("conversation")

        await self.db.execute(
            update(Contact)
            .where(Contact.id == contact_id, Contact.tenant_id == tenant_id)
            .values(last_seen_by_agent_at=utcnow())
        )
        await self.db.commit()
        logger.info("Conversation marked read", tenant_id=tenant_id, conversation_id=conversation_id)

