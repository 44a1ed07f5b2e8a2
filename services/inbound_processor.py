"""
Inbound Event Processor

Turns a WhatsApp Cloud API webhook delivery into stored contacts,
conversations and messages, and applies delivery statuses.

Delivery is at-least-once and batched: one POST can carry several entries,
changes, messages and statuses. Each message/status is an independent unit
with its own transaction and its own outcome; one failing unit never aborts
the rest of the batch, and handle() never raises.
"""

import structlog
import sentry_sdk
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from database import upsert_insert
from exceptions import InboxError
from logger_config import phone_suffix
from models import Message, MessageDirection, MessageStatus, utcnow
from schemas import EntryOutcome, InboundMessage, ProcessingResult, StatusEvent
from services.identity_service import IdentityService
from services.status_service import StatusReconciler
from services.tenant_resolver import TenantResolver

logger = structlog.get_logger("inbound")

WEBHOOK_ENTRIES = Counter(
    "whatsapp_webhook_entries_total", "Webhook units processed", ["kind", "outcome"]
)


# =============================================================================
# PARSING
# =============================================================================

def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Unix seconds (string or int) -> naive UTC datetime."""
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def extract_text(msg: Dict[str, Any]) -> Optional[str]:
    """Human-readable body for text, button and interactive replies."""
    msg_type = msg.get("type")
    if msg_type == "text":
        body = _as_dict(msg.get("text")).get("body")
        return str(body) if body is not None else None
    if msg_type == "button":
        body = _as_dict(msg.get("button")).get("text")
        return str(body) if body is not None else None
    if msg_type == "interactive":
        interactive = _as_dict(msg.get("interactive"))
        reply = _as_dict(interactive.get("button_reply")) or _as_dict(interactive.get("list_reply"))
        title = reply.get("title")
        return str(title) if title is not None else None
    return None


def parse_webhook(payload: Any) -> Tuple[List[InboundMessage], List[StatusEvent], int]:
    """
    Flatten entry[].changes[].value into messages and statuses.

    Returns (messages, statuses, skipped) where skipped counts units that
    lack their identifying fields (from / id / status).
    """
    messages: List[InboundMessage] = []
    statuses: List[StatusEvent] = []
    skipped = 0

    for entry in _as_list(_as_dict(payload).get("entry")):
        for change in _as_list(_as_dict(entry).get("changes")):
            value = _as_dict(_as_dict(change).get("value"))
            phone_number_id = _as_dict(value.get("metadata")).get("phone_number_id")
            phone_number_id = str(phone_number_id) if phone_number_id else None

            for raw in _as_list(value.get("messages")):
                msg = _as_dict(raw)
                sender = str(msg.get("from") or "")
                wa_id = str(msg.get("id") or "")
                if not sender or not wa_id:
                    skipped += 1
                    continue
                messages.append(InboundMessage(
                    phone_number_id=phone_number_id,
                    from_phone=sender,
                    wa_message_id=wa_id,
                    type=str(msg.get("type") or "unknown"),
                    text_body=extract_text(msg),
                    timestamp=parse_timestamp(msg.get("timestamp")) or utcnow(),
                    raw=msg,
                ))

            for raw in _as_list(value.get("statuses")):
                st = _as_dict(raw)
                wa_id = str(st.get("id") or "")
                status = str(st.get("status") or "")
                if not wa_id or not status:
                    skipped += 1
                    continue
                statuses.append(StatusEvent(
                    phone_number_id=phone_number_id,
                    wa_message_id=wa_id,
                    status=status,
                    timestamp=parse_timestamp(st.get("timestamp")),
                    raw=st,
                ))

    return messages, statuses, skipped


# =============================================================================
# PROCESSING
# =============================================================================

class InboundEventProcessor:
    """Applies one webhook delivery. Never raises to the transport."""

    def __init__(self, db: AsyncSession, settings: Settings):
        self.db = db
        self.resolver = TenantResolver(db, settings)
        self.identity = IdentityService(db, settings)
        self.statuses = StatusReconciler(db, settings)

    async def handle(self, payload: Any) -> ProcessingResult:
        result = ProcessingResult()

        try:
            messages, statuses, skipped = parse_webhook(payload)
        except Exception as e:
            logger.error("Webhook payload could not be parsed", error=str(e))
            result.add(EntryOutcome(kind="payload", outcome="failed", error=str(e)))
            return result

        for _ in range(skipped):
            result.add(EntryOutcome(kind="entry", outcome="skipped"))

        for msg in messages:
            result.add(await self._isolate("message", msg.wa_message_id, lambda m=msg: self._apply_message(m)))

        for st in statuses:
            result.add(await self._isolate("status", st.wa_message_id, lambda s=st: self._apply_status(s)))

        for e in result.entries:
            WEBHOOK_ENTRIES.labels(kind=e.kind, outcome=e.outcome).inc()

        if result.entries:
            logger.info("Webhook processed", **result.summary())
        return result

    async def _isolate(
        self,
        kind: str,
        key: str,
        unit: Callable[[], Awaitable[EntryOutcome]],
    ) -> EntryOutcome:
        """Run one unit; any exception becomes a failed outcome."""
        try:
            return await unit()
        except Exception as e:
            await self.db.rollback()
            code = e.code if isinstance(e, InboxError) else type(e).__name__
            logger.error("Webhook unit failed", kind=kind, key=key, error=str(e), code=code)
            if not isinstance(e, InboxError):
                sentry_sdk.capture_exception(e)
            return EntryOutcome(kind=kind, key=key, outcome="failed", error=code)

    async def _apply_message(self, msg: InboundMessage) -> EntryOutcome:
        tenant_id = await self.resolver.resolve(msg.phone_number_id)
        log = logger.bind(tenant_id=tenant_id, wa_message_id=msg.wa_message_id,
                          sender=phone_suffix(msg.from_phone))

        contact_id = await self.identity.ensure_contact(tenant_id, msg.from_phone, msg.timestamp)
        conversation_id = await self.identity.ensure_conversation(tenant_id, contact_id, msg.timestamp)

        stmt = upsert_insert(self.db, Message).values(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            direction=MessageDirection.IN.value,
            type=msg.type,
            text_body=msg.text_body,
            status=MessageStatus.DELIVERED.value,
            wa_message_id=msg.wa_message_id,
            created_at=msg.timestamp,
            payload=msg.raw,
        ).on_conflict_do_nothing(
            index_elements=[Message.tenant_id, Message.wa_message_id],
            index_where=Message.wa_message_id.isnot(None),
        ).returning(Message.id)

        message_id = (await self.db.execute(stmt)).scalar_one_or_none()

        if message_id is None:
            # Redelivery: undo this unit's counter increment and timestamps
            await self.db.rollback()
            log.info("Duplicate inbound message ignored")
            return EntryOutcome(kind="message", key=msg.wa_message_id, outcome="duplicate", tenant_id=tenant_id)

        await self.db.commit()
        log.info("Inbound message stored", message_id=message_id, conversation_id=conversation_id, type=msg.type)
        return EntryOutcome(kind="message", key=msg.wa_message_id, outcome="stored", tenant_id=tenant_id)

    async def _apply_status(self, st: StatusEvent) -> EntryOutcome:
        tenant_id = await self.resolver.resolve(st.phone_number_id)
        outcome = await self.statuses.apply_status(tenant_id, st.wa_message_id, st.status)
        await self.db.commit()
        return EntryOutcome(kind="status", key=st.wa_message_id, outcome=outcome, tenant_id=tenant_id)
