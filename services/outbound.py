"""
Outbound Send Coordinator

Per send:  insert row as `queued` (committed, visible to readers)
           -> call Cloud API
           -> `sent` + wa_message_id + conversation.last_message_at
           or `failed` (last_message_at untouched) and ProviderSendError.

The three steps are separate transactions. A crash between the insert and
the patch leaves the row `queued`; MaintenanceService sweeps those to
`failed` after QUEUED_MESSAGE_TIMEOUT_SECONDS.
"""

import uuid
import structlog
from typing import Any, Callable, Dict, List, Optional

from prometheus_client import Counter
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from exceptions import ChannelNotConfigured, NotFound, ProviderSendError, ValidationError
from logger_config import phone_suffix
from models import (
    Channel, Contact, Conversation, Message, MessageDirection, MessageStatus, utcnow,
)
from schemas import AuthContext, SendResult
from services.identity_service import IdentityService
from services.whatsapp_client import WhatsAppClient, flow_payload, template_payload, text_payload

logger = structlog.get_logger("outbound")

OUTBOUND_SENDS = Counter("whatsapp_outbound_total", "Outbound sends", ["type", "status"])


class OutboundSendCoordinator:

    def __init__(self, db: AsyncSession, settings: Settings, client: WhatsAppClient):
        self.db = db
        self.client = client
        self.max_text_length = settings.MAX_TEXT_LENGTH
        self.channel_override = settings.WHATSAPP_PHONE_NUMBER_ID or None
        self.identity = IdentityService(db, settings)

    # =========================================================================
    # PUBLIC OPERATIONS
    # =========================================================================

    async def send_text(self, ctx: AuthContext, conversation_id: str, text: str) -> SendResult:
        text = (text or "").strip()
        if not text:
            raise ValidationError("text must not be empty")
        if len(text) > self.max_text_length:
            raise ValidationError(f"text longer than {self.max_text_length} characters")

        return await self._send(
            ctx, conversation_id,
            msg_type="text",
            text_body=text,
            local_payload={},
            build=lambda to: text_payload(to, text),
        )

    async def send_template(
        self,
        ctx: AuthContext,
        conversation_id: str,
        template_name: str,
        language: str,
        body_vars: List[str],
    ) -> SendResult:
        if not template_name.strip():
            raise ValidationError("template_name must not be empty")

        return await self._send(
            ctx, conversation_id,
            msg_type="template",
            text_body=f"[TEMPLATE] {template_name}",
            local_payload={"template_name": template_name, "language": language, "body_vars": body_vars},
            build=lambda to: template_payload(to, template_name, language, body_vars),
        )

    async def send_flow(
        self,
        ctx: AuthContext,
        conversation_id: str,
        flow_id: str,
        cta_text: str,
        body_text: str,
    ) -> SendResult:
        if not flow_id.strip():
            raise ValidationError("flow_id must not be empty")

        return await self._send(
            ctx, conversation_id,
            msg_type="flow",
            text_body=f"[FLOW] {flow_id}",
            local_payload={"flow_id": flow_id, "cta_text": cta_text, "body_text": body_text},
            build=lambda to: flow_payload(to, flow_id, cta_text, body_text),
        )

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    async def _send(
        self,
        ctx: AuthContext,
        conversation_id: str,
        msg_type: str,
        text_body: str,
        local_payload: Dict[str, Any],
        build: Callable[[str], Dict[str, Any]],
    ) -> SendResult:
        conversation_id = self._check_uuid(conversation_id)
        to = await self._destination(ctx.tenant_id, conversation_id)
        phone_number_id = await self._channel(ctx.tenant_id)

        log = logger.bind(tenant_id=ctx.tenant_id, conversation_id=conversation_id,
                          type=msg_type, to=phone_suffix(to))

        # 1. queued row, committed before the provider call
        created_at = utcnow()
        message_id = (await self.db.execute(
            insert(Message).values(
                tenant_id=ctx.tenant_id,
                conversation_id=conversation_id,
                direction=MessageDirection.OUT.value,
                type=msg_type,
                text_body=text_body,
                status=MessageStatus.QUEUED.value,
                created_by=ctx.actor_id,
                created_at=created_at,
                payload=local_payload,
            ).returning(Message.id)
        )).scalar_one()
        await self.db.commit()
        log = log.bind(message_id=message_id)

        # 2. provider call
        try:
            wa_message_id = await self.client.send(phone_number_id, build(to))
        except Exception as e:
            err = e if isinstance(e, ProviderSendError) else ProviderSendError(str(e))
            err.extra["message_id"] = message_id
            OUTBOUND_SENDS.labels(type=msg_type, status=MessageStatus.FAILED.value).inc()
            log.warning("Outbound send failed", error=str(err.detail), provider_status=err.provider_status)
            try:
                await self._mark(message_id, MessageStatus.FAILED)
            except Exception as mark_error:
                # row stays queued until the stale sweep fails it
                log.error("Could not mark message failed", error=str(mark_error))
                raise err from mark_error
            if err is e:
                raise
            raise err from e

        # 3. patch result
        status = MessageStatus.SENT.value
        patched = await self._mark(
            message_id, MessageStatus.SENT, wa_message_id=wa_message_id, touch=(ctx.tenant_id, conversation_id)
        )
        if not patched:
            status = await self._late_accept(message_id, wa_message_id)
            log.warning("Provider accepted a message no longer queued", status=status, wa_message_id=wa_message_id)
        OUTBOUND_SENDS.labels(type=msg_type, status=status).inc()
        log.info("Outbound message sent", wa_message_id=wa_message_id, status=status)

        return SendResult(
            message_id=message_id,
            status=status,
            wa_message_id=wa_message_id,
            created_at=created_at,
        )

    async def _mark(
        self,
        message_id: str,
        status: MessageStatus,
        wa_message_id: Optional[str] = None,
        touch: Optional[tuple] = None,
    ) -> bool:
        """Move a queued row to `status`. False when the row had already left `queued`."""
        values: Dict[str, Any] = {"status": status.value}
        if wa_message_id:
            values["wa_message_id"] = wa_message_id

        try:
            result = await self.db.execute(
                update(Message)
                .where(Message.id == message_id, Message.status == MessageStatus.QUEUED.value)
                .values(**values)
            )
            if touch:
                tenant_id, conversation_id = touch
                await self.identity.touch_conversation(tenant_id, conversation_id, utcnow())
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return result.rowcount > 0

    async def _late_accept(self, message_id: str, wa_message_id: str) -> str:
        """Attach the wamid to a row the sweep already settled; returns the row's status."""
        try:
            await self.db.execute(
                update(Message)
                .where(Message.id == message_id, Message.wa_message_id.is_(None))
                .values(wa_message_id=wa_message_id)
            )
            status = (await self.db.execute(
                select(Message.status).where(Message.id == message_id)
            )).scalar_one()
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return status

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    @staticmethod
    def _check_uuid(value: Any) -> str:
        try:
            return str(uuid.UUID(str(value)))
        except ValueError:
            raise ValidationError("conversation_id must be a UUID")

    async def _destination(self, tenant_id: str, conversation_id: str) -> str:
        """Contact phone for a conversation inside the caller's tenant."""
        result = await self.db.execute(
            select(Contact.phone_e164)
            .join(Conversation, Conversation.contact_id == Contact.id)
            .where(Conversation.id == conversation_id, Conversation.tenant_id == tenant_id)
        )
        phone = result.scalar_one_or_none()
        if not phone:
            raise NotFound("conversation")
        return phone

    async def _channel(self, tenant_id: str) -> str:
        if self.channel_override:
            return self.channel_override

        result = await self.db.execute(
            select(Channel.phone_number_id)
            .where(Channel.tenant_id == tenant_id)
            .order_by(Channel.created_at)
            .limit(1)
        )
        phone_number_id = result.scalar_one_or_none()
        if not phone_number_id:
            raise ChannelNotConfigured(f"no WhatsApp channel configured for tenant {tenant_id}")
        return phone_number_id
