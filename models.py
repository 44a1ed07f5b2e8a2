"""
Database Models

Every row below belongs to exactly one tenant. Uniqueness rules are enforced
by the database, not by application code:
- contacts:      (tenant_id, phone_e164)
- conversations: (tenant_id, contact_id)
- messages:      (tenant_id, wa_message_id) where wa_message_id is not null
"""

import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, DateTime, Text, Integer, ForeignKey, Index,
    UniqueConstraint, CheckConstraint, JSON, text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

Payload = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class ConversationStatus(str, enum.Enum):
    OPEN = "open"
    SNOOZED = "snoozed"
    CLOSED = "closed"


class MessageDirection(str, enum.Enum):
    IN = "in"
    OUT = "out"


class MessageStatus(str, enum.Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class MemberRole(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    SELLER = "seller"


class Tenant(Base):
    """Isolation boundary (a dealership). Provisioned out-of-band."""
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Tenant {self.id[:8]} {self.name}>"


class Profile(Base):
    """
    Tenant membership of an authenticated user.

    The id is the identity provider's user id (JWT "sub").
    """
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False, index=True)
    role = Column(String(20), nullable=False, default=MemberRole.SELLER.value)
    full_name = Column(String(200), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Channel(Base):
    """Maps a WhatsApp phone_number_id to exactly one tenant."""
    __tablename__ = "wa_channels"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False, default="cloud")
    phone_number_id = Column(String(64), nullable=False, unique=True)
    waba_id = Column(String(64), nullable=True)
    display_phone = Column(String(50), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Channel {self.phone_number_id} -> {self.tenant_id[:8]}>"


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "phone_e164", name="contacts_tenant_phone_uq"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    phone_e164 = Column(String(32), nullable=False)
    name = Column(String(200), nullable=True)
    last_seen_at = Column(DateTime, nullable=True)
    last_seen_by_agent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Contact ...{self.phone_e164[-4:]}>"


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "contact_id", name="conversations_tenant_contact_uq"),
        CheckConstraint("unread_count >= 0", name="conversations_unread_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(String(36), ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False, default=ConversationStatus.OPEN.value)
    assigned_to = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    last_message_at = Column(DateTime, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("messages_conversation_created_idx", "conversation_id", "created_at"),
        Index(
            "messages_tenant_wa_message_id_uq",
            "tenant_id", "wa_message_id",
            unique=True,
            postgresql_where=text("wa_message_id IS NOT NULL"),
            sqlite_where=text("wa_message_id IS NOT NULL"),
        ),
        Index("messages_status_created_idx", "status", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    direction = Column(String(3), nullable=False)
    type = Column(String(30), nullable=False, default="text")
    text_body = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=MessageStatus.QUEUED.value)
    wa_message_id = Column(String(128), nullable=True)
    created_by = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    payload = Column(Payload, nullable=False, default=dict)

    def __repr__(self):
        return f"<Message {self.id[:8]} {self.direction} {self.status}>"
