"""
Pydantic schemas: normalized webhook events, API bodies and results.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID
from pydantic import BaseModel, Field


# =============================================================================
# WEBHOOK (provider -> system)
# =============================================================================

class InboundMessage(BaseModel):
    """One entry of value.messages[] after normalization."""
    phone_number_id: Optional[str] = None
    from_phone: str
    wa_message_id: str
    type: str = "text"
    text_body: Optional[str] = None
    timestamp: datetime
    raw: Dict[str, Any] = Field(default_factory=dict)


class StatusEvent(BaseModel):
    """One entry of value.statuses[]."""
    phone_number_id: Optional[str] = None
    wa_message_id: str
    status: str
    timestamp: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class EntryOutcome(BaseModel):
    kind: str  # "message" | "status"
    key: Optional[str] = None
    outcome: str  # stored|duplicate|skipped|updated|unknown|stale|failed
    tenant_id: Optional[str] = None
    error: Optional[str] = None


class ProcessingResult(BaseModel):
    """Per-entry outcomes of one webhook delivery."""
    entries: List[EntryOutcome] = Field(default_factory=list)

    def add(self, outcome: EntryOutcome) -> None:
        self.entries.append(outcome)

    def count(self, outcome: str) -> int:
        return sum(1 for e in self.entries if e.outcome == outcome)

    def summary(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for e in self.entries:
            totals[e.outcome] = totals.get(e.outcome, 0) + 1
        return totals


# =============================================================================
# AUTH
# =============================================================================

class AuthContext(BaseModel):
    """Resolved caller identity; tenant_id scopes every query."""
    actor_id: str
    tenant_id: str
    role: str


# =============================================================================
# OUTBOUND API (client -> system)
# =============================================================================

class SendTextRequest(BaseModel):
    conversation_id: UUID
    text: str = Field(min_length=1, max_length=4000)


class SendTemplateRequest(BaseModel):
    conversation_id: UUID
    template_name: str = Field(min_length=1)
    language: str = Field(default="es_AR", min_length=2)
    body_vars: List[str] = Field(default_factory=list)


class SendFlowRequest(BaseModel):
    conversation_id: UUID
    flow_id: str = Field(min_length=1)
    cta_text: str = Field(default="Completar", min_length=1)
    body_text: str = Field(default="Continuemos por aquí", min_length=1)


class SendResult(BaseModel):
    ok: bool = True
    message_id: str
    status: str
    wa_message_id: Optional[str] = None
    created_at: datetime


class StartConversationRequest(BaseModel):
    phone: str = Field(min_length=1, max_length=32)
    name: Optional[str] = Field(default=None, max_length=200)


class ConversationRef(BaseModel):
    ok: bool = True
    conversation_id: str
    contact_id: str
    phone_e164: str
