from uuid import UUID
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import get_db
from schemas import AuthContext, ConversationRef, StartConversationRequest
from security import get_auth_context
from services.identity_service import IdentityService

router = APIRouter(prefix="/v1/conversations", tags=["conversations"])


@router.post("", response_model=ConversationRef)
async def start_conversation(
    body: StartConversationRequest,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Agent starts a chat with a phone number (new or existing contact)."""
    name = body.name.strip() if body.name and body.name.strip() else None
    return await IdentityService(db, settings).start_conversation(ctx.tenant_id, body.phone, name=name)


@router.post("/{conversation_id}/read")
async def mark_read(
    conversation_id: UUID,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Agent opened the conversation: reset unread counter."""
    await IdentityService(db, settings).mark_read(ctx.tenant_id, str(conversation_id))
    return {"ok": True, "conversation_id": str(conversation_id), "unread_count": 0}
