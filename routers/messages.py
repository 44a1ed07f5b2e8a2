from fastapi import APIRouter, Depends, Request
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import get_db
from schemas import AuthContext, SendFlowRequest, SendResult, SendTemplateRequest, SendTextRequest
from security import get_auth_context
from services.outbound import OutboundSendCoordinator
from services.whatsapp_client import WhatsAppClient

settings = get_settings()

router = APIRouter(
    prefix="/v1/messages",
    tags=["messages"],
    dependencies=[Depends(RateLimiter(times=settings.SEND_RATE_LIMIT_PER_MINUTE, minutes=1))],
)


# Dependency Injection
def get_whatsapp_client(request: Request) -> WhatsAppClient:
    return request.app.state.whatsapp


def get_coordinator(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    client: WhatsAppClient = Depends(get_whatsapp_client),
) -> OutboundSendCoordinator:
    return OutboundSendCoordinator(db, settings, client)


@router.post("/send_text", response_model=SendResult)
async def send_text(
    body: SendTextRequest,
    ctx: AuthContext = Depends(get_auth_context),
    coordinator: OutboundSendCoordinator = Depends(get_coordinator),
):
    return await coordinator.send_text(ctx, str(body.conversation_id), body.text)


@router.post("/send_template", response_model=SendResult)
async def send_template(
    body: SendTemplateRequest,
    ctx: AuthContext = Depends(get_auth_context),
    coordinator: OutboundSendCoordinator = Depends(get_coordinator),
):
    return await coordinator.send_template(
        ctx, str(body.conversation_id), body.template_name, body.language, body.body_vars
    )


@router.post("/send_flow", response_model=SendResult)
async def send_flow(
    body: SendFlowRequest,
    ctx: AuthContext = Depends(get_auth_context),
    coordinator: OutboundSendCoordinator = Depends(get_coordinator),
):
    return await coordinator.send_flow(
        ctx, str(body.conversation_id), body.flow_id, body.cta_text, body.body_text
    )
