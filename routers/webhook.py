import orjson
import structlog
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import get_db
from security import validate_meta_signature, verify_challenge
from services.inbound_processor import InboundEventProcessor

router = APIRouter(prefix="/v1/wa", tags=["webhook"])
logger = structlog.get_logger("webhook")


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    settings: Settings = Depends(get_settings),
):
    """Meta subscription handshake: echo hub.challenge when the token matches."""
    return verify_challenge(hub_mode, hub_verify_token, hub_challenge, settings)


@router.post("/webhook", dependencies=[Depends(validate_meta_signature)])
async def whatsapp_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Event delivery. Always 200 once the signature passed: Meta retries any
    non-2xx indefinitely, so per-entry failures are logged, not returned.
    """
    try:
        payload = orjson.loads(await request.body())
    except orjson.JSONDecodeError as e:
        logger.error("Webhook body is not JSON", error=str(e))
        return {"ok": True, "ignored": True}

    try:
        result = await InboundEventProcessor(db, settings).handle(payload)
    except Exception as e:
        # handle() isolates every unit; this only guards against bugs in it
        logger.error("Webhook processing crashed", error=str(e), exc_info=True)
        return {"ok": True}

    if not result.entries:
        return {"ok": True, "ignored": True}
    return {"ok": True, **result.summary()}
