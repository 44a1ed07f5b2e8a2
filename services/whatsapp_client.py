"""
WhatsApp Cloud API client

Thin async wrapper over POST /{version}/{phone_number_id}/messages.
Success responses look like {"messages": [{"id": "wamid..."}]}.
Anything else (network error, non-2xx, unparseable body, missing id) is a
ProviderSendError.
"""

import uuid
import httpx
import orjson
import structlog
from typing import Any, Dict, List, Optional

from prometheus_client import Histogram

from config import Settings
from exceptions import ProviderSendError
from logger_config import phone_suffix

logger = structlog.get_logger("whatsapp_client")

SEND_LATENCY = Histogram("whatsapp_send_seconds", "Cloud API send latency")


def text_payload(to_e164: str, text: str) -> Dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "to": to_e164.lstrip("+"),
        "type": "text",
        "text": {"body": text},
    }


def template_payload(to_e164: str, name: str, language: str, body_vars: List[str]) -> Dict[str, Any]:
    template: Dict[str, Any] = {"name": name, "language": {"code": language}}
    if body_vars:
        template["components"] = [{
            "type": "body",
            "parameters": [{"type": "text", "text": v} for v in body_vars],
        }]
    return {
        "messaging_product": "whatsapp",
        "to": to_e164.lstrip("+"),
        "type": "template",
        "template": template,
    }


def flow_payload(to_e164: str, flow_id: str, cta_text: str, body_text: str) -> Dict[str, Any]:
    return {
        "messaging_product": "whatsapp",
        "to": to_e164.lstrip("+"),
        "type": "interactive",
        "interactive": {
            "type": "flow",
            "body": {"text": body_text},
            "action": {
                "name": "flow",
                "parameters": {
                    "flow_id": flow_id,
                    "flow_message_version": "3",
                    "flow_cta": cta_text,
                    "flow_token": str(uuid.uuid4()),
                },
            },
        },
    }


class WhatsAppClient:
    """Cloud API sender. One instance per process, shares a connection pool."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.base_url = settings.graph_messages_base
        self.access_token = settings.WHATSAPP_ACCESS_TOKEN
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.WHATSAPP_HTTP_TIMEOUT, connect=5.0),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100)
        )

    async def send(self, phone_number_id: str, payload: Dict[str, Any]) -> str:
        """Send one message. Returns the provider message id (wamid)."""
        if not self.access_token:
            raise ProviderSendError("WHATSAPP_ACCESS_TOKEN is not configured")

        url = f"{self.base_url}/{phone_number_id}/messages"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        log = logger.bind(to=phone_suffix(payload.get("to", "")), type=payload.get("type"))

        try:
            with SEND_LATENCY.time():
                response = await self.client.post(url, content=orjson.dumps(payload), headers=headers)
        except httpx.HTTPError as e:
            log.error("Cloud API unreachable", error=str(e))
            raise ProviderSendError(f"network error: {e}") from e

        body = self._parse(response)

        if not response.is_success:
            log.warning("Cloud API rejected message", http_status=response.status_code, body=body)
            raise ProviderSendError(
                f"Meta API error {response.status_code}",
                provider_status=response.status_code,
                provider_body=body,
            )

        wa_message_id = self._extract_id(body)
        if not wa_message_id:
            log.error("Cloud API response without message id", body=body)
            raise ProviderSendError(
                "malformed provider response",
                provider_status=response.status_code,
                provider_body=body,
            )

        log.info("Message accepted by Cloud API", wa_message_id=wa_message_id)
        return wa_message_id

    @staticmethod
    def _parse(response: httpx.Response) -> Any:
        try:
            return orjson.loads(response.content) if response.content else None
        except orjson.JSONDecodeError:
            return response.text[:500]

    @staticmethod
    def _extract_id(body: Any) -> Optional[str]:
        if not isinstance(body, dict):
            return None
        messages = body.get("messages")
        if not isinstance(messages, list) or not messages:
            return None
        first = messages[0]
        return str(first["id"]) if isinstance(first, dict) and first.get("id") else None

    async def close(self):
        await self.client.aclose()
