"""
Error taxonomy for the inbox core.

Every error carries the HTTP status it maps to and a machine-readable code.
main.py renders them as {"ok": false, "error": code, "detail": ...}.
"""
from typing import Any, Dict, Optional


class InboxError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, detail: Optional[Any] = None, **extra: Any):
        self.detail = detail
        self.extra: Dict[str, Any] = extra
        super().__init__(str(detail) if detail is not None else self.code)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": False, "error": self.code}
        if self.detail is not None:
            body["detail"] = self.detail
        body.update(self.extra)
        return body


class ValidationError(InboxError):
    status_code = 400
    code = "validation_error"


class Unauthorized(InboxError):
    status_code = 401
    code = "unauthorized"


class InvalidSignature(Unauthorized):
    code = "invalid_signature"


class Forbidden(InboxError):
    status_code = 403
    code = "forbidden"


class NotFound(InboxError):
    """Resource missing inside the caller's tenant.

    Never distinguishes "exists in another tenant" from "does not exist".
    """

    status_code = 404

    def __init__(self, resource: str, detail: Optional[Any] = None, **extra: Any):
        self.code = f"{resource}_not_found"
        super().__init__(detail, **extra)


class TenantResolutionError(InboxError):
    status_code = 500
    code = "missing_tenant_mapping"


class ChannelNotConfigured(InboxError):
    status_code = 500
    code = "missing_phone_number_id"


class ProviderSendError(InboxError):
    """The WhatsApp Cloud API rejected the send or could not be reached.

    Retryable from the client's point of view.
    """

    status_code = 502
    code = "whatsapp_send_failed"

    def __init__(
        self,
        detail: Optional[Any] = None,
        provider_status: Optional[int] = None,
        provider_body: Optional[Any] = None,
        **extra: Any,
    ):
        self.provider_status = provider_status
        self.provider_body = provider_body
        super().__init__(
            detail,
            provider_status=provider_status,
            provider_error=provider_body,
            retryable=True,
            **extra,
        )
