"""SMS delivery through Telnyx.

Providers are plain objects handed to the dispatcher and reconciler, so
several credentials can coexist and tests can pass a fake. The calls are
blocking; callers run them in a worker thread with a timeout.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol
from uuid import uuid4

import telnyx
from telnyx.error import TelnyxError

from app.errors import PermanentProviderError, TransientProviderError
from app.types.reminder_contract import ProviderStatus, SendReceipt
from config import settings

_LOGGER = logging.getLogger(__name__)

# Request / recipient / content problems. Anything else (429, 5xx, auth,
# connection errors without a status) may succeed later.
PERMANENT_HTTP_STATUSES = frozenset({400, 404, 410, 422})


class MessagingProvider(Protocol):
    def send(self, to: str, body: str) -> SendReceipt: ...

    def fetch_status(self, provider_message_id: str) -> ProviderStatus: ...


def _as_dict(obj: Any) -> dict:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def classify_telnyx_error(exc: Exception) -> Exception:
    """Translate a Telnyx SDK exception into the engine's provider errors."""
    status = getattr(exc, "http_status", None)
    code = getattr(exc, "code", None)
    message = str(exc) or exc.__class__.__name__
    raw = {"http_status": status, "code": code}
    if status in PERMANENT_HTTP_STATUSES:
        return PermanentProviderError(message, code=code, raw=raw)
    return TransientProviderError(message, code=code, raw=raw)


def _recipient_status(msg: dict) -> str:
    recipients = msg.get("to") or []
    first = _as_dict(recipients[0]) if recipients else {}
    return first.get("status") or msg.get("status") or "unknown"


class TelnyxProvider:
    def __init__(self, api_key: str, from_number: str, messaging_profile_id: str | None = None):
        self.api_key = api_key
        self.from_number = from_number
        self.messaging_profile_id = messaging_profile_id

    def send(self, to: str, body: str) -> SendReceipt:
        params: dict[str, Any] = {"from_": self.from_number, "to": to, "text": body}
        if self.messaging_profile_id:
            params["messaging_profile_id"] = self.messaging_profile_id
        try:
            msg = telnyx.Message.create(api_key=self.api_key, **params)
        except TelnyxError as exc:
            raise classify_telnyx_error(exc) from exc
        data = _as_dict(msg)
        status = _recipient_status(data)
        return SendReceipt(provider_message_id=data["id"], status=status, raw=data)

    def fetch_status(self, provider_message_id: str) -> ProviderStatus:
        try:
            msg = telnyx.Message.retrieve(provider_message_id, api_key=self.api_key)
        except TelnyxError as exc:
            raise classify_telnyx_error(exc) from exc
        data = _as_dict(msg)
        status = _recipient_status(data)
        errors = data.get("errors") or []
        first_error = _as_dict(errors[0]) if errors else {}
        return ProviderStatus(
            status=status,
            error_code=first_error.get("code"),
            error_message=first_error.get("detail") or first_error.get("title"),
            raw=data,
        )


class DevProvider:
    """Used when Telnyx is not configured: logs instead of sending and
    reports every message as delivered."""

    def send(self, to: str, body: str) -> SendReceipt:
        _LOGGER.info("[SMS] DEV mode: would send to %s: %s", to, body)
        return SendReceipt(provider_message_id=f"dev-{uuid4()}", status="queued")

    def fetch_status(self, provider_message_id: str) -> ProviderStatus:
        return ProviderStatus(status="delivered")


def build_provider() -> MessagingProvider:
    if not settings.TELNYX_API_KEY or not settings.TELNYX_FROM_NUMBER:
        return DevProvider()
    return TelnyxProvider(
        settings.TELNYX_API_KEY,
        settings.TELNYX_FROM_NUMBER,
        settings.TELNYX_MESSAGING_PROFILE_ID,
    )
