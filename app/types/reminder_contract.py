"""Pydantic models and the delivery state machine shared by the scheduler,
workers, webhook handlers and tests.

Nothing in here touches the database or the messaging provider.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ──────────────────────────────
# Status vocabulary
# ──────────────────────────────

PENDING = "pending"
SENDING = "sending"
SENT = "sent"
DELIVERED = "delivered"
UNDELIVERED = "undelivered"
FAILED = "failed"
CANCELLED = "cancelled"

ReminderStatus = Literal["pending", "sending", "sent", "delivered", "undelivered", "failed", "cancelled"]

TERMINAL_STATES = frozenset({DELIVERED, UNDELIVERED, FAILED, CANCELLED})

ALLOWED_TRANSITIONS: Dict[str, frozenset[str]] = {
    PENDING: frozenset({SENDING, CANCELLED}),
    SENDING: frozenset({PENDING, SENT, FAILED, CANCELLED}),
    SENT: frozenset({DELIVERED, UNDELIVERED, FAILED, CANCELLED}),
    DELIVERED: frozenset(),
    UNDELIVERED: frozenset(),
    FAILED: frozenset(),
    CANCELLED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def _validate_tz_name(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    try:
        from zoneinfo import ZoneInfo
        ZoneInfo(v)
    except Exception:
        raise ValueError(f"timezone '{v}' is not a valid Olson timezone string")
    return v


# ──────────────────────────────
# Inputs
# ──────────────────────────────


class CourtEventIn(BaseModel):
    """A court date as published by the event source.

    The engine never edits these; it mirrors them into ``court_events`` so the
    dispatch claim can skip cancelled events.
    """

    id: str
    recipient_address: str
    recipient_name: Optional[str] = None
    event_at: datetime
    location: Optional[str] = None
    case_number: Optional[str] = None
    court_id: Optional[str] = None
    timezone: Optional[str] = None
    cancelled: bool = False

    @field_validator("event_at")
    def _aware(cls, v: datetime):  # noqa: N805
        if v.tzinfo is None or v.utcoffset() is None:
            raise ValueError("event_at must be timezone-aware")
        return v

    @field_validator("recipient_address")
    def _strip_address(cls, v: str):  # noqa: N805
        return v.strip()

    @field_validator("timezone")
    def _validate_tz(cls, v):  # noqa: N805
        return _validate_tz_name(v)


class TemplateSpec(BaseModel):
    """Read-only view of a reminder template."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str = ""
    message_pattern: str
    offset_days: int = Field(ge=0)
    court_id: Optional[str] = None
    active: bool = True


# ──────────────────────────────
# Outputs
# ──────────────────────────────


class ReconcileResult(BaseModel):
    created: List[str] = Field(default_factory=list)
    cancelled: List[str] = Field(default_factory=list)
    rescheduled: List[str] = Field(default_factory=list)
    # template id -> reason the template could not be rendered for this event
    rejected: Dict[str, str] = Field(default_factory=dict)


class DispatchOutcome(BaseModel):
    instance_id: str
    status: ReminderStatus
    provider_message_id: Optional[str] = None
    attempt_count: int
    error: Optional[str] = None
    retry_at: Optional[datetime] = None


class SendReceipt(BaseModel):
    provider_message_id: str
    status: Optional[str] = None
    raw: Optional[dict] = None


class ProviderStatus(BaseModel):
    """Delivery status as reported by the provider, in its own vocabulary."""

    status: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Optional[dict] = None


class ReminderInstanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_id: str
    template_id: str
    recipient_address: str
    rendered_body: str
    scheduled_for: datetime
    status: ReminderStatus
    provider_message_id: Optional[str] = None
    attempt_count: int
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None
    confirmed: bool
    confirmed_at: Optional[datetime] = None


class DeliveryLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    instance_id: str
    status: ReminderStatus
    timestamp: datetime
    error_message: Optional[str] = None
    provider_raw: Optional[dict] = None
