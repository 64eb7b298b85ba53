"""
Schedule calculator: turns a court event plus the active reminder templates
into reminder instances.

`reconcile` is safe to call on every event mutation. It never talks to the
messaging provider and never creates a second instance for the same
(event, template) pair.
"""

from __future__ import annotations

import logging
import string
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence
from zoneinfo import ZoneInfo

from app.errors import ValidationError
from app.types.reminder_contract import (
    PENDING, CourtEventIn, ReconcileResult, TemplateSpec,
)
from config import settings
import db

_LOGGER = logging.getLogger(__name__)

_FORMATTER = string.Formatter()


def compute_scheduled_for(event_at: datetime, offset_days: int) -> datetime:
    return event_at - timedelta(days=offset_days)


def _placeholder_values(event: CourtEventIn) -> dict[str, str | None]:
    tz = ZoneInfo(event.timezone or settings.DEFAULT_TIMEZONE)
    local = event.event_at.astimezone(tz)
    court_time = local.strftime("%I:%M %p").lstrip("0")
    return {
        "client_name": event.recipient_name,
        "court_date": f"{local.strftime('%A, %B')} {local.day}, {local.year}",
        "court_time": court_time,
        "time": court_time,
        "court_location": event.location,
        "case_number": event.case_number,
        "phone_number": settings.OFFICE_PHONE_NUMBER,
    }


def render_message(pattern: str, event: CourtEventIn) -> str:
    """Substitute ``{placeholder}`` fields in *pattern*.

    Unknown placeholders and placeholders without a value raise
    `ValidationError`; ``{{`` / ``}}`` are literal braces.
    """
    values = _placeholder_values(event)
    try:
        fields = [f for _, f, _, _ in _FORMATTER.parse(pattern) if f is not None]
    except ValueError as exc:
        raise ValidationError(f"malformed message pattern: {exc}") from exc

    unknown = sorted({f for f in fields if f not in values})
    if unknown:
        raise ValidationError(f"unknown placeholder(s): {', '.join(unknown)}")
    missing = sorted({f for f in fields if not values[f]})
    if missing:
        raise ValidationError(f"no value for placeholder(s): {', '.join(missing)}")
    try:
        return pattern.format(**values)
    except (ValueError, IndexError, KeyError) as exc:
        raise ValidationError(f"cannot render message pattern: {exc}") from exc


def applicable_templates(event: CourtEventIn, templates: Iterable[TemplateSpec],
                         scope: str | None = None) -> list[TemplateSpec]:
    """Active templates that apply to *event* under the configured scope."""
    scope = scope or settings.TEMPLATE_SCOPE
    active = [t for t in templates if t.active]
    if scope == "all":
        return active
    if scope == "court":
        return [t for t in active if t.court_id is None or t.court_id == event.court_id]
    raise ValueError(f"unknown TEMPLATE_SCOPE '{scope}'")


async def reconcile(event: CourtEventIn, templates: Sequence[TemplateSpec],
                    *, now: datetime | None = None, scope: str | None = None) -> ReconcileResult:
    now = now or datetime.now(tz=timezone.utc)
    if not event.recipient_address:
        raise ValidationError(f"event {event.id} has no recipient address")

    await db.upsert_court_event(event)
    result = ReconcileResult()

    if event.cancelled:
        result.cancelled = await db.cancel_event_instances(event.id, now)
        if result.cancelled:
            _LOGGER.info("Event %s cancelled: %d reminder(s) cancelled", event.id, len(result.cancelled))
        return result

    existing = {inst.template_id: inst for inst in await db.list_instances_for_event(event.id)}
    new_rows = []
    for tpl in applicable_templates(event, templates, scope):
        try:
            body = render_message(tpl.message_pattern, event)
        except ValidationError as exc:
            _LOGGER.warning("Template %s rejected for event %s: %s", tpl.id, event.id, exc)
            result.rejected[tpl.id] = str(exc)
            continue
        scheduled_for = compute_scheduled_for(event.event_at, tpl.offset_days)

        current = existing.get(tpl.id)
        if current is None:
            new_rows.append({
                "event_id": event.id,
                "template_id": tpl.id,
                "recipient_address": event.recipient_address,
                "rendered_body": body,
                "event_at": event.event_at,
                "scheduled_for": scheduled_for,
            })
        elif current.status == PENDING and current.event_at != event.event_at:
            moved = await db.reschedule_pending(
                current.id,
                scheduled_for=scheduled_for,
                rendered_body=body,
                event_at=event.event_at,
                at=now,
            )
            if moved:
                result.rescheduled.append(current.id)

    result.created = await db.insert_instances(new_rows)
    _LOGGER.info(
        "Reconciled event %s: %d created, %d rescheduled, %d rejected",
        event.id, len(result.created), len(result.rescheduled), len(result.rejected),
    )
    return result


async def apply_event_change(event: CourtEventIn) -> ReconcileResult:
    """Event-source entry point: reconcile *event* against the template store."""
    templates = await db.list_active_templates()
    return await reconcile(event, templates)
