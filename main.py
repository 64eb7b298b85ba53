import datetime
import logging

import telnyx
from fastapi import FastAPI, Request, HTTPException, status, BackgroundTasks
from fastapi.responses import PlainTextResponse

import db
from app.errors import ValidationError
from app.services import confirmation, delivery, scheduler
from app.types.reminder_contract import (
    CourtEventIn, DeliveryLogOut, ReminderInstanceOut,
)
from config import settings, configure_logging

configure_logging()
_LOGGER = logging.getLogger("main")

# Configure telnyx public key (webhook signature verification)
if settings.TELNYX_PUBLIC_KEY:
    telnyx.public_key = settings.TELNYX_PUBLIC_KEY

app = FastAPI()

STATUS_EVENTS = {"message.sent", "message.finalized"}


@app.on_event("shutdown")
async def shutdown_event():
    await db.dispose_engine()


def _parse_ts(value) -> datetime.datetime:
    if isinstance(value, str) and value:
        try:
            parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None and parsed.tzinfo is not None:
            return parsed
    return datetime.datetime.now(tz=datetime.timezone.utc)


def _as_dict(obj) -> dict:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj or {})


# --------------------------------------------
# Background tasks
# --------------------------------------------

async def process_status_report(payload: dict, occurred_at: datetime.datetime):
    """Apply a Telnyx delivery report to the matching reminder."""
    recipients = payload.get("to") or []
    first = _as_dict(recipients[0]) if recipients else {}
    errors = payload.get("errors") or []
    first_error = _as_dict(errors[0]) if errors else {}
    try:
        await delivery.apply_status_callback(
            payload["id"],
            first.get("status") or "",
            error_code=first_error.get("code"),
            error_text=first_error.get("detail") or first_error.get("title"),
            raw=payload,
            received_at=occurred_at,
        )
    except Exception:
        _LOGGER.exception("Status report for message %s failed", payload.get("id"))


async def process_inbound_reply(from_num: str, text: str, occurred_at: datetime.datetime):
    try:
        await confirmation.handle_inbound_reply(from_num, text, occurred_at)
    except Exception:
        _LOGGER.exception("Inbound reply from %s failed", from_num)


async def process_event_change(event: CourtEventIn):
    try:
        await scheduler.apply_event_change(event)
    except ValidationError as exc:
        _LOGGER.error("Event %s rejected: %s", event.id, exc)
    except Exception:
        _LOGGER.exception("Reconciling event %s failed", event.id)


# --------------------------------------------
# Endpoints
# --------------------------------------------
@app.post("/v1/sms/telnyx", response_class=PlainTextResponse)
async def telnyx_webhook(request: Request, background: BackgroundTasks):
    raw_body = await request.body()
    sig = request.headers.get("telnyx-signature-ed25519")
    ts = request.headers.get("telnyx-timestamp")

    try:
        if settings.TELNYX_PUBLIC_KEY:
            event = telnyx.Webhook.construct_event(raw_body.decode(), sig, ts)
            data = _as_dict(event.data)
        else:  # dev mode: skip signature verification
            data = (await request.json())["data"]
    except Exception:
        raise HTTPException(400, "Bad signature")

    event_type = data.get("event_type")
    payload = _as_dict(data.get("payload"))
    occurred_at = _parse_ts(data.get("occurred_at"))

    if event_type in STATUS_EVENTS and payload.get("id"):
        background.add_task(process_status_report, payload, occurred_at)
        return PlainTextResponse("OK")

    if event_type == "message.received":
        sender = _as_dict(payload.get("from"))
        from_num = sender.get("phone_number")
        if not from_num:
            return PlainTextResponse("IGNORED", status_code=status.HTTP_200_OK)
        background.add_task(process_inbound_reply, from_num, payload.get("text", ""), occurred_at)
        return PlainTextResponse("OK")

    return PlainTextResponse("IGNORED", status_code=status.HTTP_200_OK)


@app.post("/v1/events", status_code=status.HTTP_202_ACCEPTED)
async def event_changed(event: CourtEventIn, background: BackgroundTasks):
    """Event source hook: a court date was created, moved or cancelled."""
    if not event.recipient_address:
        raise HTTPException(422, "recipient_address is required")
    background.add_task(process_event_change, event)
    return {"event_id": event.id, "status": "accepted"}


@app.get("/v1/events/{event_id}/reminders", response_model=list[ReminderInstanceOut])
async def event_reminders(event_id: str):
    return await db.list_instances_for_event(event_id)


@app.get("/v1/reminders/stats")
async def reminder_stats():
    return await db.status_counts()


@app.get("/v1/reminders/{instance_id}/deliveries", response_model=list[DeliveryLogOut])
async def reminder_deliveries(instance_id: str):
    if await db.get_instance(instance_id) is None:
        raise HTTPException(404, "Reminder not found")
    return await db.list_delivery_logs(instance_id)
