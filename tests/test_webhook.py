from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import main

client = TestClient(main.app)


@pytest.fixture
def calls(monkeypatch):
    recorded = {"status": [], "reply": [], "event": []}

    async def fake_status(provider_message_id, provider_status, **kwargs):
        recorded["status"].append((provider_message_id, provider_status, kwargs))
        return "delivered"

    async def fake_reply(from_address, text, received_at=None):
        recorded["reply"].append((from_address, text, received_at))
        return "inst-1"

    async def fake_event_change(event):
        recorded["event"].append(event)

    monkeypatch.setattr(main.settings, "TELNYX_PUBLIC_KEY", None)
    monkeypatch.setattr(main.delivery, "apply_status_callback", fake_status)
    monkeypatch.setattr(main.confirmation, "handle_inbound_reply", fake_reply)
    monkeypatch.setattr(main.scheduler, "apply_event_change", fake_event_change)
    return recorded


def _webhook(event_type, payload, occurred_at="2025-03-08T09:06:00Z"):
    return {"data": {"event_type": event_type, "occurred_at": occurred_at, "payload": payload}}


def test_delivery_report_is_applied(calls):
    body = _webhook("message.finalized", {
        "id": "SM123",
        "to": [{"phone_number": "+15550001111", "status": "delivery_failed"}],
        "errors": [{"code": "40300", "title": "Blocked as spam"}],
    })

    resp = client.post("/v1/sms/telnyx", json=body)

    assert resp.status_code == 200
    assert resp.text == "OK"
    [(message_id, status, kwargs)] = calls["status"]
    assert (message_id, status) == ("SM123", "delivery_failed")
    assert kwargs["error_code"] == "40300"
    assert kwargs["error_text"] == "Blocked as spam"
    assert kwargs["received_at"] == datetime(2025, 3, 8, 9, 6, tzinfo=timezone.utc)


def test_inbound_reply_is_forwarded(calls):
    body = _webhook("message.received", {"from": {"phone_number": "+15550001111"}, "text": "YES"})

    resp = client.post("/v1/sms/telnyx", json=body)

    assert resp.text == "OK"
    assert calls["reply"][0][:2] == ("+15550001111", "YES")


def test_unrelated_webhook_is_ignored(calls):
    resp = client.post("/v1/sms/telnyx", json=_webhook("message.received", {"text": "hi"}))
    assert resp.text == "IGNORED"

    resp = client.post("/v1/sms/telnyx", json=_webhook("call.initiated", {"id": "c1"}))
    assert resp.text == "IGNORED"
    assert calls == {"status": [], "reply": [], "event": []}


def test_unparseable_webhook_is_rejected(calls):
    resp = client.post("/v1/sms/telnyx", content=b"not json", headers={"content-type": "application/json"})
    assert resp.status_code == 400


def test_event_change_is_accepted(calls):
    resp = client.post("/v1/events", json={
        "id": "evt-1",
        "recipient_address": "+15550001111",
        "event_at": "2025-03-10T09:00:00Z",
    })

    assert resp.status_code == 202
    assert resp.json() == {"event_id": "evt-1", "status": "accepted"}
    assert calls["event"][0].id == "evt-1"


def test_event_change_validation(calls):
    naive = client.post("/v1/events", json={
        "id": "evt-1", "recipient_address": "+15550001111", "event_at": "2025-03-10T09:00:00",
    })
    blank = client.post("/v1/events", json={
        "id": "evt-1", "recipient_address": "  ", "event_at": "2025-03-10T09:00:00Z",
    })

    assert naive.status_code == 422
    assert blank.status_code == 422
    assert calls["event"] == []


def test_delivery_history_endpoint(monkeypatch):
    at = datetime(2025, 3, 8, 9, 5, tzinfo=timezone.utc)

    async def fake_get_instance(instance_id):
        return SimpleNamespace(id=instance_id) if instance_id == "inst-1" else None

    async def fake_logs(instance_id):
        return [
            SimpleNamespace(id=1, instance_id=instance_id, status="sending", timestamp=at,
                            error_message=None, provider_raw={"claimed_by": "w1"}),
            SimpleNamespace(id=2, instance_id=instance_id, status="sent", timestamp=at,
                            error_message=None, provider_raw=None),
        ]

    monkeypatch.setattr(main.db, "get_instance", fake_get_instance)
    monkeypatch.setattr(main.db, "list_delivery_logs", fake_logs)

    ok = client.get("/v1/reminders/inst-1/deliveries")
    missing = client.get("/v1/reminders/nope/deliveries")

    assert [row["status"] for row in ok.json()] == ["sending", "sent"]
    assert missing.status_code == 404


def test_stats_endpoint(monkeypatch):
    async def fake_counts():
        return {"pending": 3, "delivered": 7}

    monkeypatch.setattr(main.db, "status_counts", fake_counts)
    assert client.get("/v1/reminders/stats").json() == {"pending": 3, "delivered": 7}
