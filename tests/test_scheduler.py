from datetime import datetime, timedelta, timezone

import pytest

import db
from app.errors import ValidationError
from app.services import scheduler
from app.types.reminder_contract import TemplateSpec
from conftest import make_event

UTC = timezone.utc


def test_compute_scheduled_for_subtracts_whole_days():
    event_at = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)
    assert scheduler.compute_scheduled_for(event_at, 2) == datetime(2025, 3, 8, 9, 0, tzinfo=UTC)
    assert scheduler.compute_scheduled_for(event_at, 0) == event_at


def test_render_message_substitutes_placeholders():
    body = scheduler.render_message(
        "Hi {client_name}: {court_date} at {time}, {court_location} (case {case_number}) {{ok}}",
        make_event(),
    )
    assert body == (
        "Hi Jordan Smith: Monday, March 10, 2025 at 9:00 AM, Courtroom 4B (case CR-2025-0042) {ok}"
    )


def test_render_message_uses_event_timezone():
    body = scheduler.render_message("{court_time}", make_event(timezone="America/New_York"))
    assert body == "5:00 AM"


def test_render_message_unknown_placeholder_is_an_error():
    with pytest.raises(ValidationError, match="unknown placeholder"):
        scheduler.render_message("Hello {nickname}", make_event())


def test_render_message_missing_value_is_an_error():
    with pytest.raises(ValidationError, match="court_location"):
        scheduler.render_message("See you at {court_location}", make_event(location=None))


def test_applicable_templates_scopes():
    event = make_event(court_id="court-a")
    templates = [
        TemplateSpec(id="t-all", message_pattern="x", offset_days=1),
        TemplateSpec(id="t-a", message_pattern="x", offset_days=1, court_id="court-a"),
        TemplateSpec(id="t-b", message_pattern="x", offset_days=1, court_id="court-b"),
        TemplateSpec(id="t-off", message_pattern="x", offset_days=1, active=False),
    ]
    assert [t.id for t in scheduler.applicable_templates(event, templates, "all")] == ["t-all", "t-a", "t-b"]
    assert [t.id for t in scheduler.applicable_templates(event, templates, "court")] == ["t-all", "t-a"]
    with pytest.raises(ValueError):
        scheduler.applicable_templates(event, templates, "docket")


@pytest.mark.asyncio
async def test_reconcile_creates_one_pending_instance_per_template(template_id):
    templates = await db.list_active_templates()
    now = datetime(2025, 3, 1, tzinfo=UTC)

    result = await scheduler.reconcile(make_event(), templates, now=now)

    assert len(result.created) == 1
    [instance] = await db.list_instances_for_event("evt-1")
    assert instance.template_id == template_id
    assert instance.status == "pending"
    assert instance.scheduled_for == datetime(2025, 3, 8, 9, 0, tzinfo=UTC)
    assert instance.rendered_body.startswith("Hello Jordan Smith, you have court on Monday, March 10, 2025")
    assert instance.attempt_count == 0
    assert instance.confirmed is False


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(template_id):
    templates = await db.list_active_templates()
    event = make_event()

    first = await scheduler.reconcile(event, templates)
    second = await scheduler.reconcile(event, templates)

    assert len(first.created) == 1
    assert second.created == []
    assert second.rescheduled == []
    assert len(await db.list_instances_for_event(event.id)) == 1


@pytest.mark.asyncio
async def test_reconcile_past_fire_time_is_kept_and_due(template_id):
    templates = await db.list_active_templates()
    now = datetime(2025, 3, 9, 12, 0, tzinfo=UTC)  # after the 2-day mark

    result = await scheduler.reconcile(make_event(), templates, now=now)

    [instance] = await db.list_instances_for_event("evt-1")
    assert result.created == [instance.id]
    assert instance.status == "pending"
    assert instance.scheduled_for <= now


@pytest.mark.asyncio
async def test_reconcile_reschedules_pending_when_event_moves(template_id):
    templates = await db.list_active_templates()
    await scheduler.reconcile(make_event(), templates)

    moved = make_event(event_at=datetime(2025, 3, 20, 14, 30, tzinfo=UTC))
    result = await scheduler.reconcile(moved, templates)

    [instance] = await db.list_instances_for_event("evt-1")
    assert result.rescheduled == [instance.id]
    assert instance.scheduled_for == datetime(2025, 3, 18, 14, 30, tzinfo=UTC)
    assert "Thursday, March 20, 2025" in instance.rendered_body
    assert "2:30 PM" in instance.rendered_body


@pytest.mark.asyncio
async def test_reconcile_leaves_claimed_instance_alone_when_event_moves(template_id):
    templates = await db.list_active_templates()
    await scheduler.reconcile(make_event(), templates)
    claimed = await db.claim_due_instances("w1", datetime(2025, 3, 8, 9, 5, tzinfo=UTC), 10)

    moved = make_event(event_at=datetime(2025, 3, 20, 9, 0, tzinfo=UTC))
    result = await scheduler.reconcile(moved, templates)

    instance = await db.get_instance(claimed[0])
    assert result.rescheduled == []
    assert instance.status == "sending"
    assert instance.scheduled_for == datetime(2025, 3, 8, 9, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_reconcile_keeps_backoff_when_event_unchanged(template_id):
    templates = await db.list_active_templates()
    event = make_event()
    await scheduler.reconcile(event, templates)
    [instance] = await db.list_instances_for_event(event.id)
    retry_at = datetime(2025, 3, 8, 10, 0, tzinfo=UTC)
    await db.claim_due_instances("w1", datetime(2025, 3, 8, 9, 5, tzinfo=UTC), 10)
    await db.settle_claim(instance.id, "w1", "pending", at=datetime(2025, 3, 8, 9, 6, tzinfo=UTC),
                          values={"scheduled_for": retry_at, "attempt_count": 1})

    await scheduler.reconcile(event, templates)

    assert (await db.get_instance(instance.id)).scheduled_for == retry_at


@pytest.mark.asyncio
async def test_cancelled_event_cancels_pending_and_is_not_recreated(template_id):
    templates = await db.list_active_templates()
    await scheduler.reconcile(make_event(), templates)

    result = await scheduler.reconcile(make_event(cancelled=True), templates)
    again = await scheduler.reconcile(make_event(cancelled=True), templates)

    [instance] = await db.list_instances_for_event("evt-1")
    assert result.cancelled == [instance.id]
    assert again.cancelled == []
    assert again.created == []
    assert instance.status == "cancelled"
    logs = await db.list_delivery_logs(instance.id)
    assert [log.status for log in logs] == ["cancelled"]


@pytest.mark.asyncio
async def test_cancelled_event_is_never_scheduled(template_id):
    templates = await db.list_active_templates()
    result = await scheduler.reconcile(make_event(cancelled=True), templates)
    assert result.created == []
    assert await db.list_instances_for_event("evt-1") == []


@pytest.mark.asyncio
async def test_missing_recipient_raises(template_id):
    templates = await db.list_active_templates()
    with pytest.raises(ValidationError):
        await scheduler.reconcile(make_event(recipient_address="  "), templates)
    assert await db.list_instances_for_event("evt-1") == []


@pytest.mark.asyncio
async def test_unrenderable_template_is_rejected_others_still_scheduled(template_id):
    await db.insert_template("Bring {documents}", 1, template_id="tpl-bad")
    templates = await db.list_active_templates()

    result = await scheduler.reconcile(make_event(), templates)

    assert set(result.rejected) == {"tpl-bad"}
    instances = await db.list_instances_for_event("evt-1")
    assert [i.template_id for i in instances] == [template_id]


@pytest.mark.asyncio
async def test_apply_event_change_uses_template_store(template_id):
    await db.insert_template("Tomorrow: {court_date}", 1, template_id="tpl-1d")
    await db.insert_template("Old", 7, template_id="tpl-off", active=False)

    result = await scheduler.apply_event_change(make_event())

    assert len(result.created) == 2
    instances = await db.list_instances_for_event("evt-1")
    assert {i.template_id for i in instances} == {template_id, "tpl-1d"}
    stored = await db.get_court_event("evt-1")
    assert stored.event_at == datetime(2025, 3, 10, 9, 0, tzinfo=UTC)
    assert stored.event_at - timedelta(days=1) == instances[-1].scheduled_for
