from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from app.types.reminder_contract import (
    ALLOWED_TRANSITIONS, TERMINAL_STATES, CourtEventIn, TemplateSpec,
    can_transition, is_terminal,
)


def test_terminal_states_have_no_way_out():
    for status in TERMINAL_STATES:
        assert is_terminal(status)
        assert ALLOWED_TRANSITIONS[status] == frozenset()


@pytest.mark.parametrize("current, target, allowed", [
    ("pending", "sending", True),
    ("pending", "cancelled", True),
    ("pending", "sent", False),
    ("sending", "pending", True),
    ("sending", "sent", True),
    ("sending", "failed", True),
    ("sent", "delivered", True),
    ("sent", "undelivered", True),
    ("sent", "pending", False),
    ("delivered", "undelivered", False),
    ("failed", "pending", False),
    ("cancelled", "pending", False),
    ("bogus", "pending", False),
])
def test_can_transition(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_court_event_requires_aware_datetime():
    with pytest.raises(ValidationError, match="timezone-aware"):
        CourtEventIn(id="e1", recipient_address="+1555", event_at=datetime(2025, 3, 10, 9, 0))


def test_court_event_parses_iso_strings_and_strips_address():
    event = CourtEventIn.model_validate({
        "id": "e1",
        "recipient_address": " +15550001111 ",
        "event_at": "2025-03-10T09:00:00Z",
        "timezone": "America/Chicago",
    })
    assert event.recipient_address == "+15550001111"
    assert event.event_at == datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


def test_court_event_rejects_unknown_timezone():
    with pytest.raises(ValidationError, match="Olson"):
        CourtEventIn(id="e1", recipient_address="+1555",
                     event_at=datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc),
                     timezone="Mars/Olympus_Mons")


def test_template_offset_cannot_be_negative():
    with pytest.raises(ValidationError):
        TemplateSpec(id="t1", message_pattern="x", offset_days=-1)
