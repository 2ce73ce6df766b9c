from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.db.helpers import DatabaseError
from app.features.availability.domain.models import AvailabilityResponse, Prompt
from app.features.availability.repository.response_repository import ResponseRepository
from app.features.availability.services.reminder_service import ReminderService
from app.services.magic_token_service import IssuedToken, magic_token_service
from app.services.notification_service import NotificationService

NOW = datetime(2026, 6, 1, 12, tzinfo=UTC)


def _response(user_id, *, submitted=False, reminders=0, reminded_at=None):
    return AvailabilityResponse(
        id=f"r-{user_id}",
        prompt_id="p1",
        user_id=user_id,
        time_slots=[],
        user_timezone="UTC",
        submitted_at=NOW - timedelta(hours=1) if submitted else None,
        reminder_count=reminders,
        last_reminded_at=reminded_at,
    )


@pytest.fixture
def tokens(monkeypatch):
    generate = AsyncMock(
        return_value=IssuedToken(token="tok", token_id="tid", expires_at=NOW + timedelta(days=7))
    )
    monkeypatch.setattr(magic_token_service, "generate_token", generate)
    return generate


@pytest.fixture
def send(monkeypatch):
    mock = AsyncMock(return_value={"success": True, "id": "email-1"})
    monkeypatch.setattr(NotificationService, "send", mock)
    return mock


@pytest.fixture
def store(availability_store, member_factory):
    availability_store.add_group(
        "g1",
        "Tuesday Club",
        [
            member_factory("alice"),
            member_factory("bob"),
            member_factory("carol", email_notifications_enabled=False),
            member_factory("dave"),
            member_factory("erin"),
        ],
    )
    availability_store.add_prompt(
        Prompt(id="p1", group_id="g1", deadline=NOW + timedelta(days=1), status="active")
    )
    availability_store.responses[("p1", "alice")] = _response("alice", submitted=True)
    availability_store.responses[("p1", "dave")] = _response("dave", reminders=2)
    availability_store.responses[("p1", "erin")] = _response(
        "erin", reminders=1, reminded_at=NOW - timedelta(hours=2)
    )
    return availability_store


@pytest.mark.asyncio
async def test_only_eligible_members_are_reminded(store, tokens, send):
    service = ReminderService(max_reminders=2, cooldown_hours=12)

    summary = await service.send_prompt_reminder("p1", "50_percent", now=NOW)

    assert summary == {
        "prompt_id": "p1",
        "reminder_type": "50_percent",
        "reminders_sent": 1,
        "skipped": 4,
        "failed": 0,
    }
    tokens.assert_awaited_once()
    assert tokens.await_args.args == ("bob", "p1")
    message = send.await_args.args[0]
    assert message.to == "bob@example.com"
    assert "token=tok" in message.text
    assert message.tags["reminder_type"] == "50_percent"
    assert store.responses[("p1", "bob")].reminder_count == 1


@pytest.mark.asyncio
async def test_cooldown_expires(store, tokens, send):
    service = ReminderService(max_reminders=2, cooldown_hours=1)

    summary = await service.send_prompt_reminder("p1", "90_percent", now=NOW)

    assert summary["reminders_sent"] == 2
    assert store.responses[("p1", "erin")].reminder_count == 2


@pytest.mark.asyncio
async def test_failed_delivery_is_not_recorded(store, tokens, monkeypatch):
    monkeypatch.setattr(
        NotificationService, "send", AsyncMock(return_value={"success": False, "error": "bounced"})
    )

    summary = await ReminderService(max_reminders=2, cooldown_hours=12).send_prompt_reminder(
        "p1", "50_percent", now=NOW
    )

    assert summary["failed"] == 1
    assert summary["reminders_sent"] == 0
    assert ("p1", "bob") not in store.responses


@pytest.mark.asyncio
async def test_inactive_prompt_is_skipped(store, tokens, send):
    store.prompts["p1"].status = "closed"

    summary = await ReminderService().send_prompt_reminder("p1", "50_percent", now=NOW)

    assert summary["reason"] == "prompt_not_active"
    send.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_prompt(store, tokens, send):
    summary = await ReminderService().send_prompt_reminder("missing", "50_percent", now=NOW)

    assert summary["reason"] == "prompt_not_found"
    assert summary["reminders_sent"] == 0


@pytest.mark.asyncio
async def test_one_member_failing_does_not_stop_the_rest(store, send, monkeypatch):
    # erin's cooldown has passed, so bob and erin are both due
    async def generate(user_id, prompt_id, **kwargs):
        if user_id == "bob":
            raise DatabaseError("Query failed: connection reset", operation="execute")
        return IssuedToken(token="tok", token_id="tid", expires_at=NOW + timedelta(days=7))

    monkeypatch.setattr(magic_token_service, "generate_token", generate)

    summary = await ReminderService(max_reminders=2, cooldown_hours=1).send_prompt_reminder(
        "p1", "90_percent", now=NOW
    )

    assert summary["reminders_sent"] == 1
    assert summary["failed"] == 1
    assert [call.args[0].to for call in send.await_args_list] == ["erin@example.com"]
    assert ("p1", "bob") not in store.responses


@pytest.mark.asyncio
async def test_stamp_failure_counts_as_failed(store, tokens, send, monkeypatch):
    monkeypatch.setattr(
        ResponseRepository,
        "record_reminder",
        AsyncMock(side_effect=DatabaseError("deadlock detected", operation="execute")),
    )

    summary = await ReminderService(max_reminders=2, cooldown_hours=1).send_prompt_reminder(
        "p1", "90_percent", now=NOW
    )

    assert summary["failed"] == 2
    assert summary["reminders_sent"] == 0


@pytest.mark.asyncio
async def test_zero_cooldown_is_respected(store, tokens, send):
    service = ReminderService(max_reminders=2, cooldown_hours=0)

    summary = await service.send_prompt_reminder("p1", "90_percent", now=NOW)

    assert service.cooldown == timedelta(0)
    assert summary["reminders_sent"] == 2


def test_zero_reminder_budget_is_respected():
    assert ReminderService(max_reminders=0).max_reminders == 0
