from unittest.mock import AsyncMock

import pytest
from arq import Retry

from app.db.helpers import DatabaseError
from app.features.availability.jobs import enforce_prompt_deadline, send_prompt_reminder
from app.features.availability.pipeline.aggregation.service import AggregationError
from app.features.availability.services.deadline_service import DeadlineService
from app.features.availability.services.reminder_service import ReminderService
from app.jobs import worker


def test_worker_registers_scheduler_job_names():
    names = {function.name for function in worker.WorkerSettings.functions}

    assert names == {"enforce_prompt_deadline", "send_prompt_reminder"}
    assert worker.WorkerSettings.on_startup is worker.startup
    assert worker.WorkerSettings.on_shutdown is worker.shutdown


@pytest.mark.asyncio
async def test_deadline_job_runs_service(monkeypatch):
    enforce = AsyncMock(return_value={"prompt_id": "p1", "action": "closed", "reason": "auto_schedule_disabled"})
    monkeypatch.setattr(DeadlineService, "enforce_deadline", enforce)

    result = await enforce_prompt_deadline({"job_id": "deadline-p1", "job_try": 1}, "p1")

    assert result["action"] == "closed"
    enforce.assert_awaited_once_with("p1")


@pytest.mark.asyncio
async def test_deadline_job_reraises(monkeypatch):
    monkeypatch.setattr(DeadlineService, "enforce_deadline", AsyncMock(side_effect=RuntimeError("boom")))

    with pytest.raises(RuntimeError):
        await enforce_prompt_deadline({"job_id": "deadline-p1"}, "p1")


@pytest.mark.asyncio
async def test_reminder_job_runs_service(monkeypatch):
    send = AsyncMock(
        return_value={
            "prompt_id": "p1",
            "reminder_type": "90_percent",
            "reminders_sent": 2,
            "skipped": 0,
            "failed": 0,
        }
    )
    monkeypatch.setattr(ReminderService, "send_prompt_reminder", send)

    result = await send_prompt_reminder({"job_id": "reminder-90-p1"}, "p1", "90_percent")

    assert result["reminders_sent"] == 2
    send.assert_awaited_once_with("p1", "90_percent")


@pytest.mark.asyncio
async def test_deadline_job_retries_transient_failures(monkeypatch):
    monkeypatch.setattr(
        DeadlineService,
        "enforce_deadline",
        AsyncMock(side_effect=DatabaseError("Query failed: server closed the connection", recoverable=True)),
    )

    with pytest.raises(Retry) as exc:
        await enforce_prompt_deadline({"job_id": "deadline-p1", "job_try": 2}, "p1")

    assert exc.value.defer_score == 60_000


@pytest.mark.asyncio
async def test_deadline_job_does_not_retry_permanent_failures(monkeypatch):
    monkeypatch.setattr(
        DeadlineService,
        "enforce_deadline",
        AsyncMock(side_effect=AggregationError("bad data", prompt_id="p1", recoverable=False)),
    )

    with pytest.raises(AggregationError):
        await enforce_prompt_deadline({"job_id": "deadline-p1", "job_try": 1}, "p1")


@pytest.mark.asyncio
async def test_deadline_job_retries_when_the_winner_vanished(monkeypatch):
    monkeypatch.setattr(
        DeadlineService,
        "enforce_deadline",
        AsyncMock(
            return_value={
                "prompt_id": "p1",
                "action": "conversion_failed",
                "suggestion_id": "s1",
                "message": "Suggestion not found",
            }
        ),
    )

    with pytest.raises(Retry) as exc:
        await enforce_prompt_deadline({"job_id": "deadline-p1", "job_try": 1}, "p1")

    assert exc.value.defer_score == 30_000


@pytest.mark.asyncio
async def test_reminder_job_retries_transient_failures(monkeypatch):
    monkeypatch.setattr(
        ReminderService,
        "send_prompt_reminder",
        AsyncMock(side_effect=DatabaseError("Query failed: connection reset", recoverable=True)),
    )

    with pytest.raises(Retry):
        await send_prompt_reminder({"job_id": "reminder-50-p1", "job_try": 1}, "p1", "50_percent")
