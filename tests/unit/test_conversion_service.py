import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.db.helpers import DatabaseError
from app.features.availability.domain.models import AvailabilityResponse, Prompt, Suggestion, TimeSlot
from app.features.availability.pipeline.aggregation.service import SuggestionAggregationService
from app.features.availability.repository.event_repository import EventRepository
from app.features.availability.services.conversion_service import (
    DEFAULT_EVENT_COMMENT,
    ConversionError,
    SuggestionConversionService,
)
from app.features.availability.services.hold_service import TentativeHoldService
from app.infrastructure.tasks import drain
from app.services.notification_service import NotificationService

START = datetime(2026, 6, 5, 18, tzinfo=UTC)


@pytest.fixture
def side_effects(monkeypatch):
    cleanup = AsyncMock(return_value={"suggestions": 0, "deleted": 0, "failed": 0})
    send_batch = AsyncMock(return_value={"total": 2, "successful": 2, "failed": 0, "results": []})
    monkeypatch.setattr(TentativeHoldService, "cleanup_other_holds", cleanup)
    monkeypatch.setattr(NotificationService, "send_batch", send_batch)
    return cleanup, send_batch


@pytest.fixture
def seeded(availability_store, member_factory):
    availability_store.add_group("g1", "Tuesday Club", [member_factory("alice"), member_factory("bob")])
    availability_store.add_prompt(
        Prompt(id="p1", group_id="g1", deadline=START - timedelta(days=1), status="closed")
    )
    availability_store.suggestions["s1"] = Suggestion(
        id="s1",
        prompt_id="p1",
        start=START,
        end=START + timedelta(hours=2),
        participant_ids=["alice", "bob"],
        preferred_count=1,
        score=2.5,
        meets_minimum=True,
    )
    return availability_store


@pytest.mark.asyncio
async def test_convert_creates_event(seeded, side_effects):
    cleanup, send_batch = side_effects

    result = await SuggestionConversionService().convert_suggestion_to_event("s1", "alice")
    await drain()

    assert result.success is True
    assert result.message == "Event created with 2 participants"
    assert result.event.duration_minutes == 120
    assert result.event.start_date == START
    assert seeded.suggestions["s1"].converted_to_event_id == result.event_id
    assert seeded.event_participants[result.event_id] == {"internal-alice", "internal-bob"}
    assert seeded.prompts["p1"].status == "converted"
    cleanup.assert_awaited_once_with("p1", "s1")
    messages = send_batch.await_args.args[0]
    assert sorted(m.to for m in messages) == ["alice@example.com", "bob@example.com"]


@pytest.mark.asyncio
async def test_second_conversion_reports_existing_event(seeded, side_effects):
    service = SuggestionConversionService()
    first = await service.convert_suggestion_to_event("s1")

    second = await service.convert_suggestion_to_event("s1")
    await drain()

    assert second.success is False
    assert second.already_converted is True
    assert second.event_id == first.event_id
    assert second.to_dict() == {
        "success": False,
        "message": "Suggestion already converted to event",
        "event_id": first.event_id,
        "already_converted": True,
    }
    assert len(seeded.events) == 1


@pytest.mark.asyncio
async def test_concurrent_conversions_create_one_event(seeded, side_effects):
    service = SuggestionConversionService()

    results = await asyncio.gather(
        service.convert_suggestion_to_event("s1", "alice"),
        service.convert_suggestion_to_event("s1", "bob"),
    )
    await drain()

    assert sorted(r.success for r in results) == [False, True]
    assert len({r.event_id for r in results}) == 1
    assert len(seeded.events) == 1


@pytest.mark.asyncio
async def test_unknown_suggestion(seeded, side_effects):
    result = await SuggestionConversionService().convert_suggestion_to_event("nope")

    assert result.success is False
    assert result.not_found is True
    assert result.message == "Suggestion not found"


@pytest.mark.asyncio
async def test_emails_can_be_suppressed(seeded, side_effects):
    cleanup, send_batch = side_effects

    await SuggestionConversionService().convert_suggestion_to_event("s1", send_emails=False)
    await drain()

    cleanup.assert_awaited_once()
    send_batch.assert_not_awaited()


@pytest.mark.asyncio
async def test_comments_fall_back_to_prompt_message(seeded, side_effects, monkeypatch):
    seen = []
    original = EventRepository.create_event

    async def recording_create_event(**kwargs):
        seen.append(kwargs["comments"])
        return await original(**kwargs)

    monkeypatch.setattr(EventRepository, "create_event", recording_create_event)
    seeded.prompts["p1"].custom_message = "Bring snacks"

    await SuggestionConversionService().convert_suggestion_to_event("s1")
    await drain()

    assert seen == ["Bring snacks"]


@pytest.mark.asyncio
async def test_default_comment(seeded, side_effects, monkeypatch):
    seen = []
    original = EventRepository.create_event

    async def recording_create_event(**kwargs):
        seen.append(kwargs["comments"])
        return await original(**kwargs)

    monkeypatch.setattr(EventRepository, "create_event", recording_create_event)

    await SuggestionConversionService().convert_suggestion_to_event("s1")
    await drain()

    assert seen == [DEFAULT_EVENT_COMMENT]


@pytest.mark.asyncio
async def test_database_failure_leaves_suggestion_unconverted(seeded, side_effects, monkeypatch):
    cleanup, _ = side_effects
    monkeypatch.setattr(
        EventRepository,
        "create_event",
        AsyncMock(side_effect=DatabaseError("insert failed", operation="create_event")),
    )

    with pytest.raises(ConversionError) as exc:
        await SuggestionConversionService().convert_suggestion_to_event("s1")

    assert exc.value.suggestion_id == "s1"
    assert seeded.suggestions["s1"].converted_to_event_id is None
    assert seeded.prompts["p1"].status == "closed"
    cleanup.assert_not_awaited()


@pytest.mark.asyncio
async def test_recompute_racing_a_conversion_keeps_the_converted_suggestion(seeded, side_effects):
    seeded.prompts["p1"].status = "active"
    for user_id in ("alice", "bob"):
        seeded.responses[("p1", user_id)] = AvailabilityResponse(
            id=f"r-{user_id}",
            prompt_id="p1",
            user_id=user_id,
            time_slots=[TimeSlot(START, START + timedelta(hours=2), "preferred")],
            user_timezone="UTC",
            submitted_at=START - timedelta(days=2),
        )

    # The conversion takes the row lock first; the recompute still sees an active prompt
    converted, recomputed = await asyncio.gather(
        SuggestionConversionService().convert_suggestion_to_event("s1", "alice"),
        SuggestionAggregationService().aggregate_responses("p1"),
    )
    await drain()

    assert converted.success is True
    assert recomputed.success is False
    assert recomputed.message == "Prompt already converted; suggestions are final"
    assert list(seeded.suggestions) == ["s1"]
    assert seeded.suggestions["s1"].converted_to_event_id == converted.event_id
    assert len(seeded.events) == 1
