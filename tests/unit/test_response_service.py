from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.features.availability.domain.models import Prompt, TimeSlot
from app.features.availability.services.prompt_service import PromptService
from app.features.availability.services.response_service import (
    INVALID_LINK,
    PROMPT_CLOSED,
    PROMPT_NOT_FOUND,
    ResponseService,
    validate_link,
)
from app.infrastructure.tasks import drain
from app.services.magic_token_service import (
    INVALID_TOKEN,
    TOKEN_EXPIRED,
    TokenValidationResult,
    magic_token_service,
)
from app.services.token_analytics_service import TokenAnalyticsService

NOW = datetime(2026, 6, 1, 12, tzinfo=UTC)
SLOT = TimeSlot(NOW + timedelta(days=3), NOW + timedelta(days=3, hours=1), "preferred")


def _valid(user_id="alice", prompt_id="p1", grace_used=False):
    return TokenValidationResult(
        valid=True,
        claims={"jti": f"tid-{user_id}", "sub": user_id, "prompt_id": prompt_id},
        grace_used=grace_used,
    )


@pytest.fixture
def validate(monkeypatch):
    mock = AsyncMock(return_value=_valid())
    monkeypatch.setattr(magic_token_service, "validate_token", mock)
    return mock


@pytest.fixture
def track(monkeypatch):
    mock = MagicMock()
    monkeypatch.setattr(TokenAnalyticsService, "track_validation", mock)
    return mock


@pytest.fixture
def refresh(monkeypatch):
    mock = AsyncMock(return_value={"aggregation": {}, "holds": None})
    monkeypatch.setattr(PromptService, "refresh_suggestions", mock)
    return mock


@pytest.fixture
def store(availability_store):
    availability_store.add_prompt(
        Prompt(id="p1", group_id="g1", deadline=NOW + timedelta(days=1), status="active")
    )
    return availability_store


@pytest.mark.asyncio
async def test_validate_link_records_attempt(validate, track):
    validate.return_value = TokenValidationResult(valid=False, reason=TOKEN_EXPIRED, claims={"jti": "t1"})

    result = await validate_link("token", ip_address="1.2.3.4", user_agent="pytest")

    assert result.valid is False
    track.assert_called_once_with(
        token_id="t1",
        success=False,
        failure_reason=TOKEN_EXPIRED,
        ip_address="1.2.3.4",
        user_agent="pytest",
        grace_used=False,
    )


@pytest.mark.asyncio
async def test_submit_stores_response_and_refreshes(store, validate, track, refresh):
    result = await ResponseService().submit_response(
        magic_token="token", time_slots=[SLOT], user_timezone="Europe/Berlin", now=NOW
    )
    await drain()

    assert result.success is True
    assert result.updated is False
    stored = store.responses[("p1", "alice")]
    assert stored.time_slots == [SLOT]
    assert stored.user_timezone == "Europe/Berlin"
    assert stored.magic_token_used == "tid-alice"
    refresh.assert_awaited_once_with("p1")


@pytest.mark.asyncio
async def test_resubmission_replaces_response(store, validate, track, refresh):
    service = ResponseService()
    await service.submit_response(magic_token="token", time_slots=[SLOT], user_timezone="UTC", now=NOW)

    result = await service.submit_response(
        magic_token="token", time_slots=[], user_timezone="UTC", is_unavailable=True, now=NOW
    )
    await drain()

    assert result.updated is True
    stored = store.responses[("p1", "alice")]
    assert stored.is_unavailable is True
    assert stored.time_slots == []
    assert len(store.responses) == 1


@pytest.mark.asyncio
async def test_unavailable_submission_drops_slots(store, validate, track, refresh):
    await ResponseService().submit_response(
        magic_token="token", time_slots=[SLOT], user_timezone="UTC", is_unavailable=True, now=NOW
    )
    await drain()

    assert store.responses[("p1", "alice")].time_slots == []


@pytest.mark.asyncio
async def test_invalid_link_is_generic(store, validate, track, refresh):
    validate.return_value = TokenValidationResult(valid=False, reason=INVALID_TOKEN)

    result = await ResponseService().submit_response(
        magic_token="bad", time_slots=[SLOT], user_timezone="UTC", now=NOW
    )

    assert result.success is False
    assert result.error == INVALID_LINK
    assert result.message is None
    assert store.responses == {}
    refresh.assert_not_awaited()


@pytest.mark.asyncio
async def test_submission_after_deadline_is_rejected(store, validate, track, refresh):
    result = await ResponseService().submit_response(
        magic_token="token", time_slots=[SLOT], user_timezone="UTC", now=NOW + timedelta(days=2)
    )

    assert result.error == PROMPT_CLOSED
    assert store.responses == {}


@pytest.mark.asyncio
async def test_submission_for_closed_prompt_is_rejected(store, validate, track, refresh):
    store.prompts["p1"].status = "closed"

    result = await ResponseService().submit_response(
        magic_token="token", time_slots=[SLOT], user_timezone="UTC", now=NOW
    )

    assert result.error == PROMPT_CLOSED


@pytest.mark.asyncio
async def test_submission_for_missing_prompt(store, validate, track, refresh):
    validate.return_value = _valid(prompt_id="gone")

    result = await ResponseService().submit_response(
        magic_token="token", time_slots=[SLOT], user_timezone="UTC", now=NOW
    )

    assert result.error == PROMPT_NOT_FOUND


@pytest.mark.asyncio
async def test_get_own_response(store, validate, track, refresh):
    service = ResponseService()
    await service.submit_response(magic_token="token", time_slots=[SLOT], user_timezone="UTC", now=NOW)
    await drain()

    validation, response = await service.get_own_response("p1", "token")

    assert validation.valid is True
    assert response.time_slots == [SLOT]


@pytest.mark.asyncio
async def test_get_own_response_rejects_token_for_other_prompt(store, validate, track):
    validation, response = await ResponseService().get_own_response("p2", "token")

    assert validation.valid is False
    assert validation.reason == INVALID_TOKEN
    assert response is None


@pytest.mark.asyncio
async def test_reminder_placeholder_is_not_a_response(store, validate, track):
    await store.record_reminder("p1", "alice")

    validation, response = await ResponseService().get_own_response("p1", "token")

    assert validation.valid is True
    assert response is None
