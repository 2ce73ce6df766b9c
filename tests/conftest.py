import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import pytest

from app.config import settings
from app.db.pool import db_pool
from app.features.availability.domain.models import (
    ALLOWED_PREDECESSORS,
    Activity,
    AvailabilityResponse,
    Event,
    Member,
    Prompt,
    PromptContext,
    Suggestion,
)
from app.features.availability.pipeline.aggregation.repository import (
    SubmittedResponseRow,
    SuggestionAggregationRepository,
)
from app.features.availability.repository.event_repository import EventRepository
from app.features.availability.repository.member_repository import MemberRepository
from app.features.availability.repository.prompt_repository import PromptRepository
from app.features.availability.repository.response_repository import ResponseRepository
from app.features.availability.repository.suggestion_repository import SuggestionRepository


class FakeConnection:
    """Stands in for a psycopg connection inside a faked transaction."""

    def __init__(self):
        self.held_locks: list[asyncio.Lock] = []


@pytest.fixture
def fake_transaction(monkeypatch):
    """Replace db_pool.transaction(); row locks taken on the connection are released on exit."""
    connections: list[FakeConnection] = []

    @asynccontextmanager
    async def _transaction():
        conn = FakeConnection()
        connections.append(conn)
        try:
            yield conn
        finally:
            for lock in reversed(conn.held_locks):
                lock.release()

    monkeypatch.setattr(db_pool, "transaction", _transaction)
    return connections


class FakeJobQueue:
    """arq-like queue: insert-or-no-op by job id, cancel by id."""

    def __init__(self):
        self.jobs: dict[str, dict] = {}
        self.cancelled: list[str] = []

    async def enqueue_deferred(self, function, *args, job_id, delay_ms, **kwargs):
        if job_id in self.jobs:
            return False
        self.jobs[job_id] = {"function": function, "args": args, "delay_ms": delay_ms}
        return True

    async def cancel(self, job_id):
        self.cancelled.append(job_id)
        return self.jobs.pop(job_id, None) is not None


@pytest.fixture
def fake_job_queue():
    return FakeJobQueue()


class FakeTokenTable:
    """magic_tokens rows behind the magic token service's query helpers."""

    secret = "test-magic-token-secret-with-enough-length-for-hs256"

    def __init__(self):
        self.rows: dict[str, dict] = {}

    async def execute_query(self, query, params=(), *, connection=None):
        if "INSERT INTO magic_tokens" in query:
            token_id, user_id, prompt_id, expires_at = params
            self.rows[token_id] = {
                "token_id": token_id,
                "user_id": user_id,
                "prompt_id": prompt_id,
                "expires_at": expires_at,
                "status": "active",
                "usage_count": 0,
            }
            return 1
        if "usage_count = usage_count + 1" in query:
            self.rows[params[0]]["usage_count"] += 1
            return 1
        if "SET status = %s, revoked_at = NOW()" in query:
            status, token_id, expected = params
            row = self.rows.get(token_id)
            if row is None or row["status"] != expected:
                return 0
            row["status"] = status
            return 1
        raise AssertionError(f"unexpected query: {query}")

    async def fetch_one(self, query, params=(), *, connection=None):
        return self.rows.get(params[0])


@pytest.fixture
def token_table(monkeypatch):
    table = FakeTokenTable()
    monkeypatch.setattr(settings, "MAGIC_TOKEN_SECRET", table.secret)
    monkeypatch.setattr("app.services.magic_token_service.execute_query", table.execute_query)
    monkeypatch.setattr("app.services.magic_token_service.fetch_one", table.fetch_one)
    return table


class AvailabilityStore:
    """In-memory stand-in for the availability tables, wired in via monkeypatch."""

    def __init__(self):
        self.prompts: dict[str, Prompt] = {}
        self.group_names: dict[str, str] = {}
        self.activities: dict[str, Activity] = {}
        self.group_members: dict[str, list[Member]] = {}
        self.responses: dict[tuple[str, str], AvailabilityResponse] = {}
        self.suggestions: dict[str, Suggestion] = {}
        self.events: dict[str, Event] = {}
        self.event_participants: dict[str, set[str]] = {}
        self.row_locks: dict[str, asyncio.Lock] = {}
        self.prompt_locks: dict[str, asyncio.Lock] = {}
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    # -- seeding ---------------------------------------------------------

    def add_group(self, group_id: str, name: str, members: list[Member]) -> None:
        self.group_names[group_id] = name
        self.group_members[group_id] = members

    def add_prompt(self, prompt: Prompt) -> Prompt:
        self.prompts[prompt.id] = prompt
        return prompt

    # -- prompts ---------------------------------------------------------

    async def get_prompt(self, prompt_id, *, connection=None):
        return self.prompts.get(prompt_id)

    async def transition_status(self, prompt_id, target, *, connection=None):
        prompt = self.prompts.get(prompt_id)
        if prompt is None or prompt.status not in ALLOWED_PREDECESSORS[target]:
            return False
        prompt.status = target
        return True

    async def get_prompt_context(self, prompt_id):
        prompt = self.prompts.get(prompt_id)
        if prompt is None:
            return None
        return PromptContext(
            prompt=prompt,
            group_name=self.group_names.get(prompt.group_id, ""),
            activity=self.activities.get(prompt.activity_id) if prompt.activity_id else None,
        )

    # -- responses -------------------------------------------------------

    async def upsert_response(self, prompt_id, user_id, time_slots, user_timezone, is_unavailable, token_id):
        key = (prompt_id, user_id)
        existing = self.responses.get(key)
        updated = bool(existing and existing.submitted)
        response = AvailabilityResponse(
            id=existing.id if existing else self._next_id("response"),
            prompt_id=prompt_id,
            user_id=user_id,
            time_slots=list(time_slots),
            user_timezone=user_timezone,
            is_unavailable=is_unavailable,
            submitted_at=datetime.now(UTC),
            magic_token_used=token_id,
            last_reminded_at=existing.last_reminded_at if existing else None,
            reminder_count=existing.reminder_count if existing else 0,
        )
        self.responses[key] = response
        return response.id, updated

    async def get_response(self, prompt_id, user_id):
        return self.responses.get((prompt_id, user_id))

    async def list_responses(self, prompt_id):
        return {uid: r for (pid, uid), r in self.responses.items() if pid == prompt_id}

    async def record_reminder(self, prompt_id, user_id):
        key = (prompt_id, user_id)
        existing = self.responses.get(key)
        if existing is None:
            existing = AvailabilityResponse(
                id=self._next_id("response"),
                prompt_id=prompt_id,
                user_id=user_id,
                time_slots=[],
                user_timezone="UTC",
            )
            self.responses[key] = existing
        existing.reminder_count += 1
        existing.last_reminded_at = datetime.now(UTC)

    # -- aggregation -----------------------------------------------------

    async def lock_prompt_suggestions(self, prompt_id, *, connection):
        # Advisory lock: held until the fake transaction exits
        lock = self.prompt_locks.setdefault(prompt_id, asyncio.Lock())
        await lock.acquire()
        connection.held_locks.append(lock)

    async def lock_existing_suggestions(self, prompt_id, *, connection):
        # SELECT ... FOR UPDATE: wait on each row, skip rows deleted meanwhile
        for suggestion_id in sorted(sid for sid, s in self.suggestions.items() if s.prompt_id == prompt_id):
            lock = self.row_locks.setdefault(suggestion_id, asyncio.Lock())
            await lock.acquire()
            connection.held_locks.append(lock)
        return [
            s.converted_to_event_id
            for s in self.suggestions.values()
            if s.prompt_id == prompt_id and s.converted_to_event_id
        ]

    async def fetch_min_participants(self, prompt_id, *, connection):
        prompt = self.prompts.get(prompt_id)
        activity = self.activities.get(prompt.activity_id) if prompt and prompt.activity_id else None
        return activity.min_players if activity else None

    async def fetch_submitted_responses(self, prompt_id, *, connection):
        rows = [
            SubmittedResponseRow(r.user_id, list(r.time_slots), r.is_unavailable)
            for (pid, _), r in self.responses.items()
            if pid == prompt_id and r.submitted
        ]
        return sorted(rows, key=lambda row: row.user_id)

    async def fetch_existing_holds(self, prompt_id, *, connection):
        return {
            s.key: dict(s.tentative_holds)
            for s in self.suggestions.values()
            if s.prompt_id == prompt_id and s.tentative_holds
        }

    async def replace_suggestions(self, prompt_id, suggestions, *, connection):
        for suggestion_id in [
            sid
            for sid, s in self.suggestions.items()
            if s.prompt_id == prompt_id and s.converted_to_event_id is None
        ]:
            del self.suggestions[suggestion_id]
        count = 0
        for suggestion in suggestions:
            suggestion.id = self._next_id("suggestion")
            self.suggestions[suggestion.id] = suggestion
            count += 1
        return count

    # -- suggestions -----------------------------------------------------

    async def list_suggestions(
        self,
        prompt_id,
        *,
        min_participants=None,
        meets_minimum=None,
        order_by="score",
        order_direction="desc",
        unconverted_only=False,
        limit=None,
    ):
        rows = [s for s in self.suggestions.values() if s.prompt_id == prompt_id]
        if min_participants is not None:
            rows = [s for s in rows if s.participant_count >= min_participants]
        if meets_minimum is not None:
            rows = [s for s in rows if s.meets_minimum == meets_minimum]
        if unconverted_only:
            rows = [s for s in rows if s.converted_to_event_id is None]
        rows.sort(key=lambda s: (-s.score, s.start, s.end))
        return rows[:limit] if limit is not None else rows

    async def get_suggestion(self, suggestion_id):
        return self.suggestions.get(suggestion_id)

    async def lock_for_conversion(self, suggestion_id, *, connection):
        lock = self.row_locks.setdefault(suggestion_id, asyncio.Lock())
        await lock.acquire()
        connection.held_locks.append(lock)
        return self.suggestions.get(suggestion_id)

    async def mark_converted(self, suggestion_id, event_id, *, connection):
        suggestion = self.suggestions[suggestion_id]
        if suggestion.converted_to_event_id is not None:
            return False
        suggestion.converted_to_event_id = event_id
        return True

    async def list_with_holds(self, prompt_id, *, exclude_id=None):
        return [
            s
            for s in self.suggestions.values()
            if s.prompt_id == prompt_id and s.tentative_holds and s.id != exclude_id
        ]

    async def set_tentative_holds(self, suggestion_id, holds):
        # UPDATE ... WHERE id = %s touches nothing once a recompute replaced the row
        suggestion = self.suggestions.get(suggestion_id)
        if suggestion is None:
            return 0
        suggestion.tentative_holds = holds or None
        return 1

    async def merge_tentative_holds(self, prompt_id, start, end, holds, *, connection):
        for suggestion in self.suggestions.values():
            if suggestion.prompt_id == prompt_id and suggestion.key == (start, end):
                suggestion.tentative_holds = {**(suggestion.tentative_holds or {}), **holds}
                return True
        return False

    # -- members / events ------------------------------------------------

    async def get_group_members(self, group_id):
        return list(self.group_members.get(group_id, []))

    async def get_group_member(self, group_id, user_id):
        return next((m for m in self.group_members.get(group_id, []) if m.user_id == user_id), None)

    async def get_members_by_user_ids(self, user_ids, *, connection=None):
        found = {}
        for members in self.group_members.values():
            for member in members:
                if member.user_id in user_ids:
                    found[member.user_id] = member
        return list(found.values())

    async def update_calendar_access_token(self, member_id, access_token):
        return None

    async def create_event(self, *, group_id, activity_id, start_date, duration_minutes, comments, status="scheduled", connection):
        # Yield so concurrent conversions interleave here.
        await asyncio.sleep(0)
        event = Event(
            id=self._next_id("event"),
            group_id=group_id,
            activity_id=activity_id,
            start_date=start_date,
            duration_minutes=duration_minutes,
            status=status,
        )
        self.events[event.id] = event
        return event

    async def add_participants(self, event_id, member_ids, *, connection):
        self.event_participants.setdefault(event_id, set()).update(member_ids)

    # -- wiring ----------------------------------------------------------

    def install(self, monkeypatch) -> None:
        for name in ("get_prompt", "transition_status", "get_prompt_context"):
            monkeypatch.setattr(PromptRepository, name, getattr(self, name))
        for name in ("upsert_response", "get_response", "list_responses", "record_reminder"):
            monkeypatch.setattr(ResponseRepository, name, getattr(self, name))
        for name in (
            "lock_prompt_suggestions",
            "lock_existing_suggestions",
            "fetch_min_participants",
            "fetch_submitted_responses",
            "fetch_existing_holds",
            "replace_suggestions",
        ):
            monkeypatch.setattr(SuggestionAggregationRepository, name, getattr(self, name))
        for name in (
            "list_suggestions",
            "get_suggestion",
            "lock_for_conversion",
            "mark_converted",
            "list_with_holds",
            "set_tentative_holds",
            "merge_tentative_holds",
        ):
            monkeypatch.setattr(SuggestionRepository, name, getattr(self, name))
        for name in (
            "get_group_members",
            "get_group_member",
            "get_members_by_user_ids",
            "update_calendar_access_token",
        ):
            monkeypatch.setattr(MemberRepository, name, getattr(self, name))
        for name in ("create_event", "add_participants"):
            monkeypatch.setattr(EventRepository, name, getattr(self, name))


@pytest.fixture
def availability_store(monkeypatch, fake_transaction):
    store = AvailabilityStore()
    store.install(monkeypatch)
    return store


def make_member(user_id: str, **overrides) -> Member:
    data = {
        "id": f"internal-{user_id}",
        "user_id": user_id,
        "username": user_id.title(),
        "email": f"{user_id}@example.com",
    }
    data.update(overrides)
    return Member(**data)


@pytest.fixture
def member_factory():
    return make_member
