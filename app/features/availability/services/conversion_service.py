"""
Suggestion to event conversion.

The suggestion row is locked for the whole transaction, so two concurrent
conversions serialise: the first creates the event, the second sees the
stamped ``converted_to_event_id`` and reports it back. Hold cleanup and
confirmation emails run only after commit and can never undo the event.
"""

from dataclasses import dataclass
from typing import Any

from app.db.helpers import DatabaseError
from app.db.pool import db_pool
from app.features.availability.domain.models import Event, Member
from app.features.availability.repository.event_repository import EventRepository
from app.features.availability.repository.member_repository import MemberRepository
from app.features.availability.repository.prompt_repository import PromptRepository
from app.features.availability.repository.suggestion_repository import SuggestionRepository
from app.features.availability.services.hold_service import tentative_hold_service
from app.features.availability.services.messages import build_event_confirmation_email
from app.infrastructure.observability.logging import get_logger
from app.infrastructure.tasks import spawn
from app.services.notification_service import notification_service

logger = get_logger(__name__)

DEFAULT_EVENT_COMMENT = "Created from availability poll"


class ConversionError(Exception):
    """Unexpected failure while converting; the transaction was rolled back."""

    def __init__(self, message: str, suggestion_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.suggestion_id = suggestion_id
        self.recoverable = recoverable


@dataclass(slots=True)
class ConversionResult:
    success: bool
    message: str
    event_id: str | None = None
    event: Event | None = None
    already_converted: bool = False
    not_found: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.event_id:
            data["event_id"] = self.event_id
        if self.event:
            data["event"] = self.event.to_dict()
        if self.already_converted:
            data["already_converted"] = True
        return data


class SuggestionConversionService:
    """Turns one suggestion into one scheduled event, exactly once."""

    async def convert_suggestion_to_event(
        self,
        suggestion_id: str,
        acting_user_id: str | None = None,
        *,
        comments: str | None = None,
        send_emails: bool = True,
    ) -> ConversionResult:
        """
        Convert ``suggestion_id`` into an event.

        Args:
            suggestion_id: Suggestion to convert
            acting_user_id: Dashboard user, or None when the deadline job converts
            comments: Event comments; falls back to the prompt's custom message
            send_emails: Whether participants get a confirmation email

        Returns:
            ConversionResult; "not found" and "already converted" are results, not errors

        Raises:
            ConversionError: On database failure (nothing was committed)
        """
        try:
            async with db_pool.transaction() as conn:
                suggestion = await SuggestionRepository.lock_for_conversion(
                    suggestion_id, connection=conn
                )
                if suggestion is None:
                    return ConversionResult(False, "Suggestion not found", not_found=True)

                if suggestion.converted_to_event_id:
                    logger.info(
                        "Suggestion already converted",
                        suggestion_id=suggestion_id,
                        event_id=suggestion.converted_to_event_id,
                    )
                    return ConversionResult(
                        False,
                        "Suggestion already converted to event",
                        event_id=suggestion.converted_to_event_id,
                        already_converted=True,
                    )

                prompt = await PromptRepository.get_prompt(suggestion.prompt_id, connection=conn)
                if prompt is None:
                    return ConversionResult(False, "Associated prompt not found", not_found=True)

                members = await MemberRepository.get_members_by_user_ids(
                    suggestion.participant_ids, connection=conn
                )
                if not members:
                    logger.warning(
                        "No participant records resolved, creating event without participants",
                        suggestion_id=suggestion_id,
                        participant_ids=suggestion.participant_ids,
                    )

                event = await EventRepository.create_event(
                    group_id=prompt.group_id,
                    activity_id=prompt.activity_id,
                    start_date=suggestion.start,
                    duration_minutes=suggestion.duration_minutes,
                    comments=comments or prompt.custom_message or DEFAULT_EVENT_COMMENT,
                    connection=conn,
                )
                await EventRepository.add_participants(
                    event.id, [m.id for m in members], connection=conn
                )
                event.participant_count = len(members)

                if not await SuggestionRepository.mark_converted(
                    suggestion.id, event.id, connection=conn
                ):
                    raise ConversionError(
                        "Suggestion was converted concurrently despite the row lock",
                        suggestion_id=suggestion_id,
                        recoverable=False,
                    )

                await PromptRepository.transition_status(prompt.id, "converted", connection=conn)

        except DatabaseError as e:
            logger.error("Suggestion conversion failed", suggestion_id=suggestion_id, error=str(e))
            raise ConversionError(
                f"Conversion failed: {e}", suggestion_id=suggestion_id, recoverable=e.recoverable
            ) from e

        logger.info(
            "Suggestion converted to event",
            suggestion_id=suggestion_id,
            prompt_id=prompt.id,
            event_id=event.id,
            participants=len(members),
            acting_user_id=acting_user_id or "scheduler",
        )

        spawn(
            tentative_hold_service.cleanup_other_holds(prompt.id, suggestion.id),
            name="hold-cleanup",
        )
        if send_emails:
            spawn(self._send_confirmations(prompt.id, event, members), name="event-confirmation")

        return ConversionResult(
            True,
            f"Event created with {len(members)} participants",
            event_id=event.id,
            event=event,
        )

    async def _send_confirmations(
        self, prompt_id: str, event: Event, members: list[Member]
    ) -> dict[str, Any]:
        recipients = [m for m in members if m.email and m.email_notifications_enabled]
        if not recipients:
            return {"total": 0, "successful": 0, "failed": 0}

        context = await PromptRepository.get_prompt_context(prompt_id)
        if context is None:
            return {"total": 0, "successful": 0, "failed": 0}

        result = await notification_service.send_batch(
            [build_event_confirmation_email(context, member, event) for member in recipients]
        )
        logger.info(
            "Event confirmations sent",
            event_id=event.id,
            successful=result["successful"],
            failed=result["failed"],
        )
        return result


suggestion_conversion_service = SuggestionConversionService()
