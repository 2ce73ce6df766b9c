"""
Availability submissions redeemed through magic links.

Every token check is recorded by the analytics sink in the background. The
caller only ever learns that a link is invalid, never why.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from app.features.availability.domain.models import AvailabilityResponse, TimeSlot
from app.features.availability.repository.prompt_repository import PromptRepository
from app.features.availability.repository.response_repository import ResponseRepository
from app.features.availability.services.prompt_service import prompt_service
from app.infrastructure.observability.logging import get_logger
from app.infrastructure.tasks import spawn
from app.services.magic_token_service import (
    INVALID_TOKEN,
    MagicTokenService,
    TokenValidationResult,
    magic_token_service,
)
from app.services.token_analytics_service import token_analytics_service

logger = get_logger(__name__)

INVALID_LINK = "invalid_link"
PROMPT_NOT_FOUND = "prompt_not_found"
PROMPT_CLOSED = "prompt_closed"


@dataclass(slots=True)
class SubmissionResult:
    success: bool
    response_id: str | None = None
    updated: bool = False
    error: str | None = None
    message: str | None = None


async def validate_link(
    token: str,
    *,
    form_loaded_at: datetime | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> TokenValidationResult:
    """Validate a magic token and record the attempt."""
    result = await magic_token_service.validate_token(token, form_loaded_at=form_loaded_at)
    token_analytics_service.track_validation(
        token_id=result.token_id or MagicTokenService.extract_token_id(token),
        success=result.valid,
        failure_reason=result.reason,
        ip_address=ip_address,
        user_agent=user_agent,
        grace_used=result.grace_used,
    )
    return result


class ResponseService:
    async def submit_response(
        self,
        *,
        magic_token: str,
        time_slots: list[TimeSlot],
        user_timezone: str,
        is_unavailable: bool = False,
        form_loaded_at: datetime | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> SubmissionResult:
        """
        Store (or replace) the token holder's availability for its prompt.

        A successful submission kicks off a background suggestion refresh.
        """
        validation = await validate_link(
            magic_token,
            form_loaded_at=form_loaded_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if not validation.valid:
            return SubmissionResult(False, error=INVALID_LINK)

        prompt_id = validation.prompt_id
        prompt = await PromptRepository.get_prompt(prompt_id)
        if prompt is None:
            return SubmissionResult(False, error=PROMPT_NOT_FOUND, message="Availability poll not found")

        if not prompt.accepts_responses(now or datetime.now(UTC)):
            logger.info(
                "Submission rejected, prompt not accepting responses",
                prompt_id=prompt_id,
                status=prompt.status,
            )
            return SubmissionResult(
                False,
                error=PROMPT_CLOSED,
                message="This availability poll is no longer accepting responses.",
            )

        response_id, updated = await ResponseRepository.upsert_response(
            prompt_id,
            validation.user_id,
            [] if is_unavailable else time_slots,
            user_timezone,
            is_unavailable,
            validation.token_id,
        )
        logger.info(
            "Availability response stored",
            prompt_id=prompt_id,
            user_id=validation.user_id,
            slots=0 if is_unavailable else len(time_slots),
            is_unavailable=is_unavailable,
            updated=updated,
        )

        spawn(prompt_service.refresh_suggestions(prompt_id), name="suggestion-refresh")
        return SubmissionResult(True, response_id=response_id, updated=updated)

    async def get_own_response(
        self, prompt_id: str, magic_token: str, *, ip_address: str | None = None, user_agent: str | None = None
    ) -> tuple[TokenValidationResult, AvailabilityResponse | None]:
        """The token holder's stored response for pre-filling the form."""
        validation = await validate_link(magic_token, ip_address=ip_address, user_agent=user_agent)
        if not validation.valid:
            return validation, None
        if validation.prompt_id != prompt_id:
            logger.info("Token scoped to another prompt", token_id=validation.token_id, prompt_id=prompt_id)
            return TokenValidationResult(valid=False, reason=INVALID_TOKEN, claims=validation.claims), None

        response = await ResponseRepository.get_response(prompt_id, validation.user_id)
        if response is not None and not response.submitted:
            response = None
        return validation, response


response_service = ResponseService()
