"""
Availability consensus routes.

Magic-link routes authenticate with the token itself; dashboard routes rely
on the identity headers set by the upstream gateway.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from app.auth.verify import (
    CallerIdentity,
    identity_dependency,
    is_group_admin,
    require_group_admin,
    require_group_member,
)
from app.db.helpers import DatabaseError
from app.features.availability.domain.models import results_visible
from app.features.availability.pipeline.aggregation import AggregationError
from app.features.availability.repository.prompt_repository import PromptRepository
from app.features.availability.repository.response_repository import ResponseRepository
from app.features.availability.repository.suggestion_repository import SuggestionRepository
from app.features.availability.services.conversion_service import (
    ConversionError,
    suggestion_conversion_service,
)
from app.features.availability.services.prompt_service import prompt_service
from app.features.availability.services.response_service import (
    INVALID_LINK,
    PROMPT_NOT_FOUND,
    response_service,
    validate_link,
)
from app.infrastructure.observability.logging import get_logger
from app.models.api.availability_request import (
    ConvertSuggestionRequest,
    SubmitAvailabilityRequest,
    ValidateTokenRequest,
)
from app.models.api.availability_response import (
    AggregationResponse,
    ConversionResponse,
    PromptStatusResponse,
    RevokeTokenResponse,
    StoredAvailabilityResponse,
    SubmitAvailabilityResponse,
    SuggestionListResponse,
    SuggestionOut,
    ValidatedUser,
    ValidateTokenResponse,
)
from app.services.infrastructure.job_queue import JobQueueError
from app.services.magic_token_service import magic_token_service
from app.services.token_analytics_service import token_analytics_service

logger = get_logger(__name__)

router = APIRouter(tags=["availability"])

INVALID_LINK_MESSAGE = "This link is no longer valid."


class InvalidLinkError(Exception):
    """Any magic link failure; rendered as one generic 400 by the app."""

    body = {"error": INVALID_LINK_MESSAGE, "action": "request_new"}


def _client_info(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


async def _get_prompt_or_404(prompt_id: str):
    prompt = await PromptRepository.get_prompt(prompt_id)
    if prompt is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Prompt not found")
    return prompt


# ---------------------------------------------------------------------------
# Magic link routes
# ---------------------------------------------------------------------------


@router.post("/magic-auth/validate", response_model=ValidateTokenResponse)
async def validate_magic_link(body: ValidateTokenRequest, request: Request):
    """Check a magic link before the availability form is shown."""
    result = await validate_link(body.token, form_loaded_at=body.form_loaded_at, **_client_info(request))
    if not result.valid:
        raise InvalidLinkError()

    return ValidateTokenResponse(
        valid=True,
        user=ValidatedUser(name=result.name),
        prompt_id=result.prompt_id,
        expires_at=result.expires_at,
        grace_used=result.grace_used,
    )


@router.post("/availability-responses", response_model=SubmitAvailabilityResponse)
async def submit_availability(body: SubmitAvailabilityRequest, request: Request):
    """Store the link holder's availability for its prompt."""
    try:
        result = await response_service.submit_response(
            magic_token=body.magic_token,
            time_slots=[slot.to_domain() for slot in body.time_slots],
            user_timezone=body.user_timezone,
            is_unavailable=body.is_unavailable,
            form_loaded_at=body.form_loaded_at,
            **_client_info(request),
        )
    except DatabaseError as e:
        logger.error("Availability submission failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save availability",
        ) from e

    if not result.success:
        if result.error == INVALID_LINK:
            raise InvalidLinkError()
        if result.error == PROMPT_NOT_FOUND:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.message)

    return SubmitAvailabilityResponse(success=True, response_id=result.response_id, updated=result.updated)


@router.get("/availability-responses/{prompt_id}", response_model=StoredAvailabilityResponse | None)
async def get_own_availability(prompt_id: str, request: Request, magic_token: str = Query(..., min_length=1)):
    """The link holder's stored response, or null."""
    validation, response = await response_service.get_own_response(
        prompt_id, magic_token, **_client_info(request)
    )
    if not validation.valid:
        raise InvalidLinkError()
    return StoredAvailabilityResponse.from_domain(response) if response else None


@router.post("/magic-auth/tokens/{token_id}/revoke", response_model=RevokeTokenResponse)
async def revoke_magic_token(token_id: str, identity: CallerIdentity = Depends(identity_dependency)):
    prompt_id = await magic_token_service.get_token_prompt_id(token_id)
    if prompt_id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Token not found")

    prompt = await _get_prompt_or_404(prompt_id)
    await require_group_admin(identity, prompt.group_id)

    revoked = await magic_token_service.revoke_token(token_id)
    logger.info("Magic token revoke requested", token_id=token_id, revoked=revoked, by=identity.user_id)
    return RevokeTokenResponse(token_id=token_id, revoked=revoked)


@router.get("/tokens/metrics")
async def get_token_metrics(
    group_id: str | None = Query(None),
    days: int = Query(7, ge=1, le=90),
    identity: CallerIdentity = Depends(identity_dependency),
):
    """Token generation and validation analytics."""
    if group_id:
        await require_group_admin(identity, group_id)
    elif not identity.is_platform_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")

    try:
        return await token_analytics_service.get_token_metrics(group_id=group_id, days=days)
    except DatabaseError as e:
        logger.error("Token metrics query failed", group_id=group_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load token metrics",
        ) from e


# ---------------------------------------------------------------------------
# Dashboard routes
# ---------------------------------------------------------------------------


@router.get("/prompts/{prompt_id}/suggestions", response_model=SuggestionListResponse)
async def list_prompt_suggestions(
    prompt_id: str,
    min_participants: int | None = Query(None, ge=1),
    meets_minimum: bool | None = Query(None),
    order_by: str = Query("score"),
    order_direction: str = Query("desc", pattern="^(asc|desc|ASC|DESC)$"),
    identity: CallerIdentity = Depends(identity_dependency),
):
    """Ranked suggestions; blind voting hides them from non-admins who haven't responded."""
    prompt = await _get_prompt_or_404(prompt_id)

    is_admin = await is_group_admin(identity, prompt.group_id)
    if not is_admin:
        await require_group_member(identity, prompt.group_id)
    own = None if is_admin else await ResponseRepository.get_response(prompt_id, identity.user_id)
    visible = results_visible(
        prompt,
        is_admin=is_admin,
        has_submitted=bool(own and own.submitted),
        now=datetime.now(UTC),
    )
    if not visible:
        return SuggestionListResponse(prompt_id=prompt_id, suggestions=[], results_hidden=True)

    suggestions = await SuggestionRepository.list_suggestions(
        prompt_id,
        min_participants=min_participants,
        meets_minimum=meets_minimum,
        order_by=order_by,
        order_direction=order_direction,
    )
    return SuggestionListResponse(
        prompt_id=prompt_id,
        suggestions=[SuggestionOut.from_domain(s) for s in suggestions],
    )


@router.post("/prompts/{prompt_id}/suggestions/refresh", response_model=AggregationResponse)
async def refresh_prompt_suggestions(prompt_id: str, identity: CallerIdentity = Depends(identity_dependency)):
    prompt = await _get_prompt_or_404(prompt_id)
    await require_group_admin(identity, prompt.group_id)

    try:
        result = await prompt_service.refresh_suggestions(prompt_id)
    except AggregationError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to refresh suggestions",
        ) from e

    return AggregationResponse(**result["aggregation"], holds=result["holds"])


@router.post(
    "/suggestions/{suggestion_id}/convert",
    response_model=ConversionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def convert_suggestion(
    suggestion_id: str,
    body: ConvertSuggestionRequest | None = None,
    identity: CallerIdentity = Depends(identity_dependency),
):
    """Turn a suggestion into a scheduled event."""
    options = body or ConvertSuggestionRequest()

    suggestion = await SuggestionRepository.get_suggestion(suggestion_id)
    if suggestion is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Suggestion not found")
    prompt = await _get_prompt_or_404(suggestion.prompt_id)
    await require_group_admin(identity, prompt.group_id)

    try:
        result = await suggestion_conversion_service.convert_suggestion_to_event(
            suggestion_id,
            identity.user_id,
            comments=options.comments,
            send_emails=options.send_emails,
        )
    except ConversionError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to convert suggestion",
        ) from e

    if result.success:
        return ConversionResponse(**result.to_dict())
    if result.not_found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.message)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.to_dict())


@router.post("/prompts/{prompt_id}/activate", response_model=PromptStatusResponse)
async def activate_prompt(prompt_id: str, identity: CallerIdentity = Depends(identity_dependency)):
    prompt = await _get_prompt_or_404(prompt_id)
    await require_group_admin(identity, prompt.group_id)
    return await _lifecycle_response(prompt_id, prompt_service.activate_prompt)


@router.post("/prompts/{prompt_id}/close", response_model=PromptStatusResponse)
async def close_prompt(prompt_id: str, identity: CallerIdentity = Depends(identity_dependency)):
    prompt = await _get_prompt_or_404(prompt_id)
    await require_group_admin(identity, prompt.group_id)
    return await _lifecycle_response(prompt_id, prompt_service.close_prompt)


async def _lifecycle_response(prompt_id: str, operation) -> PromptStatusResponse:
    try:
        result = await operation(prompt_id)
    except JobQueueError as e:
        logger.error("Prompt job scheduling failed", prompt_id=prompt_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job scheduling unavailable",
        ) from e

    if result.get("not_found"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result["message"])
    if not result["success"]:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result["message"])
    return PromptStatusResponse(
        success=True,
        prompt_id=prompt_id,
        status=result["status"],
        message=result["message"],
        jobs=result.get("jobs"),
    )
