"""
Google Calendar API client for tentative holds and busy-time lookups.

Every call takes the user's access token plus an optional refresh token.
A 401 triggers one refresh through the OAuth service and a single retry;
the new access token is handed back so callers can persist it.
"""

import asyncio
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from app.infrastructure.observability.logging import get_logger
from app.models.domain.calendar_domain import (
    BusyPeriod,
    CalendarResult,
    TentativeHold,
    parse_google_datetime,
    split_into_slots,
)
from app.services.google_oauth_service import GoogleOAuthError, refresh_google_token

logger = get_logger(__name__)

# Google Calendar API configuration
CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class GoogleCalendarError(Exception):
    """Custom exception for Google Calendar API errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}


class GoogleCalendarService:
    """
    Service for the handful of Calendar API operations this app needs.

    Placing and removing tentative holds and reading free/busy information,
    with retry on transient statuses and transparent token refresh.
    """

    def __init__(self):
        self._client = self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Calendar API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise GoogleCalendarError(f"Calendar API unreachable: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Calendar API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise GoogleCalendarError("Calendar API retry loop exhausted")

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _authorized_request(
        self,
        method: str,
        url: str,
        access_token: str,
        refresh_token: str | None,
        **kwargs,
    ) -> tuple[httpx.Response, str | None]:
        """Send a request; on 401 refresh the access token once and retry."""
        response = await self._request_with_retry(
            method, url, headers=self._get_auth_headers(access_token), **kwargs
        )
        if response.status_code != 401 or not refresh_token:
            return response, None

        logger.info("Calendar access token rejected, refreshing", method=method)
        try:
            token_response = await refresh_google_token(refresh_token)
        except GoogleOAuthError as e:
            raise GoogleCalendarError(
                f"Calendar authorization expired and refresh failed: {e}",
                error_code=e.error_code,
                status_code=401,
            ) from e

        new_token = token_response.access_token
        response = await self._request_with_retry(
            method, url, headers=self._get_auth_headers(new_token), **kwargs
        )
        return response, new_token

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Handle and validate Calendar API response.

        Raises:
            GoogleCalendarError: If response contains errors
        """
        if response.is_success:
            try:
                return response.json() if response.content else {}
            except ValueError as e:
                logger.error(f"Failed to parse Calendar API {operation} response", error=str(e))
                raise GoogleCalendarError(f"Invalid response format: {e}") from e

        try:
            error_data = response.json() if response.content else {}
        except ValueError:
            logger.error(
                f"Calendar API {operation} failed with non-JSON response",
                status_code=response.status_code,
            )
            raise GoogleCalendarError(
                f"Calendar API error (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from None

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_code = str(error_info.get("code", response.status_code))
        error_message = error_info.get("message", "Unknown Calendar API error")

        logger.error(
            f"Calendar API {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )
        raise GoogleCalendarError(
            self._map_calendar_error(error_code, error_message),
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )

    def _map_calendar_error(self, error_code: str, error_message: str) -> str:
        """Map Calendar API error codes to user-friendly messages."""
        error_mappings = {
            "403": "Calendar access denied. Please check permissions.",
            "404": "Calendar or event not found.",
            "400": "Invalid calendar request format.",
            "401": "Calendar authorization expired. Please reconnect.",
            "429": "Too many calendar requests. Please try again later.",
            "500": "Google Calendar service temporarily unavailable.",
        }
        return error_mappings.get(error_code, f"Calendar error: {error_message}")

    def _events_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='@.')}/events"
        return f"{url}/{quote(event_id, safe='')}" if event_id else url

    async def create_tentative_hold(
        self,
        access_token: str,
        hold: TentativeHold,
        *,
        refresh_token: str | None = None,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> CalendarResult[str]:
        """
        Place a tentative, non-notifying hold that still blocks the window.

        Returns:
            CalendarResult whose value is the created calendar event id
        """
        response, new_token = await self._authorized_request(
            "POST",
            self._events_url(calendar_id),
            access_token,
            refresh_token,
            params={"sendUpdates": "none"},
            json=hold.to_api_body(),
        )
        data = self._handle_api_response(response, "create_tentative_hold")
        event_id = data.get("id")
        if not event_id:
            raise GoogleCalendarError("Calendar API returned no event id")

        logger.info(
            "Tentative hold created",
            suggestion_id=hold.suggestion_id,
            calendar_event_id=event_id,
        )
        return CalendarResult(value=event_id, refreshed_access_token=new_token)

    async def delete_tentative_hold(
        self,
        access_token: str,
        event_id: str,
        *,
        refresh_token: str | None = None,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> CalendarResult[bool]:
        """Delete a hold; an already-removed event counts as success."""
        response, new_token = await self._authorized_request(
            "DELETE",
            self._events_url(calendar_id, event_id),
            access_token,
            refresh_token,
            params={"sendUpdates": "none"},
        )
        if response.status_code in (404, 410):
            logger.debug("Tentative hold already gone", calendar_event_id=event_id)
            return CalendarResult(value=True, refreshed_access_token=new_token)

        self._handle_api_response(response, "delete_tentative_hold")
        return CalendarResult(value=True, refreshed_access_token=new_token)

    async def delete_tentative_holds(
        self,
        access_token: str,
        event_ids: list[str],
        *,
        refresh_token: str | None = None,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> CalendarResult[dict[str, int]]:
        """Delete several holds from one calendar; each deletion fails on its own."""
        deleted = 0
        failed = 0
        current_token = access_token
        refreshed: str | None = None

        for event_id in event_ids:
            try:
                result = await self.delete_tentative_hold(
                    current_token,
                    event_id,
                    refresh_token=refresh_token,
                    calendar_id=calendar_id,
                )
                if result.refreshed_access_token:
                    current_token = refreshed = result.refreshed_access_token
                deleted += 1
            except GoogleCalendarError as e:
                failed += 1
                logger.warning(
                    "Failed to delete tentative hold",
                    calendar_event_id=event_id,
                    status_code=e.status_code,
                    error=str(e),
                )

        return CalendarResult(value={"deleted": deleted, "failed": failed}, refreshed_access_token=refreshed)

    async def get_busy_times_for_date_range(
        self,
        access_token: str,
        start: datetime,
        end: datetime,
        *,
        refresh_token: str | None = None,
        calendar_id: str = CALENDAR_PRIMARY,
    ) -> CalendarResult[list[BusyPeriod]]:
        """Busy time between ``start`` and ``end`` as aligned 30-minute UTC blocks."""
        body: dict[str, Any] = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "items": [{"id": calendar_id}],
        }
        response, new_token = await self._authorized_request(
            "POST", f"{CALENDAR_API_BASE_URL}/freeBusy", access_token, refresh_token, json=body
        )
        data = self._handle_api_response(response, "free_busy")

        periods: list[BusyPeriod] = []
        for busy in data.get("calendars", {}).get(calendar_id, {}).get("busy", []):
            busy_start = parse_google_datetime(busy.get("start"))
            busy_end = parse_google_datetime(busy.get("end"))
            if busy_start and busy_end and busy_start < busy_end:
                periods.append(BusyPeriod(start=busy_start, end=busy_end))

        return CalendarResult(value=split_into_slots(periods), refreshed_access_token=new_token)


google_calendar_service = GoogleCalendarService()
