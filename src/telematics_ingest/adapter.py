# telematics_ingest/adapter.py
"""
MiX Integrate API adapter.

Translates the operations the ingestion engines need into RequestSpecs for
TelemetryClient, and translates responses back into typed models:

    get_events_since(token)        -> EventsPage   (since-token feed)
    get_events_between(start, end) -> list[MixEvent]  (historical window)
    get_all_drivers()              -> list[MixDriver]
    get_all_vehicles()             -> list[MixVehicle]
    get_all_event_types()          -> list[MixEventType]

Authentication:
---------------
The identity server issues bearer tokens through the OAuth2 password grant.
The adapter keeps the current token in memory and:
- logs in on first use,
- refreshes with the refresh-token grant when fewer than 5 minutes remain,
- falls back to a full login when the refresh is rejected,
- on a 401 from a data endpoint, refreshes once and repeats the request.

Since-Token Feed:
-----------------
The created-since endpoint returns a bare JSON array of events. Pagination
state travels in response headers: `GetSinceToken` is the cursor for the next
call and `HasMoreItems` says whether another page is immediately available.
"""

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, SecretStr, ValidationError

from telematics_ingest.client import APIError, AuthenticationError, TelemetryClient
from telematics_ingest.common import as_utc, utc_now
from telematics_ingest.config import ApiConfig
from telematics_ingest.models import (
    APIResponse,
    EventsPage,
    HTTPMethod,
    MixDriver,
    MixEvent,
    MixEventType,
    MixVehicle,
    RequestSpec,
    SinceToken,
    SinceTokenParseError,
)
from telematics_ingest.models.mix_models import MixModelBase

__all__: list[str] = ['AccessToken', 'MixApiAdapter']

logger: logging.Logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN: Final[timedelta] = timedelta(minutes=5)
HISTORICAL_TIME_FORMAT: Final[str] = '%Y%m%d%H%M%S'

HEADER_NEXT_SINCE_TOKEN: Final[str] = 'GetSinceToken'
HEADER_HAS_MORE_ITEMS: Final[str] = 'HasMoreItems'


class AccessToken(BaseModel):
    """
    OAuth credentials held in memory by the adapter.

    Attributes:
        access_token: Bearer token for data endpoints.
        refresh_token: Token for the refresh grant; None if not issued.
        expires_at: UTC instant the access token stops being accepted.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    access_token: SecretStr
    refresh_token: SecretStr | None = None
    expires_at: datetime

    def expires_within(self, margin: timedelta, now: datetime) -> bool:
        """True if the token expires less than `margin` from `now`."""
        return self.expires_at - now < margin


class MixApiAdapter:
    """
    Typed facade over the MiX Integrate REST API.

    Each consumer (ingestion worker, backfill worker, master-data worker)
    owns one adapter so that token refreshes and retry sleeps stay local to
    that worker.

    Example:
        >>> with TelemetryClient(config.api) as client:
        ...     adapter = MixApiAdapter(config.api, client)
        ...     page = adapter.get_events_since(SinceToken.NEW)
        ...     print(page.event_count, page.has_more_items)
    """

    def __init__(
        self,
        api_config: ApiConfig,
        client: TelemetryClient,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._api_config: ApiConfig = api_config
        self._client: TelemetryClient = client
        self._clock: Callable[[], datetime] = clock
        self._access_token: AccessToken | None = None
        self._token_lock: threading.Lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Event Feeds
    # -------------------------------------------------------------------------

    def get_events_since(self, since_token: SinceToken) -> EventsPage:
        """
        Fetch one page of events created after `since_token`.

        Args:
            since_token: Cursor position; SinceToken.NEW starts a fresh window.

        Returns:
            EventsPage with the events and the header-provided continuation.

        Raises:
            APIError: On HTTP failure, a non-array body, or missing/invalid
                continuation headers.
        """
        path: str = (
            f'/api/events/groups/createdsince/entitytype/{self._api_config.entity_type}'
            f'/sincetoken/{since_token.encode()}'
            f'/quantity/{self._api_config.events_page_quantity}'
        )
        response: APIResponse = self._request(
            HTTPMethod.POST, path, json_body=[self._api_config.organisation_id]
        )

        events: list[MixEvent] = self._parse_items(response, MixEvent, 'events')
        next_since_token: SinceToken = self._parse_next_since_token(response)
        has_more_items: bool = self._parse_has_more_items(response)

        logger.debug(
            'Since-token page: token=%s events=%d next=%s has_more=%s',
            since_token,
            len(events),
            next_since_token,
            has_more_items,
        )

        return EventsPage(
            events=events,
            next_since_token=next_since_token,
            has_more_items=has_more_items,
        )

    def get_events_between(self, start: datetime, end: datetime) -> list[MixEvent]:
        """
        Fetch every event whose start time falls in `[start, end)`.

        Args:
            start: Window start (UTC).
            end: Window end (UTC).

        Returns:
            Events in the window, in API order.

        Raises:
            APIError: On HTTP failure or a non-array body.
        """
        path: str = (
            f'/api/events/groups/from/{self._format_historical_time(start)}'
            f'/to/{self._format_historical_time(end)}'
            f'/entitytype/{self._api_config.entity_type}'
        )
        response: APIResponse = self._request(
            HTTPMethod.POST, path, json_body=[self._api_config.organisation_id]
        )
        return self._parse_items(response, MixEvent, 'events')

    # -------------------------------------------------------------------------
    # Reference Data
    # -------------------------------------------------------------------------

    def get_all_drivers(self) -> list[MixDriver]:
        """Fetch every driver in the organisation."""
        response: APIResponse = self._request(
            HTTPMethod.GET, f'/api/drivers/organisation/{self._api_config.organisation_id}'
        )
        return self._parse_items(response, MixDriver, 'drivers')

    def get_all_vehicles(self) -> list[MixVehicle]:
        """Fetch every asset in the organisation group."""
        response: APIResponse = self._request(
            HTTPMethod.GET, f'/api/assets/group/{self._api_config.organisation_id}'
        )
        return self._parse_items(response, MixVehicle, 'vehicles')

    def get_all_event_types(self) -> list[MixEventType]:
        """Fetch the organisation's library event definitions."""
        response: APIResponse = self._request(
            HTTPMethod.GET,
            f'/api/libraryevents/organisation/{self._api_config.organisation_id}',
        )
        return self._parse_items(response, MixEventType, 'event types')

    # -------------------------------------------------------------------------
    # Request Plumbing
    # -------------------------------------------------------------------------

    def _request(
        self,
        method: HTTPMethod,
        path: str,
        json_body: Any = None,
    ) -> APIResponse:
        """Execute an authenticated request, refreshing once on a 401."""
        try:
            return self._client.execute(
                self._build_spec(method, path, json_body, self._get_access_token())
            )
        except AuthenticationError:
            logger.info('Access token rejected; refreshing and retrying once: %s', path)
            fresh_token: str = self._refresh_access_token()
            return self._client.execute(
                self._build_spec(method, path, json_body, fresh_token)
            )

    def _build_spec(
        self,
        method: HTTPMethod,
        path: str,
        json_body: Any,
        bearer_token: str,
    ) -> RequestSpec:
        return RequestSpec(
            url=f'{self._api_config.base_url}{path}',
            method=method,
            headers={
                'Authorization': f'Bearer {bearer_token}',
                'Accept': 'application/json',
            },
            json_body=json_body,
            timeout=self._api_config.request_timeout,
        )

    @staticmethod
    def _format_historical_time(moment: datetime) -> str:
        """Historical endpoints take UTC `yyyyMMddHHmmss` path segments."""
        return as_utc(moment).strftime(HISTORICAL_TIME_FORMAT)

    # -------------------------------------------------------------------------
    # Response Parsing
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse_items[ModelT: MixModelBase](
        response: APIResponse,
        model: type[ModelT],
        label: str,
    ) -> list[ModelT]:
        """
        Validate a JSON array into models.

        A single malformed element is logged and skipped; rejecting the whole
        page would leave the cursor stuck on it forever.

        Raises:
            APIError: If the body is not a JSON array (None counts as empty).
        """
        if response.body is None:
            return []

        if not isinstance(response.body, list):
            raise APIError(
                message=(
                    f'Expected JSON array of {label}, '
                    f'got {type(response.body).__name__}'
                ),
                status_code=response.status_code,
                response_body=str(response.body)[:500],
            )

        items: list[ModelT] = []
        for raw_item in response.body:
            try:
                items.append(model.model_validate(raw_item))
            except ValidationError as validation_error:
                logger.error(
                    'Skipping malformed %s item: %s (payload=%s)',
                    label,
                    validation_error,
                    str(raw_item)[:300],
                )
        return items

    @staticmethod
    def _parse_next_since_token(response: APIResponse) -> SinceToken:
        raw_token: str | None = response.header(HEADER_NEXT_SINCE_TOKEN)
        if raw_token is None:
            raise APIError(
                message=f'Response is missing the {HEADER_NEXT_SINCE_TOKEN} header',
                status_code=response.status_code,
            )
        try:
            return SinceToken.decode(raw_token.strip())
        except SinceTokenParseError as parse_error:
            raise APIError(
                message=f'Invalid {HEADER_NEXT_SINCE_TOKEN} header: {parse_error}',
                status_code=response.status_code,
            ) from parse_error

    @staticmethod
    def _parse_has_more_items(response: APIResponse) -> bool:
        raw_flag: str | None = response.header(HEADER_HAS_MORE_ITEMS)
        if raw_flag is None:
            # Absent flag means the feed has nothing further right now.
            return False
        return raw_flag.strip().lower() == 'true'

    # -------------------------------------------------------------------------
    # OAuth Token Management
    # -------------------------------------------------------------------------

    def _get_access_token(self) -> str:
        """Return a bearer token valid for at least TOKEN_REFRESH_MARGIN."""
        with self._token_lock:
            if self._access_token is None:
                self._access_token = self._perform_login()
            elif self._access_token.expires_within(TOKEN_REFRESH_MARGIN, self._clock()):
                self._access_token = self._refresh_or_login(self._access_token)
            return self._access_token.access_token.get_secret_value()

    def _refresh_access_token(self) -> str:
        """Unconditionally refresh (used after a 401)."""
        with self._token_lock:
            if self._access_token is None:
                self._access_token = self._perform_login()
            else:
                self._access_token = self._refresh_or_login(self._access_token)
            return self._access_token.access_token.get_secret_value()

    def _refresh_or_login(self, current: AccessToken) -> AccessToken:
        if current.refresh_token is None:
            logger.warning('No refresh token available; performing full login')
            return self._perform_login()

        logger.info('Refreshing MiX access token')
        try:
            return self._request_token(
                {
                    'grant_type': 'refresh_token',
                    'refresh_token': current.refresh_token.get_secret_value(),
                }
            )
        except APIError as refresh_error:
            logger.warning(
                'Token refresh failed (%s); falling back to full login', refresh_error
            )
            return self._perform_login()

    def _perform_login(self) -> AccessToken:
        logger.info('Logging in to MiX identity server as %r', self._api_config.username)
        return self._request_token(
            {
                'grant_type': 'password',
                'username': self._api_config.username,
                'password': self._api_config.password.get_secret_value(),
                'scope': self._api_config.scope,
            }
        )

    def _request_token(self, form_data: dict[str, str]) -> AccessToken:
        """
        POST to the token endpoint.

        Raises:
            AuthenticationError: If the response lacks an access token.
            APIError: On HTTP failure.
        """
        spec = RequestSpec(
            url=f'{self._api_config.identity_url}/core/connect/token',
            method=HTTPMethod.POST,
            headers={
                'Authorization': (
                    f'Basic {self._api_config.basic_auth_token.get_secret_value()}'
                ),
                'Content-Type': 'application/x-www-form-urlencoded',
            },
            form_data=form_data,
            timeout=self._api_config.request_timeout,
        )
        response: APIResponse = self._client.execute(spec)

        body: Any = response.body
        if not isinstance(body, dict) or 'access_token' not in body:
            raise AuthenticationError(
                message='Token response did not contain an access_token',
                status_code=response.status_code,
            )

        expires_in_seconds: float = float(body.get('expires_in', 3600))
        refresh_token: str | None = body.get('refresh_token')

        logger.info('Obtained MiX access token (expires in %.0fs)', expires_in_seconds)

        return AccessToken(
            access_token=SecretStr(str(body['access_token'])),
            refresh_token=SecretStr(refresh_token) if refresh_token else None,
            expires_at=self._clock() + timedelta(seconds=expires_in_seconds),
        )
