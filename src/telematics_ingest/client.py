# telematics_ingest/client.py
"""
HTTP transport for the MiX Integrate and identity APIs.

This client executes RequestSpec objects without knowing anything about
OAuth, MiX URL conventions or since-token headers. All of that lives in the
adapter (`telematics_ingest.adapter`), which builds the specs and interprets
the APIResponse envelopes returned here.

Retry Behavior:
---------------
The client retries a single request on transport-level transient failures:
- Rate limits (429): Respects Retry-After header, falls back to exponential backoff
- Server errors (5xx): Exponential backoff
- Timeouts: Exponential backoff
- Connection errors: Exponential backoff

Non-retryable errors (4xx except 429) fail immediately. These retries are
deliberately short; the ingestion loop and backfill engine layer their own
token-level retries, circuit breaker and pacing on top.

SSL/TLS Handling:
-----------------
Supports the verification modes of ApiConfig:
- Standard verification (verify_ssl=True)
- Disabled verification (verify_ssl=False) for development
- Custom CA bundle (verify_ssl='/path/to/cert.pem') for proxy environments
- Truststore integration (use_truststore=True) for the OS certificate store
"""

import logging
import time
from collections.abc import Callable
from ssl import SSLContext
from types import TracebackType
from typing import Any, Final, Self

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
)

from telematics_ingest.common import build_truststore_ssl_context
from telematics_ingest.config import ApiConfig
from telematics_ingest.models import APIResponse, RateLimitInfo, RequestSpec

__all__: list[str] = [
    'APIError',
    'AuthenticationError',
    'RateLimitError',
    'TelemetryClient',
    'TransientAPIError',
]

logger: logging.Logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_STATUS_UNAUTHORIZED: Final[int] = 401
HTTP_STATUS_RATE_LIMITED: Final[int] = 429
HTTP_STATUS_SERVER_ERROR_MIN: Final[int] = 500
HTTP_STATUS_SERVER_ERROR_MAX: Final[int] = 599

# Retry configuration
RETRY_BACKOFF_MAX_SECONDS: Final[float] = 60.0
RATE_LIMIT_BUFFER_SECONDS: Final[float] = 0.5


# =============================================================================
# Exception Hierarchy
# =============================================================================


class APIError(Exception):
    """
    Base exception for API errors.

    This is the root of the API error hierarchy. Catch this to handle all
    API-related failures. For more specific handling, catch subclasses.

    Attributes:
        status_code: HTTP status code if available, None for connection errors.
        response_body: Raw response body for debugging, None if unavailable.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code: int | None = status_code
        self.response_body: str | None = response_body


class TransientAPIError(APIError):
    """
    Raised for transient errors that should be retried.

    This includes timeouts, connection errors, and server errors (5xx).
    The retry loop catches this exception type for automatic retry.
    """


class RateLimitError(TransientAPIError):
    """
    Raised when API rate limit is exceeded (HTTP 429).

    Attributes:
        rate_limit_info: Parsed rate limit headers including retry_after_seconds.
    """

    def __init__(self, rate_limit_info: RateLimitInfo) -> None:
        super().__init__(
            f'Rate limit exceeded, retry after {rate_limit_info.retry_after_seconds}s',
            status_code=HTTP_STATUS_RATE_LIMITED,
        )
        self.rate_limit_info: RateLimitInfo = rate_limit_info


class AuthenticationError(APIError):
    """
    Raised on HTTP 401, or when the identity server rejects a token request.

    The adapter reacts by refreshing or re-acquiring its access token.
    """


# =============================================================================
# HTTP Client
# =============================================================================


class TelemetryClient:
    """
    HTTP client for the MiX APIs.

    The client handles:
    - HTTP transport with connection pooling
    - Automatic retries with exponential backoff for transient errors
    - Rate limit handling that respects Retry-After headers
    - SSL verification (including truststore)

    Thread Safety:
        The underlying httpx.Client is thread-safe. Each worker still builds
        its own adapter and client so retry sleeps stay within one worker.

    Example:
        >>> with TelemetryClient(config.api) as client:
        ...     response = client.execute(RequestSpec(url='https://...'))
        ...     print(response.body)
    """

    def __init__(
        self,
        api_config: ApiConfig,
        pool_connections: int = 5,
        pool_maxsize: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the API client.

        Args:
            api_config: Connection settings including timeouts, retry counts
                and SSL configuration.
            pool_connections: Maximum number of keepalive connections.
            pool_maxsize: Maximum total connections allowed in the pool.
            sleep: Sleep function used between retry attempts. Workers pass
                a cancellation-aware sleep so shutdown is not delayed.

        Raises:
            RuntimeError: If truststore is requested but not installed.
        """
        self._api_config: ApiConfig = api_config
        self._sleep: Callable[[float], None] = sleep

        ssl_verify: SSLContext | bool | str = self._build_ssl_context()

        connect_timeout: int
        read_timeout: int
        connect_timeout, read_timeout = api_config.request_timeout
        default_timeout = httpx.Timeout(
            connect=connect_timeout,
            read=read_timeout,
            write=connect_timeout,
            pool=connect_timeout,
        )

        self._http_client: httpx.Client = httpx.Client(
            timeout=default_timeout,
            verify=ssl_verify,
            limits=httpx.Limits(
                max_keepalive_connections=pool_connections,
                max_connections=pool_maxsize,
            ),
        )

        logger.info(
            'Initialized TelemetryClient: base_url=%r, pool_size=%d, max_retries=%d',
            api_config.base_url,
            pool_maxsize,
            api_config.max_retries,
        )

    def _build_ssl_context(self) -> SSLContext | bool | str:
        """
        Build SSL verification context from configuration.

        Returns:
            SSLContext for truststore, bool for enable/disable, or str path to CA bundle.
        """
        if self._api_config.use_truststore:
            logger.debug('Building SSLContext from truststore (system CA store)')
            return build_truststore_ssl_context()

        logger.debug('Using SSL verification setting: %r', self._api_config.verify_ssl)
        return self._api_config.verify_ssl

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """
        Close HTTP client and release connection pool resources.

        Safe to call multiple times.
        """
        self._http_client.close()
        logger.debug('TelemetryClient closed')

    def __enter__(self) -> Self:
        """Enter context manager, returning self."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit context manager, closing the HTTP client."""
        self.close()

    # -------------------------------------------------------------------------
    # Execution Layer
    # -------------------------------------------------------------------------

    def execute(self, request_spec: RequestSpec) -> APIResponse:
        """
        Execute an HTTP request with automatic retry on transient failures.

        Args:
            request_spec: Complete request specification.

        Returns:
            APIResponse with parsed JSON body and lower-cased headers.

        Raises:
            AuthenticationError: On HTTP 401 (not retried here).
            APIError: For other non-retryable errors.
            TransientAPIError: After exhausting retries.
            RateLimitError: After exhausting rate limit retries.
        """
        retrying = Retrying(
            retry=retry_if_exception_type(TransientAPIError),
            wait=self._wait_for_rate_limit_or_exponential,
            stop=stop_after_attempt(self._api_config.max_retries),
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._execute_once, request_spec)

    def _wait_for_rate_limit_or_exponential(self, retry_state: RetryCallState) -> float:
        """
        Wait strategy that respects the Retry-After header for rate limits.

        Args:
            retry_state: Tenacity retry state containing exception info.

        Returns:
            Number of seconds to wait before next retry attempt.
        """
        exception: BaseException | None = (
            retry_state.outcome.exception() if retry_state.outcome else None
        )

        if isinstance(exception, RateLimitError):
            wait_seconds: float = exception.rate_limit_info.retry_after_seconds
            return wait_seconds + RATE_LIMIT_BUFFER_SECONDS

        attempt_number: int = retry_state.attempt_number
        exponential_wait: float = self._api_config.retry_backoff_factor * (
            2 ** (attempt_number - 1)
        )
        return min(exponential_wait, RETRY_BACKOFF_MAX_SECONDS)

    def _execute_once(self, request_spec: RequestSpec) -> APIResponse:
        """Single attempt: send, then map the status code."""
        response: httpx.Response = self._send_http_request(request_spec)
        return self._handle_response(response)

    def _send_http_request(self, request_spec: RequestSpec) -> httpx.Response:
        """
        Send the HTTP request, converting transport errors to TransientAPIError.

        Raises:
            TransientAPIError: On timeout or connection errors (retryable).
        """
        timeout = httpx.Timeout(
            connect=request_spec.timeout[0],
            read=request_spec.timeout[1],
            write=request_spec.timeout[0],
            pool=request_spec.timeout[0],
        )

        request_kwargs: dict[str, Any] = {
            'method': request_spec.method.value,
            'url': request_spec.url,
            'params': request_spec.query_params or None,
            'headers': request_spec.headers,
            'timeout': timeout,
        }
        if request_spec.form_data is not None:
            request_kwargs['data'] = request_spec.form_data
        elif request_spec.json_body is not None:
            request_kwargs['json'] = request_spec.json_body

        try:
            return self._http_client.request(**request_kwargs)
        except httpx.TimeoutException as error:
            logger.warning('Request timeout (will retry): %s', request_spec.url)
            raise TransientAPIError(f'Request timeout: {error}') from error
        except httpx.RequestError as error:
            logger.warning(
                'Connection error (will retry): %s - %s', request_spec.url, error
            )
            raise TransientAPIError(f'Connection error: {error}') from error

    def _handle_response(self, response: httpx.Response) -> APIResponse:
        """
        Handle HTTP response, raising appropriate exceptions for errors.

        Raises:
            RateLimitError: On HTTP 429 (retryable).
            TransientAPIError: On 5xx server errors (retryable).
            AuthenticationError: On HTTP 401.
            APIError: On other 4xx errors or malformed JSON (not retryable).
        """
        status_code: int = response.status_code
        headers: dict[str, str] = {
            key.lower(): value for key, value in dict(response.headers).items()
        }

        if status_code == HTTP_STATUS_RATE_LIMITED:
            rate_limit_info: RateLimitInfo = RateLimitInfo.from_response_headers(headers)
            logger.warning(
                'Rate limited (will retry after %.1fs): remaining=%s',
                rate_limit_info.retry_after_seconds,
                rate_limit_info.remaining,
            )
            raise RateLimitError(rate_limit_info)

        if HTTP_STATUS_SERVER_ERROR_MIN <= status_code <= HTTP_STATUS_SERVER_ERROR_MAX:
            logger.warning(
                'Server error %d (will retry): %s',
                status_code,
                response.text[:200],
            )
            raise TransientAPIError(
                message=f'Server error: HTTP {status_code}',
                status_code=status_code,
                response_body=response.text,
            )

        if status_code == HTTP_STATUS_UNAUTHORIZED:
            logger.warning('Unauthorized (401): access token rejected')
            raise AuthenticationError(
                message='Unauthorized: HTTP 401',
                status_code=status_code,
                response_body=response.text[:500],
            )

        if not response.is_success:
            logger.error(
                'Client error %d (not retryable): %s',
                status_code,
                response.text[:500],
            )
            raise APIError(
                message=f'Client error: HTTP {status_code}',
                status_code=status_code,
                response_body=response.text,
            )

        if not response.text.strip():
            return APIResponse(status_code=status_code, body=None, headers=headers)

        try:
            json_body: Any = response.json()
        except ValueError as parse_error:
            raise APIError(
                message=f'Invalid JSON in response: {parse_error}',
                status_code=status_code,
                response_body=response.text[:500],
            ) from parse_error

        return APIResponse(status_code=status_code, body=json_body, headers=headers)
