# telematics_ingest/models/shared_request_models.py
"""
Request and response envelopes shared by the HTTP client and the API adapter.

This module defines the contract between the adapter (which builds request
specs and interprets response headers) and the client (which executes them).
The client never needs to know about OAuth, MiX path conventions or the
since-token headers.
"""

import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

__all__: list[str] = ['APIResponse', 'HTTPMethod', 'RateLimitInfo', 'RequestSpec']

logger: logging.Logger = logging.getLogger(__name__)


class HTTPMethod(str, Enum):
    """Supported HTTP methods for API requests."""

    GET = 'GET'
    POST = 'POST'
    PUT = 'PUT'
    DELETE = 'DELETE'


class RequestSpec(BaseModel):
    """
    Complete description of an HTTP request.

    The adapter is responsible for:
    - Building the full URL
    - Injecting the bearer token (or Basic header for token requests)
    - Choosing a JSON body or a form body

    The client is responsible for:
    - Executing the HTTP request
    - Handling retries and rate limits
    - Mapping status codes to the exception hierarchy

    Attributes:
        url: Complete URL ready for HTTP request.
        method: HTTP method (GET, POST, etc.).
        headers: All headers including authentication.
        query_params: Serialized query parameters (all strings).
        json_body: JSON request body. MiX group endpoints take a bare list.
        form_data: application/x-www-form-urlencoded body (token endpoint).
        timeout: Tuple of (connect_timeout, read_timeout) in seconds.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    url: str
    method: HTTPMethod = HTTPMethod.GET
    headers: dict[str, str] = Field(default_factory=dict)
    query_params: dict[str, str] = Field(default_factory=dict)
    json_body: Any = None
    form_data: dict[str, str] | None = None

    timeout: tuple[int, int] = Field(
        default=(10, 60),
        description='(connect_timeout, read_timeout) in seconds',
    )


class APIResponse(BaseModel):
    """
    Successful HTTP response as seen by the adapter.

    MiX returns bare JSON arrays for collections and carries pagination state
    in response headers, so both are surfaced here untouched.

    Attributes:
        status_code: HTTP status code (2xx).
        body: Parsed JSON body (list, dict, or None for empty bodies).
        headers: Response headers with lower-cased names.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    status_code: int
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)

    def header(self, name: str, default: str | None = None) -> str | None:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower(), default)


class RateLimitInfo(BaseModel):
    """
    Rate limit metadata extracted from HTTP response headers.

    Attributes:
        retry_after_seconds: Seconds to wait before retrying.
        limit: Maximum requests allowed in the rate limit window.
        remaining: Requests remaining in current window.
        reset_at_unix: Unix timestamp when the rate limit resets.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    retry_after_seconds: float = 1.0
    limit: int | None = None
    remaining: int | None = None
    reset_at_unix: int | None = None

    @classmethod
    def from_response_headers(cls, headers: dict[str, str]) -> 'RateLimitInfo':
        """
        Extract rate limit information from HTTP response headers.

        Args:
            headers: HTTP response headers dictionary.

        Returns:
            RateLimitInfo with parsed values, defaults to 1 second retry
            if Retry-After header is missing or not numeric.
        """
        normalized_headers: dict[str, str] = {
            key.lower(): value for key, value in headers.items()
        }

        retry_after_raw: str = normalized_headers.get('retry-after', '1')
        try:
            retry_after_seconds: float = float(retry_after_raw)
        except ValueError:
            # HTTP-date form of Retry-After; fall back to the default.
            retry_after_seconds = 1.0

        limit_raw: str | None = normalized_headers.get('x-ratelimit-limit')
        remaining_raw: str | None = normalized_headers.get('x-ratelimit-remaining')
        reset_raw: str | None = normalized_headers.get('x-ratelimit-reset')

        return cls(
            retry_after_seconds=retry_after_seconds,
            limit=int(limit_raw) if limit_raw is not None else None,
            remaining=int(remaining_raw) if remaining_raw is not None else None,
            reset_at_unix=int(reset_raw) if reset_raw is not None else None,
        )

    @property
    def is_exhausted(self) -> bool:
        """Check if rate limit is completely exhausted."""
        return self.remaining is not None and self.remaining <= 0
