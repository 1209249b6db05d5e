"""Retrying async HTTP client shared by the tracker and GitHub clients.

Implements the request loop both REST integrations rely on:
- Exponential backoff with full jitter for 408/429/5xx and transport errors
- Immediate failure for other 4xx responses
- Rate limit detection via Retry-After and X-RateLimit-* headers

Subclasses provide authentication headers and an error class.
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, Optional, Type

import httpx


logger = logging.getLogger(__name__)


class HTTPServiceError(Exception):
    """Raised when a request to an external service fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body returned by the service.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(HTTPServiceError):
    """Raised when a service rate limit is still exceeded after retries.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


class RetryingHTTPClient:
    """Base class for async REST clients with retry logic.

    Attributes:
        base_url: Base URL every request path is resolved against.
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    # Error class raised for failed requests; subclasses narrow it
    error_class: Type[HTTPServiceError] = HTTPServiceError

    service_name = "HTTP service"

    def __init__(
        self,
        base_url: str,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                auth=self._auth(),
                timeout=self.timeout,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def _auth(self) -> Optional[httpx.Auth]:
        return None

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RetryingHTTPClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate backoff delay with full jitter.

        Args:
            attempt: The current retry attempt (0-indexed).

        Returns:
            Delay in seconds before the next retry.
        """
        exponential_delay = self.base_delay * (2 ** attempt)
        capped_delay = min(exponential_delay, self.max_delay)
        return random.uniform(0, capped_delay)

    @staticmethod
    def _parse_int_header(headers: httpx.Headers, name: str) -> Optional[int]:
        value = headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                pass
        return None

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code == 403:
            remaining = self._parse_int_header(response.headers, "x-ratelimit-remaining")
            return remaining == 0
        return False

    def _rate_limit_delay(self, response: httpx.Response, attempt: int) -> float:
        """Seconds to wait before retrying a rate-limited request.

        Honors Retry-After, then X-RateLimit-Reset, capped at max_delay.
        """
        retry_after = self._parse_int_header(response.headers, "retry-after")
        if retry_after is None:
            reset_at = self._parse_int_header(response.headers, "x-ratelimit-reset")
            if reset_at is not None:
                retry_after = max(0, reset_at - int(time.time()))
        if retry_after is None:
            return self._calculate_backoff(attempt)
        return min(float(retry_after), self.max_delay)

    def _rate_limit_error(self, response: httpx.Response) -> RateLimitError:
        return RateLimitError(
            message=f"{self.service_name} rate limit exceeded",
            status_code=response.status_code,
            reset_at=self._parse_int_header(response.headers, "x-ratelimit-reset"),
            retry_after=self._parse_int_header(response.headers, "retry-after"),
            request_url=str(response.url),
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE, PATCH).
            path: Path relative to base_url.
            json_data: Optional JSON body for the request.
            timeout: Optional per-request timeout override.

        Returns:
            The successful HTTP response.

        Raises:
            RateLimitError: If the rate limit persists after all retries.
            HTTPServiceError: If the request fails (as self.error_class).
        """
        last_exception: Optional[Exception] = None
        request_kwargs: Dict[str, Any] = {"method": method, "url": path, "json": json_data}
        if timeout is not None:
            request_kwargs["timeout"] = timeout

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(**request_kwargs)
            except httpx.TimeoutException as e:
                last_exception = e
                reason = "Request timeout, retrying"
            except httpx.RequestError as e:
                last_exception = e
                reason = "Request error, retrying"
            else:
                if self._is_rate_limited(response):
                    if attempt >= self.max_retries:
                        logger.warning(
                            f"{self.service_name} rate limit exceeded",
                            extra={"path": path, "status_code": response.status_code},
                        )
                        raise self._rate_limit_error(response)
                    delay = self._rate_limit_delay(response, attempt)
                    logger.warning(
                        f"{self.service_name} rate limited, waiting",
                        extra={"path": path, "attempt": attempt + 1, "delay": delay},
                    )
                    await asyncio.sleep(delay)
                    continue

                if (
                    response.status_code in self.RETRYABLE_STATUS_CODES
                    and attempt < self.max_retries
                ):
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        f"Retryable error from {self.service_name}",
                        extra={
                            "status_code": response.status_code,
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue

                if response.status_code >= 400:
                    error_body = response.text
                    logger.error(
                        f"{self.service_name} error",
                        extra={
                            "status_code": response.status_code,
                            "path": path,
                            "method": method,
                            "response_body": error_body[:500],
                        },
                    )
                    raise self.error_class(
                        message=f"{self.service_name} error: {response.status_code}",
                        status_code=response.status_code,
                        response_body=error_body,
                        request_url=str(response.url),
                    )

                return response

            if attempt < self.max_retries:
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    reason,
                    extra={
                        "error": str(last_exception),
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)

        logger.error(
            f"{self.service_name} request failed after all retries",
            extra={
                "path": path,
                "method": method,
                "max_retries": self.max_retries,
                "last_error": str(last_exception),
            },
        )
        raise self.error_class(
            message=f"Request failed after {self.max_retries} retries: {last_exception}",
            request_url=f"{self.base_url}{path}",
        )
