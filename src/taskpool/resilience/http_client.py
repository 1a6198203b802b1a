"""Async HTTP client guarded by a circuit breaker and the rate limiter."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from taskpool import __version__
from taskpool.errors import (
    ErrorKind,
    QuotaExceededError,
    TransientError,
    error_for_status,
    is_retryable_status,
)
from taskpool.resilience.circuit_breaker import CircuitBreakerRegistry
from taskpool.resilience.rate_limiter import DEFAULT_RESOURCE, RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = f"taskpool/{__version__}"
_FORBIDDEN = 403


class QuotaAwareHttpClient:
    """httpx client whose calls pass through a named breaker and the shared limiter.

    Only dependency-health failures (network, timeout, 5xx, quota) count
    against the breaker. Other 4xx responses are returned from the guarded
    section and raised afterwards as `ValidationError`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        breakers: CircuitBreakerRegistry,
        rate_limiter: RateLimiter,
        breaker_name: str = "http",
        base_url: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._breakers = breakers
        self._rate_limiter = rate_limiter
        self._breaker_name = breaker_name
        base_headers = {"User-Agent": user_agent}
        if headers:
            base_headers.update(headers)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=base_headers,
            transport=transport,
            follow_redirects=True,
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        resource: str = DEFAULT_RESOURCE,
        priority: int = 0,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request; raise a typed `TaskError` on failure."""

        breaker = self._breakers.get(self._breaker_name)

        async def guarded() -> httpx.Response:
            return await breaker.call(lambda: self._send(method, url, resource, **kwargs))

        response = await self._rate_limiter.execute(
            guarded,
            resource=resource,
            priority=priority,
        )
        if response.is_success:
            return response
        raise error_for_status(
            response.status_code,
            f"{method} {url} returned HTTP {response.status_code}",
            resource=resource,
        )

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> QuotaAwareHttpClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def _send(self, method: str, url: str, resource: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling %s %s", method, url)
            raise TransientError(
                f"Timeout calling {method} {url}",
                code="HTTP_TIMEOUT",
                kind=ErrorKind.TIMEOUT,
            ) from error
        except httpx.TransportError as error:
            logger.warning("Transport error calling %s %s: %s", method, url, error)
            raise TransientError(
                f"Transport error calling {method} {url}: {error}",
                code="HTTP_TRANSPORT",
            ) from error

        self._rate_limiter.update_from_headers(response.headers)
        if _is_quota_response(response):
            quota_error = QuotaExceededError(
                f"{method} {url} rejected by quota (HTTP {response.status_code})",
                resource=response.headers.get("x-ratelimit-resource", resource),
                retry_after_seconds=_retry_after_seconds(response),
                status_code=response.status_code,
            )
            self._rate_limiter.update_from_error(quota_error)
            raise quota_error
        if is_retryable_status(response.status_code):
            raise error_for_status(
                response.status_code,
                f"{method} {url} returned HTTP {response.status_code}",
                resource=resource,
            )
        return response


def _is_quota_response(response: httpx.Response) -> bool:
    if response.status_code == 429:  # noqa: PLR2004
        return True
    return (
        response.status_code == _FORBIDDEN
        and response.headers.get("x-ratelimit-remaining") == "0"
    )


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None
