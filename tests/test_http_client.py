from __future__ import annotations

import asyncio
import time

import allure
import httpx
import pytest

from taskpool import __version__
from taskpool.errors import CircuitOpenError, QuotaExceededError, TransientError, ValidationError
from taskpool.resilience.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from taskpool.resilience.http_client import QuotaAwareHttpClient
from taskpool.resilience.rate_limiter import RateLimiter

pytestmark = [
    allure.epic("Resilience"),
    allure.feature("HTTP Client"),
]


class _Recorder:
    def __init__(self, responder) -> None:
        self.responder = responder
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


def _client(
    recorder: _Recorder,
    *,
    limiter: RateLimiter | None = None,
    failure_threshold: int = 5,
) -> tuple[QuotaAwareHttpClient, CircuitBreakerRegistry, RateLimiter]:
    breakers = CircuitBreakerRegistry(
        default_config=CircuitBreakerConfig(failure_threshold=failure_threshold),
    )
    limiter = limiter if limiter is not None else RateLimiter()
    client = QuotaAwareHttpClient(
        breakers=breakers,
        rate_limiter=limiter,
        base_url="https://api.example.test",
        transport=httpx.MockTransport(recorder),
    )
    return client, breakers, limiter


def test_success_updates_quota_from_headers() -> None:
    reset_at = time.time() + 600
    recorder = _Recorder(
        lambda request: httpx.Response(
            200,
            json={"ok": True},
            headers={
                "X-RateLimit-Remaining": "4321",
                "X-RateLimit-Limit": "5000",
                "X-RateLimit-Reset": str(reset_at),
            },
        ),
    )
    client, breakers, limiter = _client(recorder)

    async def scenario() -> httpx.Response:
        async with client:
            return await client.get("/repos")

    response = asyncio.run(scenario())

    assert response.json() == {"ok": True}
    assert limiter.get_resource("core").remaining == 4321
    assert recorder.requests[0].headers["user-agent"] == f"taskpool/{__version__}"
    assert breakers.stats()["http"].total_successes == 1


def test_quota_response_blocks_the_resource() -> None:
    recorder = _Recorder(lambda request: httpx.Response(429, headers={"Retry-After": "30"}))
    client, _, limiter = _client(recorder)

    async def scenario() -> None:
        async with client:
            await client.get("/search", resource="search")

    with pytest.raises(QuotaExceededError) as caught:
        asyncio.run(scenario())

    assert caught.value.retry_after_seconds == 30.0
    assert caught.value.resource == "search"
    bucket = limiter.get_resource("search")
    assert bucket.is_limited is True
    assert bucket.reset_at > time.time() + 20


def test_server_errors_open_the_breaker() -> None:
    recorder = _Recorder(lambda request: httpx.Response(503))
    client, breakers, _ = _client(recorder, failure_threshold=2)

    async def scenario() -> list[type]:
        raised: list[type] = []
        async with client:
            for _ in range(3):
                try:
                    await client.get("/status")
                except (TransientError, CircuitOpenError) as error:
                    raised.append(type(error))
        return raised

    assert asyncio.run(scenario()) == [TransientError, TransientError, CircuitOpenError]
    assert len(recorder.requests) == 2
    assert breakers.get("http").state is CircuitState.OPEN


def test_client_errors_do_not_count_against_the_breaker() -> None:
    recorder = _Recorder(lambda request: httpx.Response(404))
    client, breakers, _ = _client(recorder, failure_threshold=1)

    async def scenario() -> None:
        async with client:
            await client.get("/missing")

    with pytest.raises(ValidationError, match="HTTP 404"):
        asyncio.run(scenario())

    stats = breakers.stats()["http"]
    assert stats.total_failures == 0
    assert stats.state is CircuitState.CLOSED


def test_transport_error_becomes_transient_error() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, breakers, _ = _client(_Recorder(refuse))

    async def scenario() -> None:
        async with client:
            await client.post("/jobs", json={"id": 1})

    with pytest.raises(TransientError) as caught:
        asyncio.run(scenario())

    assert caught.value.code == "HTTP_TRANSPORT"
    assert breakers.stats()["http"].consecutive_failures == 1
