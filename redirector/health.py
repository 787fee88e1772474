"""Destination health classification and background probing.

Decision Table — classify()
===========================
::
    error present
    ├─ timeout / timed out / aborted       → timeout        (unhealthy)
    ├─ ssl / certificate                   → ssl_error      (unhealthy)
    ├─ dns / name resolution / unknown host→ dns_error      (unhealthy)
    ├─ network / connection / connect      → down           (unhealthy)
    └─ anything else                       → error          (unhealthy)
    response present
    ├─ 3xx and Location mentions "redirect"→ redirect_loop  (unhealthy)
    ├─ >= 500                              → down           (unhealthy)
    ├─ 4xx                                 → unstable       (unhealthy)
    └─ 2xx/3xx
        ├─ > 5000 ms                       → slow           (unhealthy)
        ├─ > 3000 ms                       → slow           (healthy)
        └─ otherwise                       → healthy
    neither                                → error          (unhealthy)

Error text is ``"{ExceptionType}: {message}"`` lower-cased, so an httpx
``ReadTimeout`` or ``ConnectError`` is recognised by its type name even
when its message is terse.
"""

import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Optional

import httpx
from prometheus_client import Counter

from redirector.enums import DestinationHealth
from redirector.exceptions import HealthProbeFailure
from redirector.schemas import HealthProbeResult

__all__ = ["classify", "describe_error", "HealthProber", "REDIRECT_LOOP_MARKER"]

logger = logging.getLogger("redirector.health")

REDIRECT_LOOP_MARKER = "redirect"
SLOW_THRESHOLD_MS = 3000
UNHEALTHY_SLOW_THRESHOLD_MS = 5000

ERROR_KEYWORDS: Sequence[tuple[tuple[str, ...], DestinationHealth]] = (
    (("timeout", "timed out", "aborted"), DestinationHealth.TIMEOUT),
    (("ssl", "certificate"), DestinationHealth.SSL_ERROR),
    (
        ("dns", "name resolution", "name or service not known", "nodename nor servname", "getaddrinfo"),
        DestinationHealth.DNS_ERROR,
    ),
    (("network", "connection", "connect"), DestinationHealth.DOWN),
)

DESTINATION_HEALTH_TOTAL = Counter(
    "redirector_destination_health_total",
    "Destination probe outcomes",
    ["status"],
)


def describe_error(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


def classify(
    response: Optional[httpx.Response],
    response_time_ms: float,
    error: Optional[BaseException],
) -> tuple[DestinationHealth, bool]:
    if error is not None:
        message = describe_error(error).lower()
        for keywords, status in ERROR_KEYWORDS:
            if any(keyword in message for keyword in keywords):
                return status, False
        return DestinationHealth.ERROR, False

    if response is not None:
        status_code = response.status_code

        if 300 <= status_code < 400:
            location = response.headers.get("location")
            if location and REDIRECT_LOOP_MARKER in location:
                return DestinationHealth.REDIRECT_LOOP, False

        if status_code >= 500:
            return DestinationHealth.DOWN, False

        if 400 <= status_code < 500:
            return DestinationHealth.UNSTABLE, False

        if 200 <= status_code < 400:
            if response_time_ms > UNHEALTHY_SLOW_THRESHOLD_MS:
                return DestinationHealth.SLOW, False
            if response_time_ms > SLOW_THRESHOLD_MS:
                return DestinationHealth.SLOW, True
            return DestinationHealth.HEALTHY, True

    return DestinationHealth.ERROR, False


class HealthProber:
    """Sends a single HEAD request to a destination and classifies the outcome."""

    def __init__(self, client: httpx.AsyncClient, timeout_seconds: float = 8.0, user_agent: str = ""):
        self._client = client
        self._timeout = timeout_seconds
        self._user_agent = user_agent

    async def _head(self, url: str) -> httpx.Response:
        # httpx timeouts apply per phase; the deadline bounds the whole exchange
        try:
            async with asyncio.timeout(self._timeout):
                return await self._client.head(
                    url,
                    headers={"User-Agent": self._user_agent, "Accept": "*/*"},
                    timeout=self._timeout,
                    follow_redirects=False,
                )
        except TimeoutError as exc:
            raise HealthProbeFailure(f"TimeoutError: probe exceeded {self._timeout}s deadline") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise HealthProbeFailure(describe_error(exc)) from exc

    async def probe(self, url: str) -> HealthProbeResult:
        start = time.perf_counter()
        try:
            response = await self._head(url)
        except HealthProbeFailure as exc:
            elapsed_ms = (time.perf_counter() - start) * 1000
            status, is_healthy = classify(None, elapsed_ms, exc.__cause__ or exc)
            DESTINATION_HEALTH_TOTAL.labels(status=status).inc()
            logger.warning(f"Health probe failed for {url}: {exc}")
            return HealthProbeResult(
                status=status,
                is_healthy=is_healthy,
                response_time_ms=elapsed_ms,
                http_status=None,
                error_message=str(exc),
            )

        elapsed_ms = (time.perf_counter() - start) * 1000
        status, is_healthy = classify(response, elapsed_ms, None)
        DESTINATION_HEALTH_TOTAL.labels(status=status).inc()
        logger.info(f"Health probe for {url}: {status} ({response.status_code}) in {elapsed_ms:.0f}ms")
        return HealthProbeResult(
            status=status,
            is_healthy=is_healthy,
            response_time_ms=elapsed_ms,
            http_status=response.status_code,
        )
