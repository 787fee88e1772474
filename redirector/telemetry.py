"""Fire-and-forget telemetry: analytics events, health probes and click records.

Everything in here runs as deferred work after the redirect has been sent.

Flow Diagram — TelemetryDispatcher.dispatch()
=============================================
::
    ┌──────────────────┐
    │ AnalyticsEvent   │
    └────────┬─────────┘
             ▼
    ┌──────────────────────────────────────────────────┐
    │ asyncio.gather(return_exceptions=True)            │
    │  ├─ POST event → endpoint 1   (drain or cancel)   │
    │  ├─ POST event → endpoint N                       │
    │  └─ HEAD destination → classify → mutation RPC    │
    │       (only with a HealthTask: active, owned link │
    │        and a non-bot request)                     │
    └────────┬─────────────────────────────────────────┘
             ▼
      failures logged one by one, never raised

Key Behaviours
===============
- Each endpoint is dispatched independently; one failing endpoint does not
  affect the others or the health probe.
- Non-2xx ingestion responses are closed without reading the body and are
  counted as rejected, not raised.
- The mutation RPC is attempted once, no retry.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from prometheus_client import Counter

from redirector.config import Settings
from redirector.exceptions import AnalyticsDispatchFailure, RemoteMutationFailure
from redirector.health import HealthProber
from redirector.schemas import AnalyticsEvent, ClickEventSummary, HealthProbeResult

__all__ = [
    "HealthTask",
    "drain_or_cancel",
    "send_analytics_event",
    "RemoteMutationClient",
    "TelemetryDispatcher",
]

logger = logging.getLogger("redirector.telemetry")

ANALYTICS_EVENTS_TOTAL = Counter(
    "redirector_analytics_events_total",
    "Analytics event deliveries per endpoint outcome",
    ["outcome"],
)
REMOTE_MUTATIONS_TOTAL = Counter(
    "redirector_remote_mutations_total",
    "Remote mutation calls",
    ["outcome"],
)


@dataclass(frozen=True)
class HealthTask:
    destination: str
    link_id: str
    user_id: str
    request_id: str
    click: Optional[ClickEventSummary] = None


async def drain_or_cancel(response: httpx.Response) -> None:
    """Read a successful body to completion, close a failed one unread."""
    if response.is_success:
        await response.aread()
    else:
        await response.aclose()


async def send_analytics_event(
    client: httpx.AsyncClient,
    endpoint: str,
    token: str,
    event: AnalyticsEvent,
) -> bool:
    """POST ``event`` as JSON with a bearer token. Returns whether it was accepted."""
    try:
        async with client.stream(
            "POST",
            endpoint,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            content=event.model_dump_json(),
        ) as response:
            await drain_or_cancel(response)
            return response.is_success
    except httpx.HTTPError as exc:
        raise AnalyticsDispatchFailure(f"POST {endpoint} failed: {exc}") from exc


class RemoteMutationClient:
    """Records click and health outcomes through the remote mutation HTTP API."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, path: str, shared_secret: str):
        self._client = client
        self._endpoint = f"{base_url.rstrip('/')}/api/mutation"
        self._path = path
        self._shared_secret = shared_secret

    async def record(
        self,
        link_id: str,
        user_id: str,
        status_code: int,
        status_message: str,
        request_id: str,
        click: Optional[ClickEventSummary] = None,
    ) -> Any:
        args: dict[str, Any] = {
            "sharedSecret": self._shared_secret,
            "urlId": link_id,
            "userId": user_id,
            "urlStatusCode": status_code,
            "urlStatusMessage": status_message,
            "requestId": request_id,
        }
        if click is not None:
            args["clickEvent"] = click.model_dump(mode="json")

        try:
            response = await self._client.post(
                self._endpoint,
                json={"path": self._path, "args": args, "format": "json"},
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            REMOTE_MUTATIONS_TOTAL.labels(outcome="failed").inc()
            raise RemoteMutationFailure(f"Mutation {self._path} failed: {exc}") from exc

        if isinstance(payload, dict) and payload.get("status") == "error":
            REMOTE_MUTATIONS_TOTAL.labels(outcome="failed").inc()
            raise RemoteMutationFailure(f"Mutation {self._path} rejected: {payload.get('errorMessage')}")

        REMOTE_MUTATIONS_TOTAL.labels(outcome="success").inc()
        return payload.get("value") if isinstance(payload, dict) else payload


class TelemetryDispatcher:
    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        prober: HealthProber,
        mutations: Optional[RemoteMutationClient] = None,
    ):
        self._settings = settings
        self._client = client
        self._prober = prober
        self._mutations = mutations

    async def dispatch(self, event: AnalyticsEvent, health_task: Optional[HealthTask] = None) -> None:
        labels: list[str] = []
        tasks = []

        if self._settings.analytics_enabled:
            for endpoint in self._settings.ANALYTICS_ENDPOINTS:
                labels.append(f"analytics:{endpoint}")
                tasks.append(self._send(endpoint, event))
        else:
            logger.debug("Analytics ingestion not configured, skipping event")

        if health_task is not None:
            labels.append(f"health:{health_task.destination}")
            tasks.append(self.check_health(health_task))

        if not tasks:
            return

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for label, result in zip(labels, results):
            if isinstance(result, Exception):
                logger.warning(
                    f"Telemetry task {label} failed: {result}",
                    extra={"slug": event.link_slug, "request_id": event.request_id},
                )

    async def _send(self, endpoint: str, event: AnalyticsEvent) -> bool:
        try:
            accepted = await send_analytics_event(self._client, endpoint, self._settings.ANALYTICS_TOKEN, event)
        except AnalyticsDispatchFailure:
            ANALYTICS_EVENTS_TOTAL.labels(outcome="failed").inc()
            raise

        if accepted:
            ANALYTICS_EVENTS_TOTAL.labels(outcome="sent").inc()
        else:
            ANALYTICS_EVENTS_TOTAL.labels(outcome="rejected").inc()
            logger.warning(f"Analytics endpoint {endpoint} rejected event {event.idempotency_key}")
        return accepted

    async def check_health(self, task: HealthTask) -> HealthProbeResult:
        result = await self._prober.probe(task.destination)

        if self._mutations is None:
            logger.debug(f"No mutation service configured, dropping health result for {task.link_id}")
            return result

        await self._mutations.record(
            link_id=task.link_id,
            user_id=task.user_id,
            status_code=result.http_status or 0,
            status_message=result.status.value,
            request_id=task.request_id,
            click=task.click,
        )
        return result
