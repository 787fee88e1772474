"""Analytics dispatch, remote mutation and health task tests."""

import datetime
import json

import httpx
import pytest

from conftest import INGEST_URL, MUTATION_URL
from redirector.config import Settings
from redirector.enums import DestinationHealth
from redirector.exceptions import AnalyticsDispatchFailure, RemoteMutationFailure
from redirector.health import HealthProber
from redirector.schemas import AnalyticsEvent, ClickEventSummary
from redirector.telemetry import HealthTask, RemoteMutationClient, TelemetryDispatcher, send_analytics_event


def _event(**overrides) -> AnalyticsEvent:
    fields = dict(
        idempotency_key="req-1",
        occurred_at=datetime.datetime(2026, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc),
        link_slug="abc",
        short_url="https://sho.rt/abc",
        destination_url="https://dst.example",
        redirect_status=302,
        tracking_enabled=True,
        latency_ms_worker=3.2,
        first_click_of_session=True,
        request_id="req-1",
        ip_hash="ffff",
        is_bot=False,
    )
    fields.update(overrides)
    return AnalyticsEvent(**fields)


# ============================================================================
# ANALYTICS
# ============================================================================


@pytest.mark.asyncio
async def test_send_analytics_event_posts_json_with_bearer(http_client, transport) -> None:
    accepted = await send_analytics_event(http_client, INGEST_URL, "secret-token", _event())

    assert accepted is True
    request = transport.requests[0]
    assert request.method == "POST"
    assert request.headers["authorization"] == "Bearer secret-token"
    assert request.headers["content-type"] == "application/json"
    body = json.loads(request.content)
    assert body["link_slug"] == "abc"
    assert body["occurred_at"] == "2026-01-02T03:04:05Z"


@pytest.mark.asyncio
async def test_rejected_event_is_not_raised(http_client, transport) -> None:
    transport.ingest_status = 503
    assert await send_analytics_event(http_client, INGEST_URL, "t", _event()) is False


@pytest.mark.asyncio
async def test_transport_error_becomes_dispatch_failure() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused")

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
        with pytest.raises(AnalyticsDispatchFailure):
            await send_analytics_event(client, INGEST_URL, "t", _event())


@pytest.mark.asyncio
async def test_failing_endpoint_does_not_block_the_others() -> None:
    received: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.test":
            raise httpx.ConnectError("Connection refused")
        received.append(str(request.url))
        return httpx.Response(202)

    settings = Settings(
        ANALYTICS_ENDPOINTS=["https://down.test/ingest", "https://up.test/ingest"],
        ANALYTICS_TOKEN="t",
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        dispatcher = TelemetryDispatcher(settings, client, HealthProber(client))
        await dispatcher.dispatch(_event())

    assert received == ["https://up.test/ingest"]


@pytest.mark.asyncio
async def test_dispatch_skips_analytics_without_token(http_client, transport) -> None:
    settings = Settings(ANALYTICS_ENDPOINTS=[INGEST_URL], ANALYTICS_TOKEN=None)
    dispatcher = TelemetryDispatcher(settings, http_client, HealthProber(http_client))

    await dispatcher.dispatch(_event())

    assert transport.requests == []


# ============================================================================
# REMOTE MUTATIONS
# ============================================================================


@pytest.mark.asyncio
async def test_mutation_client_posts_path_and_args(http_client, transport) -> None:
    client = RemoteMutationClient(http_client, MUTATION_URL + "/", "urlAnalytics:mutateUrlAnalytics", "s3cret")
    click = ClickEventSummary.from_event(_event(country="NL"))

    await client.record("link-1", "user-1", 200, "healthy", "req-1", click)

    request = transport.requests[0]
    assert str(request.url) == f"{MUTATION_URL}/api/mutation"
    body = json.loads(request.content)
    assert body["path"] == "urlAnalytics:mutateUrlAnalytics"
    assert body["format"] == "json"
    assert body["args"]["sharedSecret"] == "s3cret"
    assert body["args"]["urlId"] == "link-1"
    assert body["args"]["userId"] == "user-1"
    assert body["args"]["urlStatusCode"] == 200
    assert body["args"]["urlStatusMessage"] == "healthy"
    assert body["args"]["requestId"] == "req-1"
    assert body["args"]["clickEvent"]["slug"] == "abc"
    assert body["args"]["clickEvent"]["country"] == "NL"


@pytest.mark.asyncio
async def test_mutation_error_payload_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "error", "errorMessage": "bad secret"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = RemoteMutationClient(http, MUTATION_URL, "p", "wrong")
        with pytest.raises(RemoteMutationFailure, match="bad secret"):
            await client.record("link-1", "user-1", 200, "healthy", "req-1")


@pytest.mark.asyncio
async def test_mutation_http_error_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = RemoteMutationClient(http, MUTATION_URL, "p", "s")
        with pytest.raises(RemoteMutationFailure):
            await client.record("link-1", "user-1", 200, "healthy", "req-1")


# ============================================================================
# HEALTH TASKS
# ============================================================================


@pytest.mark.asyncio
async def test_check_health_probes_and_records(dispatcher: TelemetryDispatcher, transport) -> None:
    transport.head_status = 404
    task = HealthTask(destination="https://dst.example/page", link_id="link-1", user_id="user-1", request_id="r")

    result = await dispatcher.check_health(task)

    assert result.status is DestinationHealth.UNSTABLE
    assert [str(request.url) for request in transport.by_method("HEAD")] == ["https://dst.example/page"]
    [mutation] = transport.mutations
    assert mutation["args"]["urlStatusCode"] == 404
    assert mutation["args"]["urlStatusMessage"] == "unstable"
    assert "clickEvent" not in mutation["args"]


@pytest.mark.asyncio
async def test_dispatch_runs_analytics_and_health_together(dispatcher: TelemetryDispatcher, transport) -> None:
    task = HealthTask(destination="https://dst.example", link_id="link-1", user_id="user-1", request_id="r")

    await dispatcher.dispatch(_event(), task)

    assert len(transport.analytics_events) == 1
    assert len(transport.by_method("HEAD")) == 1
    assert len(transport.mutations) == 1


@pytest.mark.asyncio
async def test_dispatch_swallows_health_failures(dispatcher: TelemetryDispatcher, transport) -> None:
    transport.head_error = httpx.ConnectError("Connection refused")
    task = HealthTask(destination="https://dst.example", link_id="link-1", user_id="user-1", request_id="r")

    await dispatcher.dispatch(_event(), task)

    assert len(transport.analytics_events) == 1
    assert transport.mutations[0]["args"]["urlStatusMessage"] == "down"
