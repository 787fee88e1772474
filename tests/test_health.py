"""Health endpoint tests."""

from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from redirector.enums import HealthStatus


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == HealthStatus.HEALTHY.value
    assert data["cache"] == HealthStatus.HEALTHY.value


@pytest.mark.asyncio
async def test_health_check_reports_unreachable_redis(client: AsyncClient, service_manager) -> None:
    service_manager.cache_writer.ping = AsyncMock(side_effect=RedisConnectionError("Connection refused"))

    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "unhealthy", "cache": "unhealthy"}
