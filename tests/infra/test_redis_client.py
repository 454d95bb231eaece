# tests/infra/test_redis_client.py
"""
Тесты для клиента Redis.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from returnly.infra.redis_client import RedisClient


class TestRedisClient:
    """Тесты для RedisClient."""

    @pytest.fixture
    def redis_client(self) -> RedisClient:
        # Сбрасываем синглтон для каждого теста
        RedisClient._instance = None
        RedisClient._client = None
        return RedisClient()

    @pytest.fixture
    def connected(self, redis_client: RedisClient) -> AsyncMock:
        mock_redis = AsyncMock()
        redis_client._client = mock_redis
        return mock_redis

    def test_singleton(self) -> None:
        RedisClient._instance = None
        assert RedisClient() is RedisClient()

    def test_client_not_initialized(self, redis_client: RedisClient) -> None:
        with pytest.raises(RuntimeError, match="Redis клиент не инициализирован"):
            _ = redis_client.client

    def test_make_key(self, redis_client: RedisClient) -> None:
        assert redis_client._make_key("driver:last_seen:d1") == "returnly:driver:last_seen:d1"

    @pytest.mark.asyncio
    async def test_connect(self, redis_client: RedisClient) -> None:
        mock_redis = AsyncMock()
        mock_redis.ping = AsyncMock(return_value=True)

        with patch("redis.asyncio.from_url", return_value=mock_redis) as from_url:
            await redis_client.connect(url="redis://localhost:6379/0", max_connections=10, namespace="test")

        assert redis_client.client is mock_redis
        assert redis_client._make_key("k") == "test:k"
        assert from_url.call_args.kwargs["decode_responses"] is True
        mock_redis.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_already_connected(self, redis_client: RedisClient, connected) -> None:
        with patch("redis.asyncio.from_url") as mock_from_url:
            await redis_client.connect(url="redis://localhost:6379/0")

        mock_from_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_disconnect(self, redis_client: RedisClient, connected) -> None:
        await redis_client.disconnect()

        connected.aclose.assert_awaited_once()
        assert redis_client._client is None

    @pytest.mark.asyncio
    async def test_disconnect_when_not_connected(self, redis_client: RedisClient) -> None:
        await redis_client.disconnect()

    @pytest.mark.asyncio
    async def test_set_with_ttl(self, redis_client: RedisClient, connected) -> None:
        connected.set.return_value = True

        assert await redis_client.set("key", "value", ttl=60) is True
        connected.set.assert_awaited_once_with("returnly:key", "value", ex=60)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw,expected", [(1, True), (0, False)])
    async def test_exists(self, redis_client: RedisClient, connected, raw: int, expected: bool) -> None:
        connected.exists.return_value = raw
        assert await redis_client.exists("key") is expected

    @pytest.mark.asyncio
    async def test_geoadd(self, redis_client: RedisClient, connected) -> None:
        connected.geoadd.return_value = 1

        await redis_client.geoadd("drivers:locations", -122.4, 37.7, "driver-1")

        connected.geoadd.assert_awaited_once_with("returnly:drivers:locations", (-122.4, 37.7, "driver-1"))

    @pytest.mark.asyncio
    async def test_geopos(self, redis_client: RedisClient, connected) -> None:
        connected.geopos.return_value = [(-122.4, 37.7)]

        assert await redis_client.geopos("drivers:locations", "driver-1") == (-122.4, 37.7)

    @pytest.mark.asyncio
    async def test_geopos_missing_member(self, redis_client: RedisClient, connected) -> None:
        connected.geopos.return_value = [None]

        assert await redis_client.geopos("drivers:locations", "driver-1") is None

    @pytest.mark.asyncio
    async def test_georem(self, redis_client: RedisClient, connected) -> None:
        connected.zrem.return_value = 1

        assert await redis_client.georem("drivers:locations", "driver-1") == 1
        connected.zrem.assert_awaited_once_with("returnly:drivers:locations", "driver-1")

    @pytest.mark.asyncio
    async def test_health_check(self, redis_client: RedisClient, connected) -> None:
        connected.ping.return_value = True
        assert await redis_client.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_not_connected(self, redis_client: RedisClient) -> None:
        assert await redis_client.health_check() is False
