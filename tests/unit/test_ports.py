"""Tests for port allocation backends."""

import asyncio
import json

import pytest

from launchpad.errors import PortExhaustion
from launchpad.ports import (
    PORTS_HASH,
    FilePortAllocator,
    RedisPortAllocator,
    create_port_allocator,
    first_free_port,
    staging_key,
)


class TestFirstFreePort:
    def test_lowest_unused_port(self):
        assert first_free_port({"a": 4000, "b": 4002}, 4000, 10) == 4001  # noqa: PLR2004

    def test_exhaustion(self):
        with pytest.raises(PortExhaustion):
            first_free_port({"a": 4000, "b": 4001}, 4000, 2)


class TestFilePortAllocator:
    @pytest.fixture
    def allocator(self, settings):
        return FilePortAllocator(settings=settings)

    @pytest.mark.asyncio
    async def test_reserve_is_stable_per_key(self, allocator, settings):
        first = await allocator.reserve("app")
        again = await allocator.reserve("app")
        other = await allocator.reserve("other")

        assert first == again == settings.base_port
        assert other == settings.base_port + 1

    @pytest.mark.asyncio
    async def test_released_port_is_reused(self, allocator, settings):
        await allocator.reserve("a")
        await allocator.reserve("b")

        assert await allocator.release("a") is True
        assert await allocator.release("a") is False
        assert await allocator.reserve("c") == settings.base_port

    @pytest.mark.asyncio
    async def test_map_is_persisted_as_json(self, allocator, settings):
        await allocator.reserve("app")

        data = json.loads(allocator.path.read_text())
        assert data == {"app": settings.base_port}
        # Only the map and its lock file remain; no temp files
        assert sorted(p.name for p in allocator.path.parent.glob("*port-map*")) == [
            "port-map.json",
            "port-map.json.lock",
        ]

    @pytest.mark.asyncio
    async def test_state_survives_new_instance(self, allocator, settings):
        await allocator.reserve("app")

        reloaded = FilePortAllocator(settings=settings)

        assert await reloaded.lookup("app") == settings.base_port
        assert await reloaded.lookup("missing") is None

    @pytest.mark.asyncio
    async def test_exhaustion(self, settings):
        allocator = FilePortAllocator(settings=settings.model_copy(update={"port_range": 1}))
        await allocator.reserve("a")

        with pytest.raises(PortExhaustion):
            await allocator.reserve("b")

    @pytest.mark.asyncio
    async def test_promote_moves_staging_port(self, allocator, settings):
        old = await allocator.reserve("app")
        new = await allocator.reserve(staging_key("app"))

        promoted = await allocator.promote(staging_key("app"), "app")

        assert promoted == new
        assert await allocator.all() == {"app": new}
        assert await allocator.reserve("other") == old

    @pytest.mark.asyncio
    async def test_promote_unknown_key(self, allocator):
        with pytest.raises(KeyError):
            await allocator.promote("missing", "app")

    @pytest.mark.asyncio
    async def test_concurrent_reservations_get_distinct_ports(self, allocator):
        ports = await asyncio.gather(*(allocator.reserve(f"p{i}") for i in range(10)))

        assert len(set(ports)) == 10  # noqa: PLR2004


class TestRedisPortAllocator:
    @pytest.fixture
    def allocator(self, fake_redis, settings):
        return RedisPortAllocator(fake_redis, settings)

    @pytest.mark.asyncio
    async def test_reserve_release_lookup(self, allocator, fake_redis, settings):
        port = await allocator.reserve("app")

        assert port == settings.base_port
        assert await allocator.reserve("app") == port
        assert await allocator.lookup("app") == port
        assert await fake_redis.hget(PORTS_HASH, "app") == str(port)

        assert await allocator.release("app") is True
        assert await allocator.lookup("app") is None

    @pytest.mark.asyncio
    async def test_promote(self, allocator):
        await allocator.reserve("app")
        staged = await allocator.reserve(staging_key("app"))

        assert await allocator.promote(staging_key("app"), "app") == staged
        assert await allocator.all() == {"app": staged}

    @pytest.mark.asyncio
    async def test_exhaustion(self, fake_redis, settings):
        allocator = RedisPortAllocator(fake_redis, settings.model_copy(update={"port_range": 1}))
        await allocator.reserve("a")

        with pytest.raises(PortExhaustion):
            await allocator.reserve("b")


class TestCreatePortAllocator:
    def test_file_backend_by_default(self, settings):
        assert isinstance(create_port_allocator(settings), FilePortAllocator)

    def test_redis_backend(self, settings, fake_redis):
        redis_settings = settings.model_copy(update={"port_backend": "redis"})

        assert isinstance(create_port_allocator(redis_settings, fake_redis), RedisPortAllocator)

    def test_redis_backend_requires_client(self, settings):
        with pytest.raises(ValueError):
            create_port_allocator(settings.model_copy(update={"port_backend": "redis"}))
