"""Port allocation for containerized deployments."""

import asyncio
from contextlib import contextmanager
import fcntl
import json
import os
from pathlib import Path
import tempfile
from typing import Protocol

import redis.asyncio as redis
from redis.exceptions import WatchError
import structlog

from launchpad.config import Settings, get_settings
from launchpad.errors import PortExhaustion

logger = structlog.get_logger()

PORTS_HASH = "ports:allocations"


def staging_key(project: str) -> str:
    """Key holding a new deployment's port until it passes its health check."""
    return f"{project}.next"


class PortAllocator(Protocol):
    """Key -> port reservations drawn from a base offset."""

    async def reserve(self, key: str) -> int: ...

    async def release(self, key: str) -> bool: ...

    async def lookup(self, key: str) -> int | None: ...

    async def promote(self, source: str, target: str) -> int: ...

    async def all(self) -> dict[str, int]: ...


def first_free_port(allocations: dict[str, int], base_port: int, port_range: int) -> int:
    used = set(allocations.values())
    for port in range(base_port, base_port + port_range):
        if port not in used:
            return port
    raise PortExhaustion(
        f"No free port in {base_port}-{base_port + port_range - 1} ({len(used)} reserved)"
    )


class FilePortAllocator:
    """Port map persisted as a JSON file.

    Every mutation is a read-modify-write under an exclusive flock on a
    sidecar lock file, and the map is replaced atomically via rename, so
    concurrent writers (threads or processes) never see a torn file.
    """

    def __init__(self, path: str | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.path = Path(path or self.settings.port_map_file)
        self._lock_path = self.path.with_name(f"{self.path.name}.lock")
        self._lock = asyncio.Lock()

    @contextmanager
    def _locked(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_path, "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def _load(self) -> dict[str, int]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw or "{}")
        except ValueError as e:
            logger.error("port_map_corrupt", path=str(self.path), error=str(e))
            raise
        return {key: int(port) for key, port in data.items()}

    def _save(self, allocations: dict[str, int]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(allocations, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _reserve(self, key: str) -> int:
        with self._locked():
            allocations = self._load()
            if key in allocations:
                return allocations[key]
            port = first_free_port(allocations, self.settings.base_port, self.settings.port_range)
            allocations[key] = port
            self._save(allocations)
            return port

    def _release(self, key: str) -> bool:
        with self._locked():
            allocations = self._load()
            if key not in allocations:
                return False
            del allocations[key]
            self._save(allocations)
            return True

    def _promote(self, source: str, target: str) -> int:
        with self._locked():
            allocations = self._load()
            if source not in allocations:
                raise KeyError(source)
            allocations[target] = allocations.pop(source)
            self._save(allocations)
            return allocations[target]

    def _all(self) -> dict[str, int]:
        with self._locked():
            return self._load()

    async def _call(self, func, *args):
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    async def reserve(self, key: str) -> int:
        """Port already held by ``key``, or the first free one at or above the base."""
        port = await self._call(self._reserve, key)
        logger.info("port_reserved", key=key, port=port)
        return port

    async def release(self, key: str) -> bool:
        released = await self._call(self._release, key)
        if released:
            logger.info("port_released", key=key)
        return released

    async def lookup(self, key: str) -> int | None:
        return (await self._call(self._all)).get(key)

    async def promote(self, source: str, target: str) -> int:
        """Move ``source``'s port to ``target``, freeing target's previous port."""
        port = await self._call(self._promote, source, target)
        logger.info("port_promoted", source=source, target=target, port=port)
        return port

    async def all(self) -> dict[str, int]:
        return await self._call(self._all)


class RedisPortAllocator:
    """Port map kept in a Redis hash; mutations run in WATCH/MULTI transactions."""

    def __init__(self, redis_client: redis.Redis, settings: Settings | None = None):
        self.redis = redis_client
        self.settings = settings or get_settings()

    async def _snapshot(self, pipe) -> dict[str, int]:
        data = await pipe.hgetall(PORTS_HASH)
        return {_text(key): int(port) for key, port in data.items()}

    async def reserve(self, key: str) -> int:
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(PORTS_HASH)
                    allocations = await self._snapshot(pipe)
                    if key in allocations:
                        await pipe.reset()
                        return allocations[key]
                    port = first_free_port(
                        allocations, self.settings.base_port, self.settings.port_range
                    )
                    pipe.multi()
                    pipe.hset(PORTS_HASH, key, port)
                    await pipe.execute()
                    logger.info("port_reserved", key=key, port=port)
                    return port
                except WatchError:
                    continue

    async def release(self, key: str) -> bool:
        released = await self.redis.hdel(PORTS_HASH, key) > 0
        if released:
            logger.info("port_released", key=key)
        return released

    async def lookup(self, key: str) -> int | None:
        port = await self.redis.hget(PORTS_HASH, key)
        return int(port) if port is not None else None

    async def promote(self, source: str, target: str) -> int:
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(PORTS_HASH)
                    port = await pipe.hget(PORTS_HASH, source)
                    if port is None:
                        await pipe.reset()
                        raise KeyError(source)
                    pipe.multi()
                    pipe.hset(PORTS_HASH, target, int(port))
                    pipe.hdel(PORTS_HASH, source)
                    await pipe.execute()
                    logger.info("port_promoted", source=source, target=target, port=int(port))
                    return int(port)
                except WatchError:
                    continue

    async def all(self) -> dict[str, int]:
        data = await self.redis.hgetall(PORTS_HASH)
        return {_text(key): int(port) for key, port in data.items()}


def _text(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


def create_port_allocator(
    settings: Settings | None = None, redis_client: redis.Redis | None = None
) -> PortAllocator:
    settings = settings or get_settings()
    if settings.port_backend == "redis":
        if redis_client is None:
            raise ValueError("Redis port backend requires a redis client")
        return RedisPortAllocator(redis_client, settings)
    return FilePortAllocator(settings=settings)
