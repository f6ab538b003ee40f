from __future__ import annotations
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Protocol

import redis.asyncio as redis

from delivery_hub.core.config import settings
from delivery_hub.core.errors import WriteConflictError


log = logging.getLogger(__name__)

GUARDED_OPERATIONS = ("delta_check", "ai_import", "geo_sync", "commit")

# delete only if we still own the key
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class GuardToken:
    operation_type: str
    token: str


class OperationGuard(Protocol):
    async def acquire(self, operation_type: str) -> GuardToken:
        ...

    async def release(self, token: GuardToken) -> None:
        ...

    async def is_busy(self, operation_type: str) -> bool:
        ...


class LocalOperationGuard:
    """
    Single-process guard. Acquire never awaits between check and set, so it is
    atomic on one event loop.
    """

    def __init__(self):
        self._held: dict[str, str] = {}

    async def acquire(self, operation_type: str) -> GuardToken:
        if operation_type in self._held:
            raise WriteConflictError(operation_type)
        token = GuardToken(operation_type=operation_type, token=uuid.uuid4().hex)
        self._held[operation_type] = token.token
        return token

    async def release(self, token: GuardToken) -> None:
        if self._held.get(token.operation_type) == token.token:
            del self._held[token.operation_type]

    async def is_busy(self, operation_type: str) -> bool:
        return operation_type in self._held


class RedisOperationGuard:
    """
    Cross-process guard: SET NX with a TTL so a crashed holder cannot block
    the pipeline forever.
    """

    def __init__(self, redis_url: str | None = None, *, ttl_seconds: int, client: redis.Redis | None = None):
        self.r = client if client is not None else redis.from_url(redis_url, decode_responses=True)
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(operation_type: str) -> str:
        return f"coverage:single-flight:{operation_type}"

    async def acquire(self, operation_type: str) -> GuardToken:
        token = GuardToken(operation_type=operation_type, token=uuid.uuid4().hex)
        ok = await self.r.set(self._key(operation_type), token.token, nx=True, ex=self.ttl_seconds)
        if not ok:
            raise WriteConflictError(operation_type)
        return token

    async def release(self, token: GuardToken) -> None:
        released = await self.r.eval(_RELEASE_SCRIPT, 1, self._key(token.operation_type), token.token)
        if not released:
            log.warning("guard: %s lock expired before release", token.operation_type)

    async def is_busy(self, operation_type: str) -> bool:
        return bool(await self.r.exists(self._key(operation_type)))

    async def aclose(self) -> None:
        await self.r.aclose()


@asynccontextmanager
async def hold(guard: OperationGuard, operation_type: str) -> AsyncIterator[GuardToken]:
    token = await guard.acquire(operation_type)
    try:
        yield token
    finally:
        await guard.release(token)


def build_guard(backend: str | None = None) -> OperationGuard:
    if (backend or settings.guard_backend) == "redis":
        return RedisOperationGuard(settings.redis_url, ttl_seconds=settings.guard_ttl_seconds)
    return LocalOperationGuard()


_guard: OperationGuard | None = None


def get_guard() -> OperationGuard:
    global _guard
    if _guard is None:
        _guard = build_guard()
    return _guard
