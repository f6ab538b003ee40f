import fakeredis.aioredis
import pytest

from delivery_hub.core.config import Settings
from delivery_hub.core.errors import WriteConflictError
from delivery_hub.services.single_flight import LocalOperationGuard, RedisOperationGuard, build_guard, hold


@pytest.mark.asyncio
async def test_second_acquire_is_busy_until_release():
    guard = LocalOperationGuard()
    token = await guard.acquire("commit")

    with pytest.raises(WriteConflictError) as exc:
        await guard.acquire("commit")
    assert exc.value.status_code == 409
    assert exc.value.operation_type == "commit"
    assert await guard.is_busy("commit")

    await guard.release(token)
    assert not await guard.is_busy("commit")
    await guard.release(await guard.acquire("commit"))


@pytest.mark.asyncio
async def test_operation_types_do_not_block_each_other():
    guard = LocalOperationGuard()
    async with hold(guard, "delta_check"):
        async with hold(guard, "commit"):
            assert await guard.is_busy("delta_check")
            assert await guard.is_busy("commit")
    assert not await guard.is_busy("delta_check")


@pytest.mark.asyncio
async def test_hold_releases_on_error():
    guard = LocalOperationGuard()
    with pytest.raises(RuntimeError):
        async with hold(guard, "geo_sync"):
            raise RuntimeError("boom")
    assert not await guard.is_busy("geo_sync")


@pytest.mark.asyncio
async def test_stale_token_cannot_release_a_new_holder():
    guard = LocalOperationGuard()
    first = await guard.acquire("commit")
    await guard.release(first)
    second = await guard.acquire("commit")

    await guard.release(first)
    assert await guard.is_busy("commit")
    await guard.release(second)


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


def _redis_guard(server, ttl_seconds=30):
    client = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
    return RedisOperationGuard(ttl_seconds=ttl_seconds, client=client)


@pytest.mark.asyncio
async def test_redis_guard_is_shared_between_processes(redis_server):
    # two guards on one server stand in for the API process and a worker
    api_guard, worker_guard = _redis_guard(redis_server), _redis_guard(redis_server)

    async with hold(api_guard, "commit") as token:
        with pytest.raises(WriteConflictError):
            await worker_guard.acquire("commit")
        assert await worker_guard.is_busy("commit")
        assert 0 < await api_guard.r.ttl("coverage:single-flight:commit") <= 30
        assert await api_guard.r.get("coverage:single-flight:commit") == token.token

        # other operation types are independent
        await worker_guard.release(await worker_guard.acquire("delta_check"))

    assert not await worker_guard.is_busy("commit")
    await worker_guard.release(await worker_guard.acquire("commit"))


@pytest.mark.asyncio
async def test_redis_release_leaves_a_newer_holder_alone(redis_server):
    first_guard, second_guard = _redis_guard(redis_server), _redis_guard(redis_server)
    first = await first_guard.acquire("commit")

    # the first holder's lock expires and someone else takes it
    await first_guard.r.delete("coverage:single-flight:commit")
    second = await second_guard.acquire("commit")

    await first_guard.release(first)
    assert await second_guard.is_busy("commit")

    await second_guard.release(second)
    assert not await first_guard.is_busy("commit")


def test_shipped_default_is_the_redis_guard(monkeypatch):
    monkeypatch.delenv("GUARD_BACKEND", raising=False)
    assert Settings(_env_file=None).guard_backend == "redis"
    assert isinstance(build_guard("redis"), RedisOperationGuard)
    assert isinstance(build_guard("local"), LocalOperationGuard)
