import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from worker.celery_app import celery
from delivery_hub.core.config import settings
from delivery_hub.core.errors import WriteConflictError
import delivery_hub.models  # noqa: F401  # ensures Models are registered
from delivery_hub.services.operation_log import find_stale_operations
from delivery_hub.services.pipeline import CoveragePipeline
from delivery_hub.services.single_flight import build_guard


log = logging.getLogger(__name__)


def require_shared_guard() -> None:
    # an in-process guard cannot see runs started by the API or by other workers
    if settings.guard_backend != "redis":
        raise RuntimeError(f"worker tasks need guard_backend='redis', got {settings.guard_backend!r}")


@asynccontextmanager
async def _task_pipeline():
    require_shared_guard()
    # every task runs on its own event loop, so engine and guard are per task
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    guard = build_guard()
    try:
        yield CoveragePipeline(Session, guard=guard)
    finally:
        aclose = getattr(guard, "aclose", None)
        if aclose is not None:
            await aclose()
        await engine.dispose()


async def _run_delta_check() -> dict:
    async with _task_pipeline() as pipeline:
        try:
            result = await pipeline.check_delta(actor="worker")
        except WriteConflictError:
            log.info("delta_check: skipped, another run is in flight")
            return {"skipped": "busy"}
    return {"summary": result.summary(), "staged": len(result.staged)}


async def _commit_approved() -> dict:
    async with _task_pipeline() as pipeline:
        try:
            result = await pipeline.commit(actor="worker")
        except WriteConflictError:
            log.info("commit: skipped, another run is in flight")
            return {"skipped": "busy"}
    return result.to_dict()


async def _report_stale_operations() -> int:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    try:
        async with Session() as db:
            stale = await find_stale_operations(db, older_than=timedelta(minutes=settings.stale_operation_minutes))
    finally:
        await engine.dispose()

    for entry in stale:
        log.warning(
            "operation_log: %s %s batch=%s still started since %s",
            entry.operation_type, entry.id, entry.batch_id, entry.started_at.isoformat(),
        )
    return len(stale)


@celery.task(name="worker.tasks.run_delta_check")
def run_delta_check() -> dict:
    return asyncio.run(_run_delta_check())


@celery.task(name="worker.tasks.commit_approved")
def commit_approved() -> dict:
    return asyncio.run(_commit_approved())


@celery.task(name="worker.tasks.report_stale_operations")
def report_stale_operations() -> int:
    return asyncio.run(_report_stale_operations())


if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    print(asyncio.run(_run_delta_check()))
