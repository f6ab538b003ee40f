"""
Operation API of the coverage pipeline.

Every outward operation goes through `CoveragePipeline`: long-running ones
(delta check, AI import, geo sync, commit) under the single-flight guard,
review actions and reads directly. Callers that want to answer before the work
is done (the HTTP layer) `reserve` the guard first and hand the token to the
operation, so a busy pipeline is reported immediately.
"""
from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_hub.core.config import settings
from delivery_hub.core.db import SessionLocal
from delivery_hub.core.errors import NotFoundError
from delivery_hub.core.ids import new_batch_id
from delivery_hub.models.staging import StagingCity
from delivery_hub.services import operation_log, staging
from delivery_hub.services.ai_import import AiImportResult, run_ai_import
from delivery_hub.services.area_classifier import AreaClassifier, get_classifier
from delivery_hub.services.commit_engine import CommitEngine, CommitResult
from delivery_hub.services.delta import DeltaResult, compute_delta
from delivery_hub.services.geo_sync import GeoSyncResult, run_geo_sync
from delivery_hub.services.pipeline_status import pipeline_status
from delivery_hub.services.progress import ProgressEvent, ProgressHub, progress_hub
from delivery_hub.services.provider_client import CoverageProvider, get_provider
from delivery_hub.services.single_flight import GuardToken, OperationGuard, get_guard, hold


log = logging.getLogger(__name__)


class CoveragePipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        guard: OperationGuard,
        provider_factory: Callable[[], CoverageProvider] = get_provider,
        classifier_factory: Callable[[], AreaClassifier] = get_classifier,
        hub: ProgressHub = progress_hub,
        commit_engine_factory: Callable[..., CommitEngine] = CommitEngine,
    ):
        self.session_factory = session_factory
        self.guard = guard
        self.provider_factory = provider_factory
        self.classifier_factory = classifier_factory
        self.hub = hub
        self.commit_engine_factory = commit_engine_factory
        self._cancel: dict[str, asyncio.Event] = {}

    # guard

    async def reserve(self, operation_type: str, *, batch_id: str | None = None) -> tuple[GuardToken, str]:
        """Take the guard now (raises WriteConflictError when busy) and announce the batch."""
        token = await self.guard.acquire(operation_type)
        batch_id = batch_id or new_batch_id()
        self.hub.publish(ProgressEvent(batch_id=batch_id, operation_type=operation_type, phase="started", message="queued"))
        return token, batch_id

    @asynccontextmanager
    async def _guarded(self, operation_type: str, token: GuardToken | None) -> AsyncIterator[None]:
        if token is None:
            async with hold(self.guard, operation_type):
                yield
            return
        try:
            yield
        finally:
            await self.guard.release(token)

    async def _closing(self, resource) -> None:
        aclose = getattr(resource, "aclose", None)
        if aclose is not None:
            await aclose()

    # long-running operations

    async def check_delta(self, *, batch_id: str | None = None, actor: str = "internal", token: GuardToken | None = None) -> DeltaResult:
        batch_id = batch_id or new_batch_id()
        async with self._guarded("delta_check", token):
            provider = self.provider_factory()
            try:
                return await compute_delta(self.session_factory, provider=provider, batch_id=batch_id, actor=actor, hub=self.hub)
            finally:
                await self._closing(provider)

    async def start_ai_import(self, *, batch_id: str | None = None, actor: str = "internal", token: GuardToken | None = None) -> AiImportResult:
        batch_id = batch_id or new_batch_id()
        async with self._guarded("ai_import", token):
            provider = self.provider_factory()
            classifier = self.classifier_factory()
            try:
                return await run_ai_import(
                    self.session_factory,
                    provider=provider,
                    classifier=classifier,
                    batch_id=batch_id,
                    actor=actor,
                    hub=self.hub,
                )
            finally:
                await self._closing(classifier)
                await self._closing(provider)

    async def run_geo_sync(self, *, batch_id: str | None = None, actor: str = "internal", token: GuardToken | None = None) -> GeoSyncResult:
        batch_id = batch_id or new_batch_id()
        async with self._guarded("geo_sync", token):
            provider = self.provider_factory()
            try:
                return await run_geo_sync(self.session_factory, provider=provider, batch_id=batch_id, actor=actor, hub=self.hub)
            finally:
                await self._closing(provider)

    async def approved_city_ids(self) -> list[str]:
        async with self.session_factory() as db:
            rows = (await db.execute(select(StagingCity.id).where(StagingCity.status == "approved"))).scalars().all()
        return list(rows)

    async def commit(
        self,
        city_ids: list[str] | None = None,
        *,
        batch_id: str | None = None,
        actor: str = "internal",
        token: GuardToken | None = None,
    ) -> CommitResult:
        """Commit the given staging cities, or every approved one when no ids are given."""
        batch_id = batch_id or new_batch_id()
        cancel = self._cancel.setdefault(batch_id, asyncio.Event())
        try:
            async with self._guarded("commit", token):
                ids = city_ids if city_ids is not None else await self.approved_city_ids()
                engine = self.commit_engine_factory(self.session_factory, hub=self.hub, actor=actor)
                return await engine.run(ids, batch_id=batch_id, cancel=cancel)
        finally:
            self._cancel.pop(batch_id, None)

    def cancel(self, batch_id: str) -> bool:
        # honoured between cities; the city being written is finished first
        event = self._cancel.get(batch_id)
        if event is None:
            return False
        event.set()
        log.info("pipeline: cancel requested batch=%s", batch_id)
        return True

    # review

    async def approve(self, city_id: str, *, actor: str = "internal") -> dict:
        async with self.session_factory() as db:
            city = await staging.approve(db, city_id=city_id, actor=actor)
            await db.commit()
            return staging.serialize_staging_city(city)

    async def reject(self, city_id: str, *, actor: str = "internal") -> dict:
        async with self.session_factory() as db:
            city = await staging.reject(db, city_id=city_id, actor=actor)
            await db.commit()
            return staging.serialize_staging_city(city)

    async def approve_many(self, city_ids: list[str], *, actor: str = "internal") -> list[dict]:
        async with self.session_factory() as db:
            cities = await staging.approve_many(db, city_ids=city_ids, actor=actor)
            await db.commit()
            return [staging.serialize_staging_city(c) for c in cities]

    # reads

    async def get_pipeline_status(self) -> dict:
        async with self.session_factory() as db:
            status = await pipeline_status(db)
        status["busy"] = {op: await self.guard.is_busy(op) for op in ("delta_check", "ai_import", "geo_sync", "commit")}
        return status

    async def get_operation_log(self, limit: int = 20, *, operation_type: str | None = None) -> list[dict]:
        async with self.session_factory() as db:
            entries = await operation_log.list_operations(db, limit=limit, operation_type=operation_type)
            return [operation_log.serialize_operation(e) for e in entries]

    async def get_batch(self, batch_id: str) -> dict:
        async with self.session_factory() as db:
            entries = await operation_log.list_batch(db, batch_id=batch_id)
        latest = self.hub.latest(batch_id)
        if not entries and latest is None:
            raise NotFoundError(f"batch {batch_id} not found")
        if latest is not None:
            progress = latest.to_dict()
        else:
            # evicted from the hub: the log keeps the last mirrored payload
            progress = next((e.details["progress"] for e in reversed(entries) if (e.details or {}).get("progress")), None)
        return {
            "batch_id": batch_id,
            "entries": [operation_log.serialize_operation(e) for e in entries],
            "progress": progress,
        }

    async def stale_operations(self) -> list[dict]:
        async with self.session_factory() as db:
            entries = await operation_log.find_stale_operations(db, older_than=timedelta(minutes=settings.stale_operation_minutes))
            return [operation_log.serialize_operation(e) for e in entries]

    async def list_staging(self, status: str | None = None) -> list[dict]:
        async with self.session_factory() as db:
            return [staging.serialize_staging_city(c) for c in await staging.list_by_status(db, status=status)]

    async def get_staging_city(self, city_id: str) -> dict:
        async with self.session_factory() as db:
            city = await staging.get_staging_city(db, city_id=city_id)
            return staging.serialize_tree(await staging.load_tree(db, city=city))


_pipeline: CoveragePipeline | None = None


def get_pipeline() -> CoveragePipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = CoveragePipeline(SessionLocal, guard=get_guard())
    return _pipeline
