"""
Geo sync: refresh polygons of areas that are already in production.

Known areas get their geofence written straight through the commit engine's
geofence writer (no review, only geometry changes). Areas production has
never seen are not written here: their cities go to staging as pending rows
like any other new coverage.
"""
from __future__ import annotations
import logging
from collections import defaultdict
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_hub.core.errors import ExternalFetchError
from delivery_hub.core.telemetry import get_tracer
from delivery_hub.models.geo_area import GeoArea
from delivery_hub.models.geo_city import GeoCity
from delivery_hub.schemas.provider import ProviderCity
from delivery_hub.services.commit_engine import GeofenceUpdate, apply_geofence_updates
from delivery_hub.services.delta import city_candidate
from delivery_hub.services.geofence import GeofenceError, geofence_hash
from delivery_hub.services.operation_log import finish_operation, start_operation
from delivery_hub.services.progress import ProgressEvent, ProgressHub, progress_hub
from delivery_hub.services.provider_client import CoverageProvider
from delivery_hub.services.staging import create_staging_city


log = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@dataclass
class GeoSyncPlan:
    updates: list[GeofenceUpdate] = field(default_factory=list)
    unchanged: int = 0
    missing_geofence: list[str] = field(default_factory=list)
    # provider city id -> ids of areas production does not know yet
    new_areas: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class GeoSyncResult:
    batch_id: str
    updated: int = 0
    unchanged: int = 0
    missing_geofence: int = 0
    staged: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "missing_geofence": self.missing_geofence,
            "staged_cities": len(self.staged),
            "staged": self.staged,
        }


def plan_geo_sync(external: list[ProviderCity], production_hashes: dict[str, str | None]) -> GeoSyncPlan:
    plan = GeoSyncPlan()
    new_areas: dict[str, list[str]] = defaultdict(list)
    for city in external:
        for district in city.districts:
            for area in district.areas:
                try:
                    ghash = geofence_hash(area.geofence)
                except GeofenceError:
                    ghash = None
                if ghash is None:
                    plan.missing_geofence.append(area.id)

                if area.id not in production_hashes:
                    new_areas[city.id].append(area.id)
                elif ghash is None:
                    # never wipe a stored polygon because the provider sent a broken one
                    continue
                elif production_hashes[area.id] != ghash:
                    plan.updates.append(GeofenceUpdate(external_id=area.id, geofence=area.geofence, geofence_hash=ghash))
                else:
                    plan.unchanged += 1
    plan.new_areas = dict(new_areas)
    return plan


async def _production_hashes(db: AsyncSession) -> dict[str, str | None]:
    rows = (await db.execute(select(GeoArea.external_id, GeoArea.geofence_hash))).all()
    return {r.external_id: r.geofence_hash for r in rows}


async def run_geo_sync(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    provider: CoverageProvider,
    batch_id: str,
    actor: str = "internal",
    hub: ProgressHub = progress_hub,
) -> GeoSyncResult:
    result = GeoSyncResult(batch_id=batch_id)

    async with session_factory() as db:
        entry = await start_operation(db, operation_type="geo_sync", batch_id=batch_id, actor=actor)
        await db.commit()
    hub.publish(ProgressEvent(batch_id=batch_id, operation_type="geo_sync", phase="started"))

    with tracer.start_as_current_span("coverage.geo_sync") as span:
        span.set_attribute("coverage.batch_id", batch_id)
        try:
            external = await provider.fetch_cities()
            async with session_factory() as db:
                plan = plan_geo_sync(external, await _production_hashes(db))

            async with session_factory() as db:
                async with db.begin():
                    result.updated = await apply_geofence_updates(db, updates=plan.updates, actor=actor)

            by_id = {c.id: c for c in external}
            async with session_factory() as db:
                known = set((await db.execute(
                    select(GeoCity.external_id).where(GeoCity.external_id.in_(list(plan.new_areas)))
                )).scalars().all()) if plan.new_areas else set()
                for city_id, area_ids in sorted(plan.new_areas.items()):
                    city = by_id[city_id]
                    candidate = city_candidate(
                        city,
                        change_kind="changed" if city_id in known else "added",
                        summary={"new_area_ids": area_ids},
                    )
                    row = await create_staging_city(db, candidate=candidate, batch_id=batch_id, source="geo_sync")
                    result.staged.append({"id": row.id, "name": row.name, "new_areas": len(area_ids)})
                await db.commit()
        except Exception as e:
            if isinstance(e, ExternalFetchError):
                log.warning("geo_sync: fetch failed batch=%s: %s", batch_id, e.message)
                error = {"error": e.message, "code": e.code}
            else:
                log.exception("geo_sync: crashed batch=%s", batch_id)
                error = {"error": f"{type(e).__name__}: {e}"}
            async with session_factory() as db:
                await finish_operation(db, entry_id=entry.id, status="failed", details=error)
                await db.commit()
            hub.publish(ProgressEvent(batch_id=batch_id, operation_type="geo_sync", phase="failed", message=error["error"]))
            raise

        result.unchanged = plan.unchanged
        result.missing_geofence = len(plan.missing_geofence)
        span.set_attribute("coverage.updated", result.updated)

    async with session_factory() as db:
        await finish_operation(db, entry_id=entry.id, status="success", details={
            "updated": result.updated,
            "unchanged": result.unchanged,
            "staged_cities": len(result.staged),
            "missing_geofence": result.missing_geofence,
        })
        await db.commit()

    message = f"{result.updated} geofences updated, {len(result.staged)} cities staged"
    hub.publish(ProgressEvent(batch_id=batch_id, operation_type="geo_sync", phase="finished", message=message))
    log.info("geo_sync: batch=%s %s", batch_id, message)
    return result
