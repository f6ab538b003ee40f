"""
Commit engine: the only writer of production and of the snapshot.

Approved staging cities are committed one at a time, in name order, each in
its own transaction. A city that keeps failing is recorded and skipped; it
never blocks or rolls back the others.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_hub.core.config import settings
from delivery_hub.core.errors import InvalidTransitionError, NotFoundError
from delivery_hub.core.ids import slugify
from delivery_hub.core.telemetry import get_tracer
from delivery_hub.models.base import utcnow
from delivery_hub.models.geo_area import GeoArea
from delivery_hub.models.geo_city import GeoCity
from delivery_hub.models.geo_district import GeoDistrict
from delivery_hub.models.staging import StagingCity
from delivery_hub.services.operation_log import finish_operation, start_operation, update_progress
from delivery_hub.services.progress import ProgressEvent, ProgressHub, progress_hub
from delivery_hub.services.retry import compute_backoff_seconds, is_transient
from delivery_hub.services.snapshot import SnapshotArea, replace_city_snapshot, update_snapshot_geofence
from delivery_hub.services.staging import load_tree, mark_committed


log = logging.getLogger(__name__)
tracer = get_tracer(__name__)

COMMITTABLE_STATUSES = ("approved", "committed")

CityWriter = Callable[..., Awaitable[dict]]


@dataclass(frozen=True)
class CommitProgress:
    current: int
    total: int
    current_city_name: str | None
    retry_attempt: int | None = None
    retry_max: int | None = None


@dataclass
class CommitResult:
    batch_id: str
    committed: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)
    cancelled: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "ok": self.ok,
            "committed": self.committed,
            "failed": self.failed,
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True)
class GeofenceUpdate:
    external_id: str
    geofence: dict | None
    geofence_hash: str | None


async def _upsert(db: AsyncSession, model, *, external_id: str, values: dict[str, Any]):
    # select-then-write keeps the upsert portable; the single-flight guard rules out racing commits
    row = (await db.execute(select(model).where(model.external_id == external_id))).scalar_one_or_none()
    if row is None:
        row = model(external_id=external_id, **values)
        db.add(row)
        await db.flush()
        return row, True
    for k, v in values.items():
        if getattr(row, k) != v:
            setattr(row, k, v)
    return row, False


async def write_city_to_production(db: AsyncSession, *, staging_city: StagingCity, actor: str) -> dict:
    """
    Upsert the staged city tree by external id, deactivate what the provider no
    longer lists for the city, replace the city's snapshot slice and mark the
    staging row committed. Safe to run again for a committed city.
    """
    tree = await load_tree(db, city=staging_city)
    active = staging_city.change_kind != "removed"
    now = utcnow()

    city, _ = await _upsert(db, GeoCity, external_id=staging_city.external_id, values={
        "name": staging_city.name,
        "slug": slugify(staging_city.name),
        "country_code": staging_city.country_code,
        "is_delivery": active,
        "updated_by": actor,
    })
    if city.created_by is None:
        city.created_by = actor

    created = updated = 0
    district_ids: list[str] = []
    area_ids: list[str] = []
    snapshot_areas: list[SnapshotArea] = []

    for s_district, s_areas in tree.districts:
        district, _ = await _upsert(db, GeoDistrict, external_id=s_district.external_id, values={
            "city_id": city.id,
            "name": s_district.name,
            "slug": slugify(s_district.name),
            "is_delivery": True,
            "updated_by": actor,
        })
        s_district.committed_district_id = district.id
        district_ids.append(s_district.external_id)

        for s_area in s_areas:
            values = {
                "district_id": district.id,
                "city_id": city.id,
                "name": s_area.name,
                "slug": slugify(s_area.name),
                "is_delivery": s_area.is_delivery,
                "updated_by": actor,
            }
            # a missing or unreadable staged polygon keeps the stored one
            if s_area.geofence_hash is not None:
                values.update(geofence=s_area.geofence, geofence_hash=s_area.geofence_hash)
            area, was_created = await _upsert(db, GeoArea, external_id=s_area.external_id, values=values)
            if was_created:
                area.imported_at = now
                area.created_by = actor
                created += 1
            else:
                updated += 1
            s_area.committed_area_id = area.id
            area_ids.append(s_area.external_id)
            snapshot_areas.append(SnapshotArea(
                external_id=s_area.external_id,
                name=s_area.name,
                display_name=s_area.original_name,
                city_external_id=staging_city.external_id,
                city_name=staging_city.name,
                district_external_id=s_district.external_id,
                district_name=s_district.name,
                country_code=staging_city.country_code,
                geofence=area.geofence,
                geofence_hash=area.geofence_hash,
                is_active=s_area.is_delivery,
            ))

    await db.flush()

    stale_areas = update(GeoArea).where(GeoArea.city_id == city.id, GeoArea.is_delivery.is_(True))
    if area_ids:
        stale_areas = stale_areas.where(GeoArea.external_id.not_in(area_ids))
    deactivated = (await db.execute(
        stale_areas.values(is_delivery=False, updated_by=actor).execution_options(synchronize_session=False)
    )).rowcount or 0

    stale_districts = update(GeoDistrict).where(GeoDistrict.city_id == city.id, GeoDistrict.is_delivery.is_(True))
    if district_ids:
        stale_districts = stale_districts.where(GeoDistrict.external_id.not_in(district_ids))
    await db.execute(stale_districts.values(is_delivery=False, updated_by=actor).execution_options(synchronize_session=False))

    await replace_city_snapshot(db, city_external_id=staging_city.external_id, areas=snapshot_areas)
    await mark_committed(db, city=staging_city, committed_city_id=city.id)

    return {
        "production_city_id": city.id,
        "areas": len(area_ids),
        "areas_created": created,
        "areas_updated": updated,
        "areas_deactivated": int(deactivated),
    }


async def apply_geofence_updates(db: AsyncSession, *, updates: list[GeofenceUpdate], actor: str) -> int:
    """Geo sync path: refresh polygons of areas already in production, plus their snapshot rows."""
    applied = 0
    for u in updates:
        area = (await db.execute(select(GeoArea).where(GeoArea.external_id == u.external_id))).scalar_one_or_none()
        if area is None:
            continue
        area.geofence = u.geofence
        area.geofence_hash = u.geofence_hash
        area.updated_by = actor
        await update_snapshot_geofence(db, external_id=u.external_id, geofence=u.geofence, geofence_hash=u.geofence_hash)
        applied += 1
    await db.flush()
    return applied


class CommitEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        backoff_cap_seconds: float | None = None,
        writer: CityWriter = write_city_to_production,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        hub: ProgressHub = progress_hub,
        actor: str = "commit-engine",
    ):
        self.session_factory = session_factory
        self.max_attempts = max(1, max_attempts or settings.commit_max_attempts)
        self.backoff_base = backoff_base_seconds if backoff_base_seconds is not None else settings.commit_backoff_base_seconds
        self.backoff_cap = backoff_cap_seconds if backoff_cap_seconds is not None else settings.commit_backoff_cap_seconds
        self.writer = writer
        self.sleep = sleep
        self.hub = hub
        self.actor = actor

    async def _ordered_cities(self, city_ids: list[str]) -> tuple[list[tuple[str, str]], list[str]]:
        async with self.session_factory() as db:
            rows = (await db.execute(
                select(StagingCity.id, StagingCity.name).where(StagingCity.id.in_(city_ids))
            )).all()
        found = sorted(((r.id, r.name) for r in rows), key=lambda r: (r[1].lower(), r[0]))
        known = {cid for cid, _ in found}
        missing = [cid for cid in dict.fromkeys(city_ids) if cid not in known]
        return found, missing

    async def _commit_once(self, city_id: str) -> dict:
        async with self.session_factory() as db:
            async with db.begin():
                # row lock: a concurrent re-stage of this city waits until the commit is done
                city = (await db.execute(
                    select(StagingCity).where(StagingCity.id == city_id).with_for_update()
                )).scalar_one_or_none()
                if city is None:
                    raise NotFoundError(f"staging city {city_id} not found")
                if city.status not in COMMITTABLE_STATUSES:
                    raise InvalidTransitionError(entity_id=city.id, current=city.status, target="committed")
                return await self.writer(db, staging_city=city, actor=self.actor)

    async def _publish(self, batch_id: str, log_entry_id: str, event: ProgressEvent) -> None:
        self.hub.publish(event)
        async with self.session_factory() as db:
            await update_progress(db, entry_id=log_entry_id, progress=event.to_dict())
            await db.commit()

    async def run(
        self,
        city_ids: list[str],
        *,
        batch_id: str,
        on_progress: Callable[[CommitProgress], Awaitable[None]] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> CommitResult:
        result = CommitResult(batch_id=batch_id)
        cities, missing = await self._ordered_cities(city_ids)
        total = len(cities) + len(missing)

        async with self.session_factory() as db:
            entry = await start_operation(db, operation_type="commit", batch_id=batch_id, actor=self.actor, details={
                "city_ids": list(dict.fromkeys(city_ids)),
                "total": total,
            })
            await db.commit()

        for cid in missing:
            result.failed.append({"id": cid, "name": None, "error": "staging city not found", "attempts": 0})

        async def report(current: int, name: str | None, *, retry_attempt: int | None = None, phase: str = "processing") -> None:
            progress = CommitProgress(
                current=current,
                total=total,
                current_city_name=name,
                retry_attempt=retry_attempt,
                retry_max=self.max_attempts if retry_attempt else None,
            )
            await self._publish(batch_id, entry.id, ProgressEvent(
                batch_id=batch_id,
                operation_type="commit",
                phase=phase,
                current=current,
                total=total,
                current_city_name=name,
                retry_attempt=progress.retry_attempt,
                retry_max=progress.retry_max,
            ))
            if on_progress is not None:
                await on_progress(progress)

        done = len(missing)
        try:
            for index, (city_id, name) in enumerate(cities):
                if cancel is not None and cancel.is_set():
                    result.cancelled.extend({"id": cid, "name": n} for cid, n in cities[index:])
                    log.info("commit: batch=%s cancelled before %s", batch_id, name)
                    break

                await report(done, name)
                attempt = 0
                with tracer.start_as_current_span("coverage.commit_city") as span:
                    span.set_attribute("coverage.city", name)
                    while True:
                        attempt += 1
                        try:
                            stats = await self._commit_once(city_id)
                        except (InvalidTransitionError, NotFoundError) as e:
                            result.failed.append({"id": city_id, "name": name, "error": e.message, "attempts": attempt})
                            log.warning("commit: %s rejected: %s", name, e.message)
                            break
                        except Exception as e:
                            retryable = is_transient(e) and attempt < self.max_attempts
                            if not retryable:
                                result.failed.append({"id": city_id, "name": name, "error": f"{type(e).__name__}: {e}", "attempts": attempt})
                                log.warning("commit: %s failed after %d attempt(s): %s", name, attempt, e)
                                break
                            delay = compute_backoff_seconds(attempt, base=self.backoff_base, cap=self.backoff_cap)
                            log.info("commit: %s attempt %d/%d failed, retrying in %.1fs", name, attempt, self.max_attempts, delay)
                            await report(done, name, retry_attempt=attempt + 1, phase="retrying")
                            await self.sleep(delay)
                            continue
                        result.committed.append({"id": city_id, "name": name, "attempts": attempt, **stats})
                        log.info("commit: %s committed (%d areas)", name, stats.get("areas", 0))
                        break
                    span.set_attribute("coverage.attempts", attempt)

                done += 1
                await report(done, name)
        except Exception as e:
            # engine-level crash (not a per-city failure): still close the log entry
            log.exception("commit: batch=%s crashed", batch_id)
            async with self.session_factory() as db:
                await finish_operation(db, entry_id=entry.id, status="failed", details={
                    "error": f"{type(e).__name__}: {e}",
                    **result.to_dict(),
                })
                await db.commit()
            self.hub.publish(ProgressEvent(batch_id=batch_id, operation_type="commit", phase="failed", current=done, total=total, message=str(e)))
            raise

        status = "success" if result.ok else "failed"
        message = f"{len(result.committed)} committed, {len(result.failed)} failed"
        if result.cancelled:
            message += f", {len(result.cancelled)} cancelled"
        async with self.session_factory() as db:
            await finish_operation(db, entry_id=entry.id, status=status, details={
                "summary": message,
                "committed": [{"id": c["id"], "name": c["name"], "areas": c.get("areas", 0)} for c in result.committed],
                "failed": result.failed,
                "cancelled": result.cancelled,
            })
            await db.commit()

        self.hub.publish(ProgressEvent(
            batch_id=batch_id,
            operation_type="commit",
            phase="finished" if result.ok else "failed",
            current=done,
            total=total,
            message=message,
        ))
        log.info("commit: batch=%s %s", batch_id, message)
        return result
