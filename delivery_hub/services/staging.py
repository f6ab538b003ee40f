"""
Staging lifecycle: the review queue between delta detection and commit.

Rows move pending -> approved -> committed or pending -> rejected and never
back. Creation is an idempotent upsert keyed by the city's external id while
an open (pending/approved) row exists.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_hub.core.errors import InvalidTransitionError, NotFoundError, WriteConflictError
from delivery_hub.models.base import utcnow
from delivery_hub.models.staging import (
    OPEN_STAGING_STATUSES,
    STAGING_STATUSES,
    StagingArea,
    StagingCity,
    StagingDistrict,
)
from delivery_hub.services.geofence import GeofenceError, geofence_hash
from delivery_hub.services.operation_log import record_operation


log = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"approved", "rejected"}),
    "approved": frozenset({"committed"}),
    "rejected": frozenset(),
    "committed": frozenset(),
}


@dataclass
class CandidateArea:
    external_id: str
    name: str
    original_name: str | None = None
    geofence: dict | None = None
    is_delivery: bool = True


@dataclass
class CandidateDistrict:
    external_id: str
    name: str
    areas: list[CandidateArea] = field(default_factory=list)


@dataclass
class StagingCityCandidate:
    external_id: str
    name: str
    country_code: str = "NO"
    change_kind: str = "added"
    districts: list[CandidateDistrict] = field(default_factory=list)
    summary: dict = field(default_factory=dict)

    @property
    def area_count(self) -> int:
        return sum(len(d.areas) for d in self.districts)


@dataclass(frozen=True)
class StagingTree:
    city: StagingCity
    districts: list[tuple[StagingDistrict, list[StagingArea]]]

    @property
    def area_count(self) -> int:
        return sum(len(areas) for _, areas in self.districts)


def check_transition(city: StagingCity, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(city.status, frozenset()):
        raise InvalidTransitionError(entity_id=city.id, current=city.status, target=target)


async def _find_open_row(db: AsyncSession, external_id: str) -> StagingCity | None:
    return (await db.execute(
        select(StagingCity)
        .where(StagingCity.external_id == external_id, StagingCity.status.in_(OPEN_STAGING_STATUSES))
        .order_by(StagingCity.created_at.desc())
        .limit(1)
        .with_for_update()
    )).scalars().first()


async def _clear_nested(db: AsyncSession, staging_city_id: str) -> None:
    district_ids = select(StagingDistrict.id).where(StagingDistrict.staging_city_id == staging_city_id)
    await db.execute(delete(StagingArea).where(StagingArea.staging_district_id.in_(district_ids)))
    await db.execute(delete(StagingDistrict).where(StagingDistrict.staging_city_id == staging_city_id))


async def create_staging_city(
    db: AsyncSession,
    *,
    candidate: StagingCityCandidate,
    batch_id: str,
    source: str,
) -> StagingCity:
    row = await _find_open_row(db, candidate.external_id)

    if row is None:
        row = StagingCity(
            batch_id=batch_id,
            external_id=candidate.external_id,
            name=candidate.name,
            country_code=candidate.country_code,
            status="pending",
            change_kind=candidate.change_kind,
            source=source,
            summary={},
        )
        db.add(row)
        try:
            await db.flush()
        except IntegrityError as e:
            # another writer opened a row for this city since our lookup
            raise WriteConflictError(f"staging of {candidate.external_id}") from e
        action = "created"
    else:
        # update in place; status is kept so an approved row never reverts to pending
        await _clear_nested(db, row.id)
        row.batch_id = batch_id
        row.name = candidate.name
        row.country_code = candidate.country_code
        row.change_kind = candidate.change_kind
        row.source = source
        action = "updated"

    invalid_geofences: list[str] = []
    for d in candidate.districts:
        district = StagingDistrict(staging_city_id=row.id, external_id=d.external_id, name=d.name)
        db.add(district)
        await db.flush()
        for a in d.areas:
            geofence = a.geofence
            try:
                ghash = geofence_hash(geofence)
            except GeofenceError:
                invalid_geofences.append(a.external_id)
                geofence, ghash = None, None
            db.add(StagingArea(
                staging_district_id=district.id,
                external_id=a.external_id,
                name=a.name,
                original_name=a.original_name or a.name,
                geofence=geofence,
                geofence_hash=ghash,
                is_delivery=a.is_delivery,
            ))

    row.summary = {
        **candidate.summary,
        "districts": len(candidate.districts),
        "areas": candidate.area_count,
        "invalid_geofences": invalid_geofences,
    }
    await db.flush()
    log.info("staging: %s city %s (%s) status=%s areas=%d", action, row.name, row.external_id, row.status, candidate.area_count)
    return row


async def get_staging_city(db: AsyncSession, *, city_id: str) -> StagingCity:
    city = (await db.execute(select(StagingCity).where(StagingCity.id == city_id))).scalar_one_or_none()
    if not city:
        raise NotFoundError(f"staging city {city_id} not found")
    return city


async def load_tree(db: AsyncSession, *, city: StagingCity) -> StagingTree:
    districts = (await db.execute(
        select(StagingDistrict)
        .where(StagingDistrict.staging_city_id == city.id)
        .order_by(StagingDistrict.name.asc())
    )).scalars().all()

    areas_by_district: dict[str, list[StagingArea]] = {d.id: [] for d in districts}
    if districts:
        areas = (await db.execute(
            select(StagingArea)
            .where(StagingArea.staging_district_id.in_(list(areas_by_district)))
            .order_by(StagingArea.name.asc())
        )).scalars().all()
        for a in areas:
            areas_by_district[a.staging_district_id].append(a)

    return StagingTree(city=city, districts=[(d, areas_by_district[d.id]) for d in districts])


async def list_by_status(db: AsyncSession, *, status: str | None = None) -> list[StagingCity]:
    stmt = select(StagingCity)
    if status is not None:
        if status not in STAGING_STATUSES:
            raise ValueError(f"unknown staging status: {status}")
        stmt = stmt.where(StagingCity.status == status)
    stmt = stmt.order_by(StagingCity.name.asc(), StagingCity.id.asc())
    return list((await db.execute(stmt)).scalars().all())


async def _review(db: AsyncSession, *, city_id: str, target: str, actor: str) -> StagingCity:
    city = await get_staging_city(db, city_id=city_id)
    check_transition(city, target)

    city.status = target
    city.reviewed_by = actor
    city.reviewed_at = utcnow()

    await record_operation(
        db,
        operation_type="approve" if target == "approved" else "reject",
        status="success",
        batch_id=city.batch_id,
        actor=actor,
        details={"city_id": city.id, "city_name": city.name, "external_id": city.external_id},
    )
    await db.flush()
    log.info("staging: %s -> %s by %s", city.name, target, actor)
    return city


async def approve(db: AsyncSession, *, city_id: str, actor: str = "internal") -> StagingCity:
    return await _review(db, city_id=city_id, target="approved", actor=actor)


async def reject(db: AsyncSession, *, city_id: str, actor: str = "internal") -> StagingCity:
    return await _review(db, city_id=city_id, target="rejected", actor=actor)


async def approve_many(db: AsyncSession, *, city_ids: list[str], actor: str = "internal") -> list[StagingCity]:
    # validate everything first so one bad id leaves the batch untouched
    for city_id in city_ids:
        check_transition(await get_staging_city(db, city_id=city_id), "approved")
    return [await approve(db, city_id=city_id, actor=actor) for city_id in city_ids]


async def mark_committed(db: AsyncSession, *, city: StagingCity, committed_city_id: str) -> None:
    """Commit-engine only. Re-committing an already committed row is a no-op."""
    if city.status != "committed":
        check_transition(city, "committed")
        city.status = "committed"
        city.committed_at = utcnow()
    city.committed_city_id = committed_city_id
    await db.flush()


def serialize_staging_city(city: StagingCity) -> dict:
    return {
        "id": city.id,
        "batch_id": city.batch_id,
        "external_id": city.external_id,
        "name": city.name,
        "country_code": city.country_code,
        "status": city.status,
        "change_kind": city.change_kind,
        "source": city.source,
        "summary": city.summary or {},
        "committed_city_id": city.committed_city_id,
        "reviewed_by": city.reviewed_by,
        "reviewed_at": city.reviewed_at,
        "committed_at": city.committed_at,
        "created_at": city.created_at,
    }


def serialize_tree(tree: StagingTree) -> dict:
    return {
        **serialize_staging_city(tree.city),
        "districts": [
            {
                "id": d.id,
                "external_id": d.external_id,
                "name": d.name,
                "areas": [
                    {
                        "id": a.id,
                        "external_id": a.external_id,
                        "name": a.name,
                        "original_name": a.original_name,
                        "has_geofence": a.geofence is not None,
                        "geofence_hash": a.geofence_hash,
                        "is_delivery": a.is_delivery,
                    }
                    for a in areas
                ],
            }
            for d, areas in tree.districts
        ],
    }
