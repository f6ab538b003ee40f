"""
Delta detection: current provider data versus the last confirmed snapshot.

`diff_against_snapshot` is pure; `compute_delta` adds the provider fetch, the
snapshot load, the staging write-back of affected cities and the
`delta_check` log entry around it. Nothing here writes production or the
snapshot.
"""
from __future__ import annotations
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_hub.core.errors import ExternalFetchError
from delivery_hub.core.ids import slugify
from delivery_hub.core.telemetry import get_tracer
from delivery_hub.models.snapshot_entry import SnapshotEntry
from delivery_hub.schemas.provider import ProviderArea, ProviderCity, ProviderDistrict
from delivery_hub.services.geofence import GeofenceError, geofence_hash
from delivery_hub.services.operation_log import finish_operation, start_operation
from delivery_hub.services.progress import ProgressEvent, ProgressHub, progress_hub
from delivery_hub.services.provider_client import CoverageProvider
from delivery_hub.services.snapshot import load_snapshot
from delivery_hub.services.staging import CandidateArea, CandidateDistrict, StagingCityCandidate, create_staging_city


log = logging.getLogger(__name__)
tracer = get_tracer(__name__)

_TRAILING_NUMBER = re.compile(r"-\d+$")


@dataclass
class LevelDelta:
    added: list[dict] = field(default_factory=list)
    changed: list[dict] = field(default_factory=list)
    removed: list[dict] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.changed or self.removed)

    def counts(self) -> dict[str, int]:
        return {"added": len(self.added), "changed": len(self.changed), "removed": len(self.removed)}

    def to_dict(self) -> dict:
        return {"added": self.added, "changed": self.changed, "removed": self.removed, "counts": self.counts()}


@dataclass
class DeltaResult:
    cities: LevelDelta
    districts: LevelDelta
    areas: LevelDelta
    unchanged_areas: int
    geofence_changed: int
    is_first_import: bool
    affected_city_ids: list[str]
    rename_suggestions: list[dict] = field(default_factory=list)
    invalid_geofences: list[str] = field(default_factory=list)
    staged: list[dict] = field(default_factory=list)

    # provider data the diff ran against, keyed by city id; used for staging
    external_cities: dict[str, ProviderCity] = field(default_factory=dict, repr=False)
    # snapshot context of cities the provider no longer lists
    vanished_cities: dict[str, dict] = field(default_factory=dict, repr=False)

    @property
    def has_changes(self) -> bool:
        return not (self.cities.is_empty and self.districts.is_empty and self.areas.is_empty)

    def summary(self) -> dict[str, Any]:
        return {
            "new": len(self.areas.added),
            "changed": len(self.areas.changed),
            "removed": len(self.areas.removed),
            "geofence_changed": self.geofence_changed,
            "unchanged": self.unchanged_areas,
            "cities": self.cities.counts(),
            "districts": self.districts.counts(),
            "affected_cities": len(self.affected_city_ids),
        }

    def to_dict(self) -> dict:
        return {
            "has_changes": self.has_changes,
            "is_first_import": self.is_first_import,
            "summary": self.summary(),
            "affected_city_ids": self.affected_city_ids,
            "cities": self.cities.to_dict(),
            "districts": self.districts.to_dict(),
            "areas": self.areas.to_dict(),
            "rename_suggestions": self.rename_suggestions,
            "invalid_geofences": self.invalid_geofences,
            "staged": self.staged,
        }


def _safe_hash(area: ProviderArea, invalid: list[str]) -> str | None:
    try:
        return geofence_hash(area.geofence)
    except GeofenceError:
        invalid.append(area.id)
        return None


def _index_external(cities: list[ProviderCity]):
    ext_cities: dict[str, ProviderCity] = {}
    ext_districts: dict[str, tuple[ProviderDistrict, ProviderCity]] = {}
    ext_areas: dict[str, tuple[ProviderArea, ProviderDistrict, ProviderCity]] = {}
    for city in cities:
        # the snapshot is area-level, so empty cities/districts have no baseline to diff against
        if not any(d.areas for d in city.districts):
            continue
        if city.id in ext_cities:
            log.warning("delta: duplicate provider city id %s, last one wins", city.id)
        ext_cities[city.id] = city
        for district in city.districts:
            if not district.areas:
                continue
            ext_districts[district.id] = (district, city)
            for area in district.areas:
                if area.id in ext_areas:
                    log.warning("delta: duplicate provider area id %s, last one wins", area.id)
                ext_areas[area.id] = (area, district, city)
    return ext_cities, ext_districts, ext_areas


def _index_snapshot(entries: list[SnapshotEntry]):
    snap_cities: dict[str, dict] = {}
    snap_districts: dict[str, dict] = {}
    snap_areas: dict[str, SnapshotEntry] = {}
    for e in entries:
        snap_areas[e.external_id] = e
        snap_cities.setdefault(e.city_external_id, {"name": e.city_name, "country_code": e.country_code})
        snap_districts.setdefault(e.district_external_id, {"name": e.district_name, "city_id": e.city_external_id})
    return snap_cities, snap_districts, snap_areas


def _base_slug(name: str) -> str:
    return _TRAILING_NUMBER.sub("", slugify(name))


def suggest_renames(removed: list[dict], added: list[dict]) -> list[dict]:
    """
    Pair removed and added areas of the same city whose slugs share a base
    ("majorstuen-2" vs "majorstuen"). Best-effort hint for reviewers only.
    """
    suggestions: list[dict] = []
    used: set[str] = set()
    for r in removed:
        base = _base_slug(r["name"])
        for a in added:
            if a["id"] in used or a["city_id"] != r["city_id"] or a["id"] == r["id"]:
                continue
            if _base_slug(a["name"]) == base:
                suggestions.append({
                    "removed_id": r["id"],
                    "added_id": a["id"],
                    "old_name": r["name"],
                    "new_name": a["name"],
                    "city_id": r["city_id"],
                    "confirmed": False,
                })
                used.add(a["id"])
                break
    return suggestions


def diff_against_snapshot(external: list[ProviderCity], snapshot: list[SnapshotEntry]) -> DeltaResult:
    ext_cities, ext_districts, ext_areas = _index_external(external)
    snap_cities, snap_districts, snap_areas = _index_snapshot(snapshot)

    cities, districts, areas = LevelDelta(), LevelDelta(), LevelDelta()
    affected: set[str] = set()
    invalid: list[str] = []

    for cid, city in ext_cities.items():
        before = snap_cities.get(cid)
        if before is None:
            cities.added.append({"id": cid, "name": city.name, "country_code": city.country_code})
            affected.add(cid)
        elif before["name"] != city.name or before["country_code"] != city.country_code:
            cities.changed.append({
                "id": cid,
                "name": city.name,
                "old_name": before["name"],
                "country_code": city.country_code,
                "old_country_code": before["country_code"],
            })
            affected.add(cid)
    vanished: dict[str, dict] = {}
    for cid, before in snap_cities.items():
        if cid not in ext_cities:
            cities.removed.append({"id": cid, "name": before["name"]})
            vanished[cid] = before
            affected.add(cid)

    for did, (district, city) in ext_districts.items():
        before = snap_districts.get(did)
        if before is None:
            districts.added.append({"id": did, "name": district.name, "city_id": city.id})
            affected.add(city.id)
        elif before["name"] != district.name or before["city_id"] != city.id:
            districts.changed.append({"id": did, "name": district.name, "old_name": before["name"], "city_id": city.id})
            affected.update({city.id, before["city_id"]})
    for did, before in snap_districts.items():
        if did not in ext_districts:
            districts.removed.append({"id": did, "name": before["name"], "city_id": before["city_id"]})
            affected.add(before["city_id"])

    unchanged = geofence_changed = 0
    for aid, (area, district, city) in ext_areas.items():
        ghash = _safe_hash(area, invalid)
        before = snap_areas.get(aid)
        if before is None:
            areas.added.append({
                "id": aid,
                "name": area.name,
                "city_id": city.id,
                "city_name": city.name,
                "district_name": district.name,
                "has_geofence": ghash is not None,
            })
            affected.add(city.id)
            continue

        fields = []
        if before.name != area.name:
            fields.append("name")
        if before.district_external_id != district.id:
            fields.append("district")
        if before.is_active != area.is_active:
            fields.append("is_active")
        # an unreadable provider polygon is reported, never treated as a new geofence
        geo_changed = ghash is not None and before.geofence_hash != ghash
        if geo_changed:
            fields.append("geofence")
            geofence_changed += 1

        if not fields:
            unchanged += 1
            continue
        areas.changed.append({
            "id": aid,
            "name": area.name,
            "old_name": before.name if before.name != area.name else None,
            "city_id": city.id,
            "city_name": city.name,
            "fields": fields,
            "geofence_changed": geo_changed,
        })
        affected.update({city.id, before.city_external_id})

    for aid, before in snap_areas.items():
        if aid not in ext_areas:
            areas.removed.append({"id": aid, "name": before.name, "city_id": before.city_external_id, "city_name": before.city_name})
            affected.add(before.city_external_id)

    return DeltaResult(
        cities=cities,
        districts=districts,
        areas=areas,
        unchanged_areas=unchanged,
        geofence_changed=geofence_changed,
        is_first_import=not snap_areas,
        affected_city_ids=sorted(affected),
        rename_suggestions=suggest_renames(areas.removed, areas.added),
        invalid_geofences=invalid,
        external_cities=ext_cities,
        vanished_cities=vanished,
    )


def city_candidate(city: ProviderCity, *, change_kind: str, summary: dict | None = None) -> StagingCityCandidate:
    return StagingCityCandidate(
        external_id=city.id,
        name=city.name,
        country_code=city.country_code,
        change_kind=change_kind,
        summary=summary or {},
        districts=[
            CandidateDistrict(
                external_id=d.id,
                name=d.name,
                areas=[
                    CandidateArea(
                        external_id=a.id,
                        name=a.name,
                        original_name=a.display_name or a.name,
                        geofence=a.geofence,
                        is_delivery=a.is_active,
                    )
                    for a in d.areas
                ],
            )
            for d in city.districts
            if d.areas
        ],
    )


def build_candidates(result: DeltaResult) -> list[StagingCityCandidate]:
    """One candidate per affected city, carrying the provider's full area set for it."""
    new_city_ids = {c["id"] for c in result.cities.added}
    per_city: dict[str, dict[str, list]] = defaultdict(lambda: {"new": [], "changed": [], "removed": []})
    for a in result.areas.added:
        per_city[a["city_id"]]["new"].append(a["id"])
    for a in result.areas.changed:
        per_city[a["city_id"]]["changed"].append(a["id"])
    for a in result.areas.removed:
        per_city[a["city_id"]]["removed"].append(a["id"])

    candidates: list[StagingCityCandidate] = []
    for cid in result.affected_city_ids:
        stats = per_city[cid]
        summary = {
            "new_area_ids": stats["new"],
            "changed_area_ids": stats["changed"],
            "removed_area_ids": stats["removed"],
            "rename_suggestions": [s for s in result.rename_suggestions if s["city_id"] == cid],
        }
        city = result.external_cities.get(cid)
        if city is not None:
            kind = "added" if cid in new_city_ids else "changed"
            candidates.append(city_candidate(city, change_kind=kind, summary=summary))
        else:
            before = result.vanished_cities.get(cid, {})
            candidates.append(StagingCityCandidate(
                external_id=cid,
                name=before.get("name", cid),
                country_code=before.get("country_code", "NO"),
                change_kind="removed",
                summary=summary,
            ))
    return candidates


async def fetch_and_diff(db: AsyncSession, *, provider: CoverageProvider) -> DeltaResult:
    external = await provider.fetch_cities()
    snapshot = await load_snapshot(db)
    return diff_against_snapshot(external, snapshot)


async def stage_delta(db: AsyncSession, *, result: DeltaResult, batch_id: str) -> list[dict]:
    staged: list[dict] = []
    for candidate in build_candidates(result):
        row = await create_staging_city(db, candidate=candidate, batch_id=batch_id, source="delta")
        staged.append({"id": row.id, "name": row.name, "external_id": row.external_id, "change_kind": row.change_kind})
    return staged


async def compute_delta(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    provider: CoverageProvider,
    batch_id: str,
    actor: str = "internal",
    stage: bool = True,
    hub: ProgressHub = progress_hub,
) -> DeltaResult:
    """
    Fetch, diff, stage affected cities and record a `delta_check` entry
    (started -> success/failed).

    The log entry is committed in its own session so it survives a failed
    fetch. A failed fetch stages nothing; staging is one transaction, so a
    failure there leaves the queue as it was.
    """
    async with session_factory() as db:
        entry = await start_operation(db, operation_type="delta_check", batch_id=batch_id, actor=actor)
        await db.commit()
    hub.publish(ProgressEvent(batch_id=batch_id, operation_type="delta_check", phase="started", message="fetching provider data"))

    with tracer.start_as_current_span("coverage.delta_check") as span:
        span.set_attribute("coverage.batch_id", batch_id)
        try:
            async with session_factory() as db:
                result = await fetch_and_diff(db, provider=provider)
                if stage and result.has_changes:
                    hub.publish(ProgressEvent(
                        batch_id=batch_id,
                        operation_type="delta_check",
                        phase="processing",
                        total=len(result.affected_city_ids),
                        message="staging affected cities",
                    ))
                    result.staged = await stage_delta(db, result=result, batch_id=batch_id)
                    await db.commit()
        except Exception as e:
            if isinstance(e, ExternalFetchError):
                log.warning("delta: fetch failed batch=%s: %s", batch_id, e.message)
                error = {"error": e.message, "code": e.code}
            else:
                log.exception("delta: crashed batch=%s", batch_id)
                error = {"error": f"{type(e).__name__}: {e}"}
            async with session_factory() as db:
                await finish_operation(db, entry_id=entry.id, status="failed", details=error)
                await db.commit()
            hub.publish(ProgressEvent(batch_id=batch_id, operation_type="delta_check", phase="failed", message=error["error"]))
            raise

        summary = result.summary()
        span.set_attribute("coverage.affected_cities", len(result.affected_city_ids))

    async with session_factory() as db:
        await finish_operation(db, entry_id=entry.id, status="success", details={
            "summary": summary,
            "is_first_import": result.is_first_import,
            "has_changes": result.has_changes,
            "staged_cities": [s["id"] for s in result.staged],
            "rename_suggestions": result.rename_suggestions,
        })
        await db.commit()

    hub.publish(ProgressEvent(
        batch_id=batch_id,
        operation_type="delta_check",
        phase="finished",
        current=len(result.staged),
        total=len(result.staged),
        message=f"{summary['new']} new, {summary['changed']} changed, {summary['removed']} removed",
    ))
    log.info(
        "delta: batch=%s new=%d changed=%d removed=%d unchanged=%d staged=%d",
        batch_id, summary["new"], summary["changed"], summary["removed"], summary["unchanged"], len(result.staged),
    )
    return result
