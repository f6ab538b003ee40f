"""
AI-assisted import: flat provider service areas -> classified city tree -> staging.

Used for the initial load, when there is no snapshot to diff against and the
provider only hands out a flat list of area names.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from delivery_hub.core.errors import ExternalFetchError
from delivery_hub.core.ids import slugify
from delivery_hub.core.telemetry import get_tracer
from delivery_hub.models.geo_city import GeoCity
from delivery_hub.services.area_classifier import AreaClassifier, AreaName, ClassifiedArea
from delivery_hub.services.operation_log import finish_operation, start_operation, update_progress
from delivery_hub.services.progress import ProgressEvent, ProgressHub, progress_hub
from delivery_hub.services.provider_client import CoverageProvider
from delivery_hub.services.staging import CandidateArea, CandidateDistrict, StagingCityCandidate, create_staging_city


log = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@dataclass
class AiImportResult:
    batch_id: str
    fetched: int = 0
    classified: int = 0
    fallback: int = 0
    staged: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "ok": self.ok,
            "fetched": self.fetched,
            "classified": self.classified,
            "fallback": self.fallback,
            "staged": self.staged,
            "failed": self.failed,
        }


def group_by_city(classified: list[ClassifiedArea], geofences: dict[str, dict | None], active: dict[str, bool]) -> list[StagingCityCandidate]:
    """
    Build one candidate per city. City key is the slug of the city name,
    district key is "<city-slug>_<district-slug>", area key the provider id.
    """
    cities: dict[str, StagingCityCandidate] = {}
    districts: dict[str, CandidateDistrict] = {}
    seen_areas: set[str] = set()

    for c in classified:
        if c.id in seen_areas:
            continue
        seen_areas.add(c.id)

        city_key = slugify(c.city) or slugify(c.original) or c.id
        district_key = f"{city_key}_{slugify(c.district) or city_key}"

        city = cities.get(city_key)
        if city is None:
            city = cities[city_key] = StagingCityCandidate(external_id=city_key, name=c.city, change_kind="added")
        district = districts.get(district_key)
        if district is None:
            district = districts[district_key] = CandidateDistrict(external_id=district_key, name=c.district)
            city.districts.append(district)
        district.areas.append(CandidateArea(
            external_id=c.id,
            name=c.area,
            original_name=c.original,
            geofence=geofences.get(c.id),
            is_delivery=active.get(c.id, True),
        ))

    return sorted(cities.values(), key=lambda x: (x.name.lower(), x.external_id))


async def _known_cities(db: AsyncSession, external_ids: list[str]) -> set[str]:
    if not external_ids:
        return set()
    rows = (await db.execute(select(GeoCity.external_id).where(GeoCity.external_id.in_(external_ids)))).scalars().all()
    return set(rows)


async def run_ai_import(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    provider: CoverageProvider,
    classifier: AreaClassifier,
    batch_id: str,
    actor: str = "internal",
    hub: ProgressHub = progress_hub,
) -> AiImportResult:
    result = AiImportResult(batch_id=batch_id)

    async with session_factory() as db:
        entry = await start_operation(db, operation_type="ai_import", batch_id=batch_id, actor=actor)
        await db.commit()

    async def publish(event: ProgressEvent) -> None:
        hub.publish(event)
        async with session_factory() as db:
            await update_progress(db, entry_id=entry.id, progress=event.to_dict())
            await db.commit()

    async def fail(message: str, **extra) -> None:
        async with session_factory() as db:
            await finish_operation(db, entry_id=entry.id, status="failed", details={"error": message, **extra})
            await db.commit()
        hub.publish(ProgressEvent(batch_id=batch_id, operation_type="ai_import", phase="failed", message=message))

    with tracer.start_as_current_span("coverage.ai_import") as span:
        span.set_attribute("coverage.batch_id", batch_id)
        await publish(ProgressEvent(batch_id=batch_id, operation_type="ai_import", phase="started", message="fetching service areas"))

        try:
            service_areas = await provider.fetch_service_areas()
            result.fetched = len(service_areas)
            names = [AreaName(id=sa.id, name=sa.label) for sa in service_areas]
            classified = await classifier.classify(names)
        except ExternalFetchError as e:
            log.warning("ai_import: fetch failed batch=%s: %s", batch_id, e.message)
            await fail(e.message, code=e.code)
            raise
        except Exception as e:
            log.exception("ai_import: crashed batch=%s", batch_id)
            await fail(f"{type(e).__name__}: {e}")
            raise

        result.classified = len(classified)
        result.fallback = sum(1 for c in classified if c.is_fallback)
        candidates = group_by_city(
            classified,
            geofences={sa.id: sa.geofence for sa in service_areas},
            active={sa.id: sa.is_active for sa in service_areas},
        )

        async with session_factory() as db:
            known = await _known_cities(db, [c.external_id for c in candidates])

        total = len(candidates)
        for index, candidate in enumerate(candidates, start=1):
            if candidate.external_id in known:
                candidate.change_kind = "changed"
            await publish(ProgressEvent(
                batch_id=batch_id,
                operation_type="ai_import",
                phase="processing",
                current=index - 1,
                total=total,
                current_city_name=candidate.name,
            ))
            try:
                async with session_factory() as db:
                    row = await create_staging_city(db, candidate=candidate, batch_id=batch_id, source="ai_import")
                    await db.commit()
                result.staged.append({"id": row.id, "name": row.name, "external_id": row.external_id, "areas": candidate.area_count})
            except Exception as e:
                # one city failing to stage must not sink the others
                log.exception("ai_import: staging %s failed", candidate.name)
                result.failed.append({"name": candidate.name, "external_id": candidate.external_id, "error": f"{type(e).__name__}: {e}"})

        span.set_attribute("coverage.staged_cities", len(result.staged))

    status = "success" if result.ok else "failed"
    message = f"{len(result.staged)} cities staged from {result.fetched} areas ({result.fallback} unclassified)"
    async with session_factory() as db:
        await finish_operation(db, entry_id=entry.id, status=status, details={
            "summary": message,
            "fetched": result.fetched,
            "classified": result.classified,
            "fallback": result.fallback,
            "staged_cities": len(result.staged),
            "failed": result.failed,
        })
        await db.commit()

    hub.publish(ProgressEvent(
        batch_id=batch_id,
        operation_type="ai_import",
        phase="finished" if result.ok else "failed",
        current=len(result.staged) + len(result.failed),
        total=len(candidates),
        message=message,
    ))
    log.info("ai_import: batch=%s %s", batch_id, message)
    return result
