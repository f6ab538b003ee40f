"""
Pipeline status: stage summaries plus a single recommended next action.

`compute_next_action` and `build_stages` are pure functions of the counts;
`pipeline_status` only adds the reads.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_hub.models.geo_area import GeoArea
from delivery_hub.models.geo_city import GeoCity
from delivery_hub.models.geo_district import GeoDistrict
from delivery_hub.models.staging import StagingCity
from delivery_hub.services.snapshot import snapshot_stats

NEXT_ACTION_TYPES = ("commit", "review", "import", "sync", "none")


@dataclass(frozen=True)
class PipelineCounts:
    snapshot: int = 0
    production_cities: int = 0
    production_districts: int = 0
    production_areas: int = 0
    production_areas_with_geofence: int = 0
    staging_pending: int = 0
    staging_approved: int = 0
    staging_committed: int = 0
    last_snapshot_at: datetime | None = None


@dataclass(frozen=True)
class NextAction:
    type: str
    message: str
    urgency: str

    def to_dict(self) -> dict:
        return {"type": self.type, "message": self.message, "urgency": self.urgency}


def _plural(n: int, one: str, many: str) -> str:
    return one if n == 1 else many


def compute_next_action(counts: PipelineCounts) -> NextAction:
    # first match wins
    if counts.staging_approved > 0:
        n = counts.staging_approved
        return NextAction(
            "commit",
            f"{n} approved {_plural(n, 'city is', 'cities are')} ready to commit to production.",
            "high",
        )
    if counts.staging_pending > 0:
        n = counts.staging_pending
        return NextAction(
            "review",
            f"{n} {_plural(n, 'city needs', 'cities need')} review. Approve or reject before committing.",
            "medium",
        )
    if counts.snapshot == 0 and counts.production_areas == 0:
        return NextAction("import", "No coverage data yet. Run an AI import to discover delivery areas.", "medium")
    if counts.snapshot > 0 and counts.production_areas > 0:
        return NextAction("sync", "Run a delta check to detect new or modified areas.", "low")
    return NextAction("none", "Nothing to do.", "low")


def build_stages(counts: PipelineCounts) -> dict:
    if counts.staging_approved > 0:
        staging_status = "success"
    elif counts.staging_pending > 0:
        staging_status = "warning"
    else:
        staging_status = "empty"

    return {
        "snapshot": {
            "label": "Snapshot",
            "count": counts.snapshot,
            "status": "has-data" if counts.snapshot > 0 else "empty",
            "last_updated": counts.last_snapshot_at,
        },
        "staging": {
            "label": "Staging",
            "count": counts.staging_pending,
            "secondary_count": counts.staging_approved,
            "secondary_label": "approved",
            "status": staging_status,
        },
        "production": {
            "label": "Production",
            "count": counts.production_areas,
            "secondary_count": counts.production_areas_with_geofence,
            "secondary_label": "with geofence",
            "status": "has-data" if counts.production_areas > 0 else "empty",
        },
    }


async def _count(db: AsyncSession, stmt) -> int:
    return int((await db.execute(stmt)).scalar_one() or 0)


async def load_pipeline_counts(db: AsyncSession) -> PipelineCounts:
    snapshot, last_snapshot_at = await snapshot_stats(db)

    staging_rows = (await db.execute(
        select(StagingCity.status, func.count(StagingCity.id)).group_by(StagingCity.status)
    )).all()
    staging = {status: int(n) for status, n in staging_rows}

    return PipelineCounts(
        snapshot=snapshot,
        production_cities=await _count(db, select(func.count(GeoCity.id))),
        production_districts=await _count(db, select(func.count(GeoDistrict.id))),
        production_areas=await _count(db, select(func.count(GeoArea.id))),
        production_areas_with_geofence=await _count(db, select(func.count(GeoArea.id)).where(GeoArea.geofence_hash.is_not(None))),
        staging_pending=staging.get("pending", 0),
        staging_approved=staging.get("approved", 0),
        staging_committed=staging.get("committed", 0),
        last_snapshot_at=last_snapshot_at,
    )


async def pipeline_status(db: AsyncSession) -> dict:
    counts = await load_pipeline_counts(db)
    return {
        "counts": {
            "snapshot": counts.snapshot,
            "production_cities": counts.production_cities,
            "production_districts": counts.production_districts,
            "production_areas": counts.production_areas,
            "production_areas_with_geofence": counts.production_areas_with_geofence,
            "staging_pending": counts.staging_pending,
            "staging_approved": counts.staging_approved,
            "staging_committed": counts.staging_committed,
            "last_snapshot_at": counts.last_snapshot_at,
        },
        "stages": build_stages(counts),
        "next_action": compute_next_action(counts).to_dict(),
    }
