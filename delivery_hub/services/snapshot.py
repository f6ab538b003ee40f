from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_hub.models.base import utcnow
from delivery_hub.models.snapshot_entry import SnapshotEntry


@dataclass(frozen=True)
class SnapshotArea:
    """One area as it should be recorded in the snapshot."""
    external_id: str
    name: str
    display_name: str | None
    city_external_id: str
    city_name: str
    district_external_id: str
    district_name: str
    country_code: str
    geofence: dict | None
    geofence_hash: str | None
    is_active: bool = True


async def load_snapshot(db: AsyncSession) -> list[SnapshotEntry]:
    return list((await db.execute(select(SnapshotEntry).order_by(SnapshotEntry.external_id.asc()))).scalars().all())


async def snapshot_stats(db: AsyncSession) -> tuple[int, datetime | None]:
    count, last = (await db.execute(select(func.count(SnapshotEntry.id), func.max(SnapshotEntry.snapshot_at)))).one()
    return int(count or 0), last


async def replace_city_snapshot(db: AsyncSession, *, city_external_id: str, areas: list[SnapshotArea]) -> int:
    """
    Replace the city's slice of the snapshot wholesale. Entries for the same
    area ids under another city (an area that moved) are dropped as well.
    """
    area_ids = [a.external_id for a in areas]
    condition = SnapshotEntry.city_external_id == city_external_id
    if area_ids:
        condition = or_(condition, SnapshotEntry.external_id.in_(area_ids))
    await db.execute(delete(SnapshotEntry).where(condition))

    now = utcnow()
    for a in areas:
        db.add(SnapshotEntry(
            external_id=a.external_id,
            name=a.name,
            display_name=a.display_name,
            city_external_id=a.city_external_id,
            city_name=a.city_name,
            district_external_id=a.district_external_id,
            district_name=a.district_name,
            country_code=a.country_code,
            geofence=a.geofence,
            geofence_hash=a.geofence_hash,
            is_active=a.is_active,
            snapshot_at=now,
            last_seen_at=now,
        ))
    await db.flush()
    return len(areas)


async def update_snapshot_geofence(db: AsyncSession, *, external_id: str, geofence: dict | None, geofence_hash: str | None) -> bool:
    entry = (await db.execute(select(SnapshotEntry).where(SnapshotEntry.external_id == external_id))).scalar_one_or_none()
    if not entry:
        return False
    now = utcnow()
    entry.geofence = geofence
    entry.geofence_hash = geofence_hash
    entry.snapshot_at = now
    entry.last_seen_at = now
    await db.flush()
    return True
