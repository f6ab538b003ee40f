from datetime import datetime

from delivery_hub.core.ids import gen_id
from sqlalchemy import Boolean, JSON, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from delivery_hub.models.base import Base, utcnow


class SnapshotEntry(Base):
    """
    Point-in-time copy of one provider area, with its city/district context,
    as last confirmed in production. The full table is "the last known truth"
    the delta detector diffs against; rows are replaced per city on commit.
    """
    __tablename__ = "snapshot_entries"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_snapshot_external_id"),
        Index("ix_snapshot_city", "city_external_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("snp"))
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)

    name: Mapped[str] = mapped_column(String(120), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    city_external_id: Mapped[str] = mapped_column(String(120), nullable=False)
    city_name: Mapped[str] = mapped_column(String(120), nullable=False)
    district_external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    district_name: Mapped[str] = mapped_column(String(120), nullable=False)
    country_code: Mapped[str] = mapped_column(String(8), nullable=False)

    geofence: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    geofence_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
