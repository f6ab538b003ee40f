from __future__ import annotations
from datetime import datetime

from delivery_hub.core.ids import gen_id
from sqlalchemy import JSON, String, ForeignKey, Index, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from delivery_hub.models.base import Base, utcnow

# pending -> approved -> committed
# pending -> rejected
STAGING_STATUSES = ("pending", "approved", "rejected", "committed")
OPEN_STAGING_STATUSES = ("pending", "approved")


class StagingCity(Base):
    """
    Candidate city awaiting human review, with its districts/areas staged
    underneath. The area set is the provider's full current set for the city,
    so committing reproduces the provider state for that city.
    """
    __tablename__ = "staging_cities"
    __table_args__ = (
        Index("ix_staging_city_external_status", "external_id", "status"),
        # at most one open row per external id
        Index(
            "uq_staging_city_open_external_id",
            "external_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'approved')"),
            sqlite_where=text("status IN ('pending', 'approved')"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("stc"))
    batch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)

    name: Mapped[str] = mapped_column(String(120), nullable=False)
    country_code: Mapped[str] = mapped_column(String(8), nullable=False, default="NO")

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    change_kind: Mapped[str] = mapped_column(String(16), nullable=False, default="added")  # added|changed|removed
    source: Mapped[str] = mapped_column(String(32), nullable=False)  # delta|ai_import|geo_sync

    # delta context for reviewers: counts, rename suggestions, removed area ids
    summary: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    committed_city_id: Mapped[str | None] = mapped_column(String, ForeignKey("geo_cities.id"), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    committed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)


class StagingDistrict(Base):
    __tablename__ = "staging_districts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("std"))
    staging_city_id: Mapped[str] = mapped_column(String, ForeignKey("staging_cities.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)

    committed_district_id: Mapped[str | None] = mapped_column(String, ForeignKey("geo_districts.id"), nullable=True)


class StagingArea(Base):
    __tablename__ = "staging_areas"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("sta"))
    staging_district_id: Mapped[str] = mapped_column(String, ForeignKey("staging_districts.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)

    name: Mapped[str] = mapped_column(String(120), nullable=False)
    original_name: Mapped[str] = mapped_column(String(200), nullable=False)  # provider name before classification
    geofence: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    geofence_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    is_delivery: Mapped[bool] = mapped_column(nullable=False, default=True)

    committed_area_id: Mapped[str | None] = mapped_column(String, ForeignKey("geo_areas.id"), nullable=True)
