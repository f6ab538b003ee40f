from datetime import datetime

from delivery_hub.core.ids import gen_id
from sqlalchemy import Boolean, JSON, String, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from delivery_hub.models.base import Base, AuditMixin

class GeoArea(AuditMixin, Base):
    """
    Production delivery area.

    `geofence` holds a GeoJSON Polygon/MultiPolygon as delivered by the provider,
    `geofence_hash` the fingerprint of its normalized form (see services.geofence).
    """
    __tablename__ = "geo_areas"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_geo_area_external_id"),
        Index("ix_geo_area_city", "city_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("gar"))
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)  # provider service area id
    district_id: Mapped[str] = mapped_column(String, ForeignKey("geo_districts.id"), nullable=False)
    city_id: Mapped[str] = mapped_column(String, ForeignKey("geo_cities.id"), nullable=False)

    name: Mapped[str] = mapped_column(String(120), nullable=False)
    slug: Mapped[str] = mapped_column(String(160), nullable=False)  # normalized, e.g., "dereboyu"

    geofence: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    geofence_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)

    is_delivery: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    imported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
