from delivery_hub.core.ids import gen_id
from sqlalchemy import Boolean, String, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from delivery_hub.models.base import Base, AuditMixin

class GeoDistrict(AuditMixin, Base):
    __tablename__ = "geo_districts"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_geo_district_external_id"),
        Index("ix_geo_district_city", "city_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("gds"))
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)  # e.g. "oslo_frogner"
    city_id: Mapped[str] = mapped_column(String, ForeignKey("geo_cities.id"), nullable=False)

    name: Mapped[str] = mapped_column(String(120), nullable=False)
    slug: Mapped[str] = mapped_column(String(160), nullable=False)

    is_delivery: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
