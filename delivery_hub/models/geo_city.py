from delivery_hub.core.ids import gen_id
from sqlalchemy import Boolean, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from delivery_hub.models.base import Base, AuditMixin

class GeoCity(AuditMixin, Base):
    """Production city. Written only by the commit engine."""
    __tablename__ = "geo_cities"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_geo_city_external_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("gcy"))
    external_id: Mapped[str] = mapped_column(String(120), nullable=False)  # provider key, e.g. "oslo"

    name: Mapped[str] = mapped_column(String(120), nullable=False)
    slug: Mapped[str] = mapped_column(String(120), nullable=False)  # normalized, e.g., "oslo"
    country_code: Mapped[str] = mapped_column(String(8), nullable=False, default="NO")

    is_delivery: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
