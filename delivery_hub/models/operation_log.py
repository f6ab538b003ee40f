from datetime import datetime

from delivery_hub.core.ids import gen_id
from sqlalchemy import JSON, String, Index
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from delivery_hub.models.base import Base, utcnow

OPERATION_TYPES = ("delta_check", "ai_import", "geo_sync", "commit", "approve", "reject")
OPERATION_STATUSES = ("started", "success", "failed")


class OperationLogEntry(Base):
    """
    Append-only audit trail of pipeline actions.

    A `started` row receives exactly one terminal update (`success`|`failed`).
    Rows left in `started` after a crash are reported as stale, never repaired
    silently.
    """
    __tablename__ = "operation_log"
    __table_args__ = (
        Index("ix_operation_log_started_at", "started_at"),
        Index("ix_operation_log_batch", "batch_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("opl"))
    operation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="started")

    # python-side default keeps sub-second ordering on every backend
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor: Mapped[str | None] = mapped_column(String(64), nullable=True)
