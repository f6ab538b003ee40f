from alembic import op
import sqlalchemy as sa

revision = "0001_coverage_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def _audit_columns():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
    ]


def upgrade():
    # production
    op.create_table(
        "geo_cities",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("external_id", sa.String(length=120), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("slug", sa.String(length=120), nullable=False),
        sa.Column("country_code", sa.String(length=8), nullable=False, server_default="NO"),
        sa.Column("is_delivery", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_audit_columns(),
        sa.UniqueConstraint("external_id", name="uq_geo_city_external_id"),
    )

    op.create_table(
        "geo_districts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("external_id", sa.String(length=200), nullable=False),
        sa.Column("city_id", sa.String(), sa.ForeignKey("geo_cities.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("slug", sa.String(length=160), nullable=False),
        sa.Column("is_delivery", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_audit_columns(),
        sa.UniqueConstraint("external_id", name="uq_geo_district_external_id"),
    )

    op.create_table(
        "geo_areas",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("external_id", sa.String(length=120), nullable=False),
        sa.Column("district_id", sa.String(), sa.ForeignKey("geo_districts.id"), nullable=False),
        sa.Column("city_id", sa.String(), sa.ForeignKey("geo_cities.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("slug", sa.String(length=160), nullable=False),
        sa.Column("geofence", sa.JSON(), nullable=True),
        sa.Column("geofence_hash", sa.String(length=80), nullable=True),
        sa.Column("is_delivery", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("imported_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
        sa.UniqueConstraint("external_id", name="uq_geo_area_external_id"),
    )
    op.create_index("ix_geo_district_city", "geo_districts", ["city_id"])
    op.create_index("ix_geo_area_city", "geo_areas", ["city_id"])

    # snapshot
    op.create_table(
        "snapshot_entries",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("external_id", sa.String(length=120), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("display_name", sa.String(length=200), nullable=True),
        sa.Column("city_external_id", sa.String(length=120), nullable=False),
        sa.Column("city_name", sa.String(length=120), nullable=False),
        sa.Column("district_external_id", sa.String(length=200), nullable=False),
        sa.Column("district_name", sa.String(length=120), nullable=False),
        sa.Column("country_code", sa.String(length=8), nullable=False),
        sa.Column("geofence", sa.JSON(), nullable=True),
        sa.Column("geofence_hash", sa.String(length=80), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("snapshot_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("external_id", name="uq_snapshot_external_id"),
    )
    op.create_index("ix_snapshot_city", "snapshot_entries", ["city_external_id"])

    # staging
    op.create_table(
        "staging_cities",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("batch_id", sa.String(length=64), nullable=False),
        sa.Column("external_id", sa.String(length=120), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("country_code", sa.String(length=8), nullable=False, server_default="NO"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("change_kind", sa.String(length=16), nullable=False, server_default="added"),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("summary", sa.JSON(), nullable=False),
        sa.Column("committed_city_id", sa.String(), sa.ForeignKey("geo_cities.id"), nullable=True),
        sa.Column("reviewed_by", sa.String(length=64), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_staging_city_external_status", "staging_cities", ["external_id", "status"])
    # at most one open row per external id
    op.create_index(
        "uq_staging_city_open_external_id",
        "staging_cities",
        ["external_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'approved')"),
        sqlite_where=sa.text("status IN ('pending', 'approved')"),
    )

    op.create_table(
        "staging_districts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("staging_city_id", sa.String(), sa.ForeignKey("staging_cities.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_id", sa.String(length=200), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("committed_district_id", sa.String(), sa.ForeignKey("geo_districts.id"), nullable=True),
    )
    op.create_index("ix_staging_districts_staging_city_id", "staging_districts", ["staging_city_id"])

    op.create_table(
        "staging_areas",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("staging_district_id", sa.String(), sa.ForeignKey("staging_districts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_id", sa.String(length=120), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("original_name", sa.String(length=200), nullable=False),
        sa.Column("geofence", sa.JSON(), nullable=True),
        sa.Column("geofence_hash", sa.String(length=80), nullable=True),
        sa.Column("is_delivery", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("committed_area_id", sa.String(), sa.ForeignKey("geo_areas.id"), nullable=True),
    )
    op.create_index("ix_staging_areas_staging_district_id", "staging_areas", ["staging_district_id"])

    # operation log
    op.create_table(
        "operation_log",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("operation_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="started"),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("batch_id", sa.String(length=64), nullable=True),
        sa.Column("actor", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_operation_log_started_at", "operation_log", ["started_at"])
    op.create_index("ix_operation_log_batch", "operation_log", ["batch_id"])


def downgrade():
    op.drop_index("ix_operation_log_batch", table_name="operation_log")
    op.drop_index("ix_operation_log_started_at", table_name="operation_log")
    op.drop_table("operation_log")
    op.drop_index("ix_staging_areas_staging_district_id", table_name="staging_areas")
    op.drop_table("staging_areas")
    op.drop_index("ix_staging_districts_staging_city_id", table_name="staging_districts")
    op.drop_table("staging_districts")
    op.drop_index("uq_staging_city_open_external_id", table_name="staging_cities")
    op.drop_index("ix_staging_city_external_status", table_name="staging_cities")
    op.drop_table("staging_cities")
    op.drop_index("ix_snapshot_city", table_name="snapshot_entries")
    op.drop_table("snapshot_entries")
    op.drop_index("ix_geo_area_city", table_name="geo_areas")
    op.drop_index("ix_geo_district_city", table_name="geo_districts")
    op.drop_table("geo_areas")
    op.drop_table("geo_districts")
    op.drop_table("geo_cities")
