from delivery_hub.models.base import Base  # noqa: F401

from delivery_hub.models.geo_city import GeoCity  # noqa: F401
from delivery_hub.models.geo_district import GeoDistrict  # noqa: F401
from delivery_hub.models.geo_area import GeoArea  # noqa: F401
from delivery_hub.models.snapshot_entry import SnapshotEntry  # noqa: F401
from delivery_hub.models.staging import StagingArea, StagingCity, StagingDistrict  # noqa: F401
from delivery_hub.models.operation_log import OperationLogEntry  # noqa: F401
