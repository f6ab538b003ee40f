from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

StagingStatus = Literal["pending", "approved", "rejected", "committed"]


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: list[dict] = Field(default_factory=list)


class OperationAccepted(BaseModel):
    batch_id: str
    operation_type: str
    status: str = "accepted"
    # where to observe it
    poll_url: str
    events_url: str


class CommitRequest(BaseModel):
    # omitted -> every approved staging city
    city_ids: list[str] | None = None


class BulkReviewRequest(BaseModel):
    city_ids: list[str] = Field(min_length=1)


class StagingCityOut(BaseModel):
    id: str
    batch_id: str
    external_id: str
    name: str
    country_code: str
    status: StagingStatus
    change_kind: str
    source: str
    summary: dict[str, Any] = Field(default_factory=dict)
    committed_city_id: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    committed_at: datetime | None = None
    created_at: datetime | None = None


class StagingAreaOut(BaseModel):
    id: str
    external_id: str
    name: str
    original_name: str | None = None
    has_geofence: bool
    geofence_hash: str | None = None
    is_delivery: bool


class StagingDistrictOut(BaseModel):
    id: str
    external_id: str
    name: str
    areas: list[StagingAreaOut] = Field(default_factory=list)


class StagingCityTreeOut(StagingCityOut):
    districts: list[StagingDistrictOut] = Field(default_factory=list)


class OperationOut(BaseModel):
    id: str
    operation_type: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    batch_id: str | None = None
    actor: str | None = None


class BatchOut(BaseModel):
    batch_id: str
    entries: list[OperationOut]
    progress: dict[str, Any] | None = None


class NextActionOut(BaseModel):
    type: Literal["commit", "review", "import", "sync", "none"]
    message: str
    urgency: Literal["low", "medium", "high"]


class PipelineStatusOut(BaseModel):
    counts: dict[str, Any]
    stages: dict[str, dict[str, Any]]
    next_action: NextActionOut
    busy: dict[str, bool] = Field(default_factory=dict)
