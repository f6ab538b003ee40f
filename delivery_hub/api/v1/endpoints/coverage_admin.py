from __future__ import annotations
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import StreamingResponse

from delivery_hub.core.errors import PipelineError
from delivery_hub.schemas.coverage import (
    BatchOut,
    BulkReviewRequest,
    CommitRequest,
    OperationAccepted,
    OperationOut,
    PipelineStatusOut,
    StagingCityOut,
    StagingCityTreeOut,
    StagingStatus,
)
from delivery_hub.services.internal_admin import admin_actor, require_internal_admin
from delivery_hub.services.pipeline import CoveragePipeline, get_pipeline

log = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/coverage", dependencies=[Depends(require_internal_admin)])


async def _run_detached(operation, **kwargs) -> None:
    # failures are already in the operation log and on the progress stream
    try:
        await operation(**kwargs)
    except PipelineError as e:
        log.warning("coverage: background %s failed: %s", operation.__name__, e.message)
    except Exception:
        log.exception("coverage: background %s crashed", operation.__name__)


def _accepted(operation_type: str, batch_id: str) -> OperationAccepted:
    return OperationAccepted(
        batch_id=batch_id,
        operation_type=operation_type,
        poll_url=f"/v1/admin/coverage/operations/{batch_id}",
        events_url=f"/v1/admin/coverage/operations/{batch_id}/events",
    )


async def _start(
    pipeline: CoveragePipeline,
    background: BackgroundTasks,
    operation_type: str,
    operation,
    **kwargs,
) -> OperationAccepted:
    # busy -> WriteConflictError -> 409 before anything is scheduled
    token, batch_id = await pipeline.reserve(operation_type)
    background.add_task(_run_detached, operation, batch_id=batch_id, token=token, **kwargs)
    log.info("coverage: %s accepted batch=%s", operation_type, batch_id)
    return _accepted(operation_type, batch_id)


@router.post("/delta-check", status_code=202, response_model=OperationAccepted)
async def delta_check(
    background: BackgroundTasks,
    actor: str = Depends(admin_actor),
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    return await _start(pipeline, background, "delta_check", pipeline.check_delta, actor=actor)


@router.post("/ai-import", status_code=202, response_model=OperationAccepted)
async def ai_import(
    background: BackgroundTasks,
    actor: str = Depends(admin_actor),
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    return await _start(pipeline, background, "ai_import", pipeline.start_ai_import, actor=actor)


@router.post("/geo-sync", status_code=202, response_model=OperationAccepted)
async def geo_sync(
    background: BackgroundTasks,
    actor: str = Depends(admin_actor),
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    return await _start(pipeline, background, "geo_sync", pipeline.run_geo_sync, actor=actor)


@router.post("/commit", status_code=202, response_model=OperationAccepted)
async def commit(
    body: CommitRequest,
    background: BackgroundTasks,
    actor: str = Depends(admin_actor),
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    return await _start(pipeline, background, "commit", pipeline.commit, city_ids=body.city_ids, actor=actor)


@router.get("/staging", response_model=list[StagingCityOut])
async def list_staging(
    status: StagingStatus | None = Query(default=None),
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    return await pipeline.list_staging(status)


@router.get("/staging/{city_id}", response_model=StagingCityTreeOut)
async def get_staging_city(city_id: str, pipeline: CoveragePipeline = Depends(get_pipeline)):
    return await pipeline.get_staging_city(city_id)


@router.post("/staging/{city_id}:approve", response_model=StagingCityOut)
async def approve_city(
    city_id: str,
    actor: str = Depends(admin_actor),
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    return await pipeline.approve(city_id, actor=actor)


@router.post("/staging/{city_id}:reject", response_model=StagingCityOut)
async def reject_city(
    city_id: str,
    actor: str = Depends(admin_actor),
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    return await pipeline.reject(city_id, actor=actor)


@router.post("/staging:approve", response_model=list[StagingCityOut])
async def approve_cities(
    body: BulkReviewRequest,
    actor: str = Depends(admin_actor),
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    return await pipeline.approve_many(body.city_ids, actor=actor)


@router.get("/status", response_model=PipelineStatusOut)
async def status(pipeline: CoveragePipeline = Depends(get_pipeline)):
    return await pipeline.get_pipeline_status()


@router.get("/operations", response_model=list[OperationOut])
async def list_operations(
    limit: int = Query(default=20, ge=1, le=500),
    operation_type: str | None = Query(default=None),
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    return await pipeline.get_operation_log(limit, operation_type=operation_type)


@router.get("/operations:stale", response_model=list[OperationOut])
async def stale_operations(pipeline: CoveragePipeline = Depends(get_pipeline)):
    return await pipeline.stale_operations()


@router.get("/operations/{batch_id}", response_model=BatchOut)
async def get_batch(batch_id: str, pipeline: CoveragePipeline = Depends(get_pipeline)):
    return await pipeline.get_batch(batch_id)


@router.post("/operations/{batch_id}:cancel")
async def cancel_batch(batch_id: str, pipeline: CoveragePipeline = Depends(get_pipeline)) -> dict:
    return {"batch_id": batch_id, "cancel_requested": pipeline.cancel(batch_id)}


@router.get("/operations/{batch_id}/events")
async def batch_events(
    batch_id: str,
    idle_timeout: float = Query(default=30.0, gt=0, le=600),
    pipeline: CoveragePipeline = Depends(get_pipeline),
):
    # server-sent events; reconnecting with the same batch id replays the latest event first
    async def stream():
        async for event in pipeline.hub.subscribe(batch_id, idle_timeout=idle_timeout):
            yield f"event: progress\ndata: {json.dumps(event.to_dict())}\n\n"
        yield "event: end\ndata: {}\n\n"

    return StreamingResponse(stream(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})
