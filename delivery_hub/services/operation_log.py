from __future__ import annotations
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_hub.core.errors import NotFoundError
from delivery_hub.models.base import utcnow
from delivery_hub.models.operation_log import OperationLogEntry, OPERATION_STATUSES, OPERATION_TYPES

TERMINAL_STATUSES = ("success", "failed")


def _check_type(operation_type: str) -> None:
    if operation_type not in OPERATION_TYPES:
        raise ValueError(f"unknown operation type: {operation_type}")


async def start_operation(
    db: AsyncSession,
    *,
    operation_type: str,
    batch_id: str | None = None,
    actor: str | None = None,
    details: dict | None = None,
) -> OperationLogEntry:
    _check_type(operation_type)
    entry = OperationLogEntry(
        operation_type=operation_type,
        status="started",
        batch_id=batch_id,
        actor=actor,
        details=details or {},
    )
    db.add(entry)
    await db.flush()
    return entry


async def finish_operation(
    db: AsyncSession,
    *,
    entry_id: str,
    status: str,
    details: dict | None = None,
) -> OperationLogEntry:
    """Apply the single terminal update of a `started` entry; details are merged."""
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"terminal status must be one of {TERMINAL_STATUSES}, got {status}")

    entry = await get_operation(db, entry_id=entry_id)
    if entry.status != "started":
        raise ValueError(f"operation {entry_id} already finished as {entry.status}")

    entry.status = status
    entry.completed_at = utcnow()
    entry.details = {**(entry.details or {}), **(details or {})}
    await db.flush()
    return entry


async def record_operation(
    db: AsyncSession,
    *,
    operation_type: str,
    status: str = "success",
    batch_id: str | None = None,
    actor: str | None = None,
    details: dict | None = None,
) -> OperationLogEntry:
    # one-shot entries (approve/reject) are born terminal
    _check_type(operation_type)
    if status not in OPERATION_STATUSES:
        raise ValueError(f"unknown status: {status}")
    now = utcnow()
    entry = OperationLogEntry(
        operation_type=operation_type,
        status=status,
        started_at=now,
        completed_at=now if status in TERMINAL_STATUSES else None,
        batch_id=batch_id,
        actor=actor,
        details=details or {},
    )
    db.add(entry)
    await db.flush()
    return entry


async def update_progress(db: AsyncSession, *, entry_id: str, progress: dict) -> None:
    # polling fallback for the progress stream
    entry = await get_operation(db, entry_id=entry_id)
    entry.details = {**(entry.details or {}), "progress": progress}
    await db.flush()


async def get_operation(db: AsyncSession, *, entry_id: str) -> OperationLogEntry:
    entry = (await db.execute(select(OperationLogEntry).where(OperationLogEntry.id == entry_id))).scalar_one_or_none()
    if not entry:
        raise NotFoundError(f"operation {entry_id} not found")
    return entry


async def list_operations(db: AsyncSession, *, limit: int = 20, operation_type: str | None = None) -> list[OperationLogEntry]:
    stmt = select(OperationLogEntry)
    if operation_type:
        stmt = stmt.where(OperationLogEntry.operation_type == operation_type)
    stmt = stmt.order_by(OperationLogEntry.started_at.desc(), OperationLogEntry.id.desc()).limit(max(1, min(limit, 500)))
    return list((await db.execute(stmt)).scalars().all())


async def list_batch(db: AsyncSession, *, batch_id: str) -> list[OperationLogEntry]:
    rows = (await db.execute(
        select(OperationLogEntry)
        .where(OperationLogEntry.batch_id == batch_id)
        .order_by(OperationLogEntry.started_at.asc())
    )).scalars().all()
    return list(rows)


async def find_stale_operations(
    db: AsyncSession,
    *,
    older_than: timedelta,
    now: datetime | None = None,
) -> list[OperationLogEntry]:
    """`started` entries older than the threshold: a crashed run, not a state to wait on."""
    cutoff = (now or utcnow()) - older_than
    rows = (await db.execute(
        select(OperationLogEntry)
        .where(OperationLogEntry.status == "started", OperationLogEntry.started_at < cutoff)
        .order_by(OperationLogEntry.started_at.asc())
    )).scalars().all()
    return list(rows)


def serialize_operation(entry: OperationLogEntry) -> dict:
    return {
        "id": entry.id,
        "operation_type": entry.operation_type,
        "status": entry.status,
        "started_at": entry.started_at,
        "completed_at": entry.completed_at,
        "details": entry.details or {},
        "batch_id": entry.batch_id,
        "actor": entry.actor,
    }
