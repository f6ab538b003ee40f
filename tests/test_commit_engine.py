import asyncio

import pytest
from sqlalchemy import select

from delivery_hub.models.geo_area import GeoArea
from delivery_hub.models.geo_city import GeoCity
from delivery_hub.models.operation_log import OperationLogEntry
from delivery_hub.models.snapshot_entry import SnapshotEntry
from delivery_hub.models.staging import StagingCity
from delivery_hub.services.commit_engine import CommitEngine
from delivery_hub.services.staging import create_staging_city
from tests.fixtures_seed import FlakyWriter, candidate, no_sleep, seed_approved


def _three_cities():
    return [
        candidate("c-a", "Arendal", [("a1", "Sentrum"), ("a2", "Hisøy")]),
        candidate("c-b", "Bergen", [("b1", "Nordnes")]),
        candidate("c-c", "Drammen", [("c1", "Bragernes")]),
    ]


async def _staging(session_factory):
    async with session_factory() as db:
        rows = (await db.execute(select(StagingCity).order_by(StagingCity.name))).scalars().all()
    return {r.name: r for r in rows}


@pytest.mark.asyncio
async def test_commit_writes_production_snapshot_and_status(session_factory, hub):
    ids = await seed_approved(session_factory, _three_cities())

    result = await CommitEngine(session_factory, sleep=no_sleep, hub=hub).run(ids, batch_id="c-1")

    assert result.ok
    assert [c["name"] for c in result.committed] == ["Arendal", "Bergen", "Drammen"]
    async with session_factory() as db:
        areas = (await db.execute(select(GeoArea))).scalars().all()
        snapshot = (await db.execute(select(SnapshotEntry))).scalars().all()
    assert {a.external_id for a in areas} == {"a1", "a2", "b1", "c1"}
    assert all(a.is_delivery and a.geofence_hash for a in areas)
    assert {s.external_id for s in snapshot} == {"a1", "a2", "b1", "c1"}

    rows = await _staging(session_factory)
    assert {r.status for r in rows.values()} == {"committed"}
    assert all(r.committed_city_id for r in rows.values())


@pytest.mark.asyncio
async def test_failing_city_is_isolated(session_factory, hub):
    ids = await seed_approved(session_factory, _three_cities())
    writer = FlakyWriter({"Bergen"})
    events = []

    async def on_progress(p):
        events.append(p)

    result = await CommitEngine(session_factory, max_attempts=3, sleep=no_sleep, hub=hub, writer=writer).run(
        ids, batch_id="c-1", on_progress=on_progress,
    )

    assert [c["name"] for c in result.committed] == ["Arendal", "Drammen"]
    assert [(f["name"], f["attempts"]) for f in result.failed] == [("Bergen", 3)]
    assert "store timeout" in result.failed[0]["error"]
    assert writer.attempts["Bergen"] == 3

    rows = await _staging(session_factory)
    assert rows["Arendal"].status == "committed"
    assert rows["Bergen"].status == "approved"
    assert rows["Drammen"].status == "committed"

    async with session_factory() as db:
        cities = (await db.execute(select(GeoCity.name))).scalars().all()
        entry = (await db.execute(select(OperationLogEntry).where(OperationLogEntry.operation_type == "commit"))).scalar_one()
    assert sorted(cities) == ["Arendal", "Drammen"]
    assert entry.status == "failed"
    assert entry.details["failed"][0]["name"] == "Bergen"
    assert [c["name"] for c in entry.details["committed"]] == ["Arendal", "Drammen"]

    retries = [(p.retry_attempt, p.retry_max) for p in events if p.retry_attempt]
    assert retries == [(2, 3), (3, 3)]
    assert events[-1].current == events[-1].total == 3
    assert hub.latest("c-1").phase == "failed"


@pytest.mark.asyncio
async def test_transient_failure_recovers_on_retry(session_factory, hub):
    ids = await seed_approved(session_factory, _three_cities())
    writer = FlakyWriter({"Bergen"}, failures=1)

    result = await CommitEngine(session_factory, max_attempts=3, sleep=no_sleep, hub=hub, writer=writer).run(ids, batch_id="c-1")

    assert result.ok
    bergen = next(c for c in result.committed if c["name"] == "Bergen")
    assert bergen["attempts"] == 2
    assert hub.latest("c-1").phase == "finished"


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(session_factory, hub):
    ids = await seed_approved(session_factory, _three_cities())
    writer = FlakyWriter({"Bergen"}, transient=False)
    delays = []

    async def record_sleep(seconds):
        delays.append(seconds)

    result = await CommitEngine(session_factory, max_attempts=5, sleep=record_sleep, hub=hub, writer=writer).run(ids, batch_id="c-1")

    assert [(f["name"], f["attempts"]) for f in result.failed] == [("Bergen", 1)]
    assert delays == []


@pytest.mark.asyncio
async def test_backoff_grows_between_attempts(session_factory, hub):
    ids = await seed_approved(session_factory, _three_cities()[1:2])
    delays = []

    async def record_sleep(seconds):
        delays.append(seconds)

    engine = CommitEngine(
        session_factory,
        max_attempts=3,
        backoff_base_seconds=1.0,
        backoff_cap_seconds=10.0,
        sleep=record_sleep,
        hub=hub,
        writer=FlakyWriter({"Bergen"}),
    )
    await engine.run(ids, batch_id="c-1")

    assert len(delays) == 2
    assert 1.0 <= delays[0] <= 1.5
    assert 2.0 <= delays[1] <= 2.5


@pytest.mark.asyncio
async def test_recommit_is_idempotent(session_factory, hub):
    ids = await seed_approved(session_factory, _three_cities())
    engine = CommitEngine(session_factory, sleep=no_sleep, hub=hub)

    await engine.run(ids, batch_id="c-1")
    async with session_factory() as db:
        before = {a.external_id: a.id for a in (await db.execute(select(GeoArea))).scalars().all()}

    again = await engine.run(ids, batch_id="c-2")

    assert again.ok
    assert all(c["areas_created"] == 0 and c["areas_deactivated"] == 0 for c in again.committed)
    async with session_factory() as db:
        after = {a.external_id: a.id for a in (await db.execute(select(GeoArea))).scalars().all()}
        snapshot = (await db.execute(select(SnapshotEntry))).scalars().all()
    assert after == before
    assert len(snapshot) == 4


@pytest.mark.asyncio
async def test_pending_city_is_refused_without_retry(session_factory, hub):
    async with session_factory() as db:
        row = await create_staging_city(db, candidate=_three_cities()[0], batch_id="b-1", source="delta")
        await db.commit()

    result = await CommitEngine(session_factory, max_attempts=3, sleep=no_sleep, hub=hub).run([row.id, "stc_missing"], batch_id="c-1")

    assert not result.committed
    failed = {f["id"]: f for f in result.failed}
    assert failed[row.id]["attempts"] == 1
    assert "pending" in failed[row.id]["error"]
    assert failed["stc_missing"]["attempts"] == 0
    async with session_factory() as db:
        assert (await db.execute(select(GeoCity))).scalars().all() == []


@pytest.mark.asyncio
async def test_removed_city_deactivates_its_areas(session_factory, hub):
    ids = await seed_approved(session_factory, _three_cities()[:1])
    engine = CommitEngine(session_factory, sleep=no_sleep, hub=hub)
    await engine.run(ids, batch_id="c-1")

    gone = candidate("c-a", "Arendal", [])
    gone.change_kind = "removed"
    gone.districts = []
    [removed_id] = await seed_approved(session_factory, [gone], batch_id="b-2")

    result = await engine.run([removed_id], batch_id="c-2")

    assert result.committed[0]["areas_deactivated"] == 2
    async with session_factory() as db:
        city = (await db.execute(select(GeoCity))).scalar_one()
        areas = (await db.execute(select(GeoArea))).scalars().all()
        snapshot = (await db.execute(select(SnapshotEntry))).scalars().all()
    assert city.is_delivery is False
    assert {a.is_delivery for a in areas} == {False}
    assert snapshot == []


@pytest.mark.asyncio
async def test_cancel_stops_before_next_city(session_factory, hub):
    ids = await seed_approved(session_factory, _three_cities())
    cancel = asyncio.Event()

    async def on_progress(p):
        # first city is already in flight when the cancel arrives
        cancel.set()

    result = await CommitEngine(session_factory, sleep=no_sleep, hub=hub).run(ids, batch_id="c-1", on_progress=on_progress, cancel=cancel)

    assert [c["name"] for c in result.committed] == ["Arendal"]
    assert [c["name"] for c in result.cancelled] == ["Bergen", "Drammen"]
    assert not result.ok
    rows = await _staging(session_factory)
    assert rows["Bergen"].status == "approved"


@pytest.mark.asyncio
async def test_cities_are_committed_in_name_order_whatever_the_request_order(session_factory, hub):
    drammen, arendal, bergen = _three_cities()[2], _three_cities()[0], _three_cities()[1]
    ids = await seed_approved(session_factory, [drammen, arendal, bergen])
    names = []

    async def on_progress(p):
        if not names or names[-1] != p.current_city_name:
            names.append(p.current_city_name)

    result = await CommitEngine(session_factory, sleep=no_sleep, hub=hub).run(ids, batch_id="c-1", on_progress=on_progress)

    assert [c["name"] for c in result.committed] == ["Arendal", "Bergen", "Drammen"]
    assert names == ["Arendal", "Bergen", "Drammen"]


@pytest.mark.asyncio
async def test_same_name_cities_are_ordered_by_id(session_factory, hub):
    ids = await seed_approved(session_factory, [
        candidate("c-b2", "Bergen", [("b2", "Sandviken")]),
        candidate("c-a", "arendal", [("a1", "Sentrum")]),
        candidate("c-b1", "Bergen", [("b1", "Nordnes")]),
    ])
    arendal_id, bergen_ids = ids[1], sorted([ids[0], ids[2]])

    result = await CommitEngine(session_factory, sleep=no_sleep, hub=hub).run(list(reversed(ids)), batch_id="c-1")

    assert [c["id"] for c in result.committed] == [arendal_id, *bergen_ids]
