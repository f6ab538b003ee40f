import pytest
from sqlalchemy import func, select

from delivery_hub.core.errors import ExternalFetchError
from delivery_hub.models.geo_area import GeoArea
from delivery_hub.models.operation_log import OperationLogEntry
from delivery_hub.models.snapshot_entry import SnapshotEntry
from delivery_hub.models.staging import StagingCity
from delivery_hub.schemas.provider import ProviderCity
from delivery_hub.services.commit_engine import CommitEngine
from delivery_hub.services.delta import build_candidates, compute_delta, diff_against_snapshot, suggest_renames
from delivery_hub.services.geofence import geofence_hash
from delivery_hub.services.staging import approve_many
from tests.fixtures_seed import area, city, district, no_sleep, provider_dataset, square


def _cities(raw):
    return [ProviderCity.model_validate(c) for c in raw]


def _snapshot_of(raw):
    entries = []
    for c in _cities(raw):
        for d in c.districts:
            for a in d.areas:
                entries.append(SnapshotEntry(
                    external_id=a.id,
                    name=a.name,
                    city_external_id=c.id,
                    city_name=c.name,
                    district_external_id=d.id,
                    district_name=d.name,
                    country_code=c.country_code,
                    geofence=a.geofence,
                    geofence_hash=geofence_hash(a.geofence),
                    is_active=a.is_active,
                ))
    return entries


def test_first_import_reports_everything_as_added():
    result = diff_against_snapshot(_cities(provider_dataset()), [])

    assert result.is_first_import is True
    assert result.has_changes is True
    assert result.summary()["new"] == 5
    assert result.cities.counts() == {"added": 2, "changed": 0, "removed": 0}
    assert result.districts.counts()["added"] == 3
    assert result.affected_city_ids == ["1", "2"]


def test_identical_data_has_no_changes():
    data = provider_dataset()
    result = diff_against_snapshot(_cities(data), _snapshot_of(data))

    assert result.has_changes is False
    assert result.is_first_import is False
    assert result.unchanged_areas == 5
    assert result.affected_city_ids == []
    assert build_candidates(result) == []


def test_moved_geofence_is_a_change_of_that_city_only():
    before = provider_dataset()
    after = provider_dataset()
    after[0]["districts"][0]["areas"][0]["geofence"] = square(10.9, 59.95)

    result = diff_against_snapshot(_cities(after), _snapshot_of(before))

    assert result.geofence_changed == 1
    assert [a["id"] for a in result.areas.changed] == ["101"]
    assert result.areas.changed[0]["fields"] == ["geofence"]
    assert result.affected_city_ids == ["1"]

    [candidate] = build_candidates(result)
    assert candidate.change_kind == "changed"
    assert candidate.area_count == 3
    assert candidate.summary["changed_area_ids"] == ["101"]


def test_rename_renumbered_area_is_suggested_not_applied():
    before = provider_dataset()
    after = provider_dataset()
    after[0]["districts"][0]["areas"][0] = area(105, "Majorstuen 2", x=10.71)

    result = diff_against_snapshot(_cities(after), _snapshot_of(before))

    assert [a["id"] for a in result.areas.added] == ["105"]
    assert [a["id"] for a in result.areas.removed] == ["101"]
    assert result.rename_suggestions == [{
        "removed_id": "101",
        "added_id": "105",
        "old_name": "Majorstuen",
        "new_name": "Majorstuen 2",
        "city_id": "1",
        "confirmed": False,
    }]


def test_rename_suggestions_stay_within_a_city():
    removed = [{"id": "1", "name": "Sentrum", "city_id": "a"}]
    added = [{"id": "2", "name": "Sentrum-3", "city_id": "b"}]
    assert suggest_renames(removed, added) == []


def test_vanished_city_becomes_removed_candidate():
    before = provider_dataset()
    after = provider_dataset()[:1]

    result = diff_against_snapshot(_cities(after), _snapshot_of(before))

    assert result.cities.removed == [{"id": "2", "name": "Bergen"}]
    assert {a["id"] for a in result.areas.removed} == {"201", "202"}

    [candidate] = build_candidates(result)
    assert candidate.external_id == "2"
    assert candidate.change_kind == "removed"
    assert candidate.districts == []


def test_cities_without_areas_are_ignored():
    raw = provider_dataset() + [city(3, "Tromsø", [district(31, "Sentrum", [])])]
    result = diff_against_snapshot(_cities(raw), [])
    assert "3" not in result.affected_city_ids


def test_invalid_geofence_is_reported_and_hashed_as_missing():
    raw = provider_dataset()
    raw[1]["districts"][0]["areas"][1]["geofence"] = {"type": "Point", "coordinates": [5.3, 60.4]}

    result = diff_against_snapshot(_cities(raw), [])

    assert result.invalid_geofences == ["202"]
    added = {a["id"]: a for a in result.areas.added}
    assert added["202"]["has_geofence"] is False


@pytest.mark.asyncio
async def test_compute_delta_stages_without_touching_snapshot(session_factory, provider, hub):
    result = await compute_delta(session_factory, provider=provider, batch_id="b-1", hub=hub)

    assert result.is_first_import
    assert sorted(s["name"] for s in result.staged) == ["Bergen", "Oslo"]

    async with session_factory() as db:
        rows = (await db.execute(select(StagingCity))).scalars().all()
        assert {(r.name, r.status, r.source, r.change_kind) for r in rows} == {
            ("Oslo", "pending", "delta", "added"),
            ("Bergen", "pending", "delta", "added"),
        }
        snapshot_count = (await db.execute(select(func.count(SnapshotEntry.id)))).scalar_one()
        assert snapshot_count == 0

        entry = (await db.execute(select(OperationLogEntry).where(OperationLogEntry.operation_type == "delta_check"))).scalar_one()
        assert entry.status == "success"
        assert entry.batch_id == "b-1"
        assert entry.details["is_first_import"] is True
        assert entry.details["summary"]["new"] == 5

    assert hub.latest("b-1").phase == "finished"


@pytest.mark.asyncio
async def test_repeated_check_updates_staging_in_place(session_factory, provider, hub):
    first = await compute_delta(session_factory, provider=provider, batch_id="b-1", hub=hub)
    second = await compute_delta(session_factory, provider=provider, batch_id="b-2", hub=hub)

    assert {s["id"] for s in first.staged} == {s["id"] for s in second.staged}
    async with session_factory() as db:
        count = (await db.execute(select(func.count(StagingCity.id)))).scalar_one()
    assert count == 2


@pytest.mark.asyncio
async def test_delta_is_quiet_after_commit_until_provider_changes(session_factory, provider, hub):
    first = await compute_delta(session_factory, provider=provider, batch_id="b-1", hub=hub)
    ids = [s["id"] for s in first.staged]
    async with session_factory() as db:
        await approve_many(db, city_ids=ids, actor="reviewer-1")
        await db.commit()

    committed = await CommitEngine(session_factory, sleep=no_sleep, hub=hub).run(ids, batch_id="c-1")
    assert committed.ok

    again = await compute_delta(session_factory, provider=provider, batch_id="b-2", hub=hub)
    assert again.has_changes is False
    assert again.unchanged_areas == 5
    assert again.staged == []

    provider.cities[0]["districts"][0]["areas"][0]["geofence"] = square(10.9, 59.95)
    changed = await compute_delta(session_factory, provider=provider, batch_id="b-3", hub=hub)
    assert [(s["name"], s["change_kind"]) for s in changed.staged] == [("Oslo", "changed")]


@pytest.mark.asyncio
async def test_fetch_failure_logs_failed_and_stages_nothing(session_factory, provider, hub):
    provider.error = ExternalFetchError("provider cities fetch failed: HTTP 503", status=503, retryable=True)

    with pytest.raises(ExternalFetchError):
        await compute_delta(session_factory, provider=provider, batch_id="b-1", hub=hub)

    async with session_factory() as db:
        entry = (await db.execute(select(OperationLogEntry))).scalar_one()
        assert entry.status == "failed"
        assert entry.completed_at is not None
        assert "503" in entry.details["error"]
        assert (await db.execute(select(func.count(StagingCity.id)))).scalar_one() == 0

    assert hub.latest("b-1").phase == "failed"


def test_unreadable_polygon_is_not_a_geofence_change():
    data = provider_dataset()
    snapshot = _snapshot_of(data)
    data[0]["districts"][0]["areas"][0]["geofence"] = {"type": "Point", "coordinates": [10.71, 59.9]}

    result = diff_against_snapshot(_cities(data), snapshot)

    assert result.invalid_geofences == ["101"]
    assert result.geofence_changed == 0
    assert result.has_changes is False


@pytest.mark.asyncio
async def test_commit_keeps_stored_polygon_when_provider_sends_a_broken_one(session_factory, provider, hub):
    engine = CommitEngine(session_factory, sleep=no_sleep, hub=hub)
    first = await compute_delta(session_factory, provider=provider, batch_id="b-1", hub=hub)
    async with session_factory() as db:
        await approve_many(db, city_ids=[s["id"] for s in first.staged], actor="reviewer-1")
        await db.commit()
    await engine.run([s["id"] for s in first.staged], batch_id="c-1")

    stored = geofence_hash(square(10.71, 59.90))
    oslo_areas = provider.cities[0]["districts"][0]["areas"]
    oslo_areas[0]["geofence"] = {"type": "Point", "coordinates": [10.71, 59.9]}
    # a rename elsewhere in the city still gets Oslo staged
    oslo_areas[1]["name"] = "Skillebekk Øst"

    changed = await compute_delta(session_factory, provider=provider, batch_id="b-2", hub=hub)
    assert changed.invalid_geofences == ["101"]
    assert changed.geofence_changed == 0
    assert [s["name"] for s in changed.staged] == ["Oslo"]

    ids = [s["id"] for s in changed.staged]
    async with session_factory() as db:
        await approve_many(db, city_ids=ids, actor="reviewer-1")
        await db.commit()
    result = await engine.run(ids, batch_id="c-2")
    assert result.ok

    async with session_factory() as db:
        areas = {a.external_id: a for a in (await db.execute(select(GeoArea))).scalars().all()}
        snap = {s.external_id: s for s in (await db.execute(select(SnapshotEntry))).scalars().all()}
    assert areas["101"].geofence_hash == stored
    assert areas["101"].geofence == square(10.71, 59.90)
    assert snap["101"].geofence_hash == stored
    assert areas["102"].name == "Skillebekk Øst"

    again = await compute_delta(session_factory, provider=provider, batch_id="b-3", hub=hub)
    assert again.has_changes is False
